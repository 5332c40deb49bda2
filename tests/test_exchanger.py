"""
Tests for the authorization-code exchanger.
"""

import asyncio
import pytest
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock
from urllib.parse import parse_qs, urlparse

import aiohttp

from authpipe.common.utils import get_current_time
from authpipe.crypto.keys import KeyStore
from authpipe.errors import (
    ClaimMismatch, ConfigurationError, ErrorCode, ExchangeFailed, StateMismatch,
    TransientNetworkError,
)
from authpipe.oauth2.exchanger import AuthorizationCodeExchanger, pkce_challenge
from authpipe.oauth2.types import AuthorizationRequest, ProviderConfig
from authpipe.token.verifier import TokenVerifier, VerificationPolicy

from conftest import CLIENT_ID, CLIENT_SECRET, ISSUER, REDIRECT_URI, id_token_claims, make_token


def query_of(url):
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


async def no_sleep(delay):
    return None


@pytest.fixture
def exchanger(provider_config, key_store):
    verifier = TokenVerifier(key_store, VerificationPolicy(ISSUER, CLIENT_ID))
    return AuthorizationCodeExchanger(provider_config, verifier, sleep=no_sleep)


def token_body(hmac_key, nonce, **claims):
    now = int(get_current_time().timestamp())
    return {
        "access_token": "at-123",
        "token_type": "Bearer",
        "expires_in": 3600,
        "id_token": make_token(id_token_claims(nonce=nonce, iat=now, exp=now + 3600, **claims), hmac_key),
    }


class TestProviderConfig:
    """Provider configuration validation"""

    def test_openid_scope_always_present(self):
        config = ProviderConfig(ISSUER, CLIENT_ID, CLIENT_SECRET, REDIRECT_URI,
                                "https://idp.example/authorize", "https://idp.example/token",
                                scopes=["email"])
        assert config.scopes[0] == "openid"

    @pytest.mark.parametrize("field_name,value", [
        ("client_secret", ""),
        ("issuer", ""),
        ("token_endpoint", "http://idp.example/token"),
        ("authorization_endpoint", "/authorize"),
        ("redirect_uri", "https://app.example/callback#frag"),
    ])
    def test_invalid(self, provider_config, field_name, value):
        setattr(provider_config, field_name, value)
        with pytest.raises(ConfigurationError):
            provider_config.validate()

    def test_localhost_http_allowed(self, provider_config):
        provider_config.token_endpoint = "http://127.0.0.1:9000/token"
        assert provider_config.validate()

    def test_secret_not_in_repr(self, provider_config):
        assert CLIENT_SECRET not in repr(provider_config)

    def test_verifier_must_match_client(self, provider_config, key_store):
        verifier = TokenVerifier(key_store, VerificationPolicy(ISSUER, "someone-else"))
        with pytest.raises(ConfigurationError):
            AuthorizationCodeExchanger(provider_config, verifier)


class TestAuthorizationUrl:
    """Redirect URL construction"""

    def test_required_parameters(self, exchanger):
        url, request = exchanger.build_authorization_url()
        query = query_of(url)

        assert url.startswith("https://idp.example/authorize?")
        assert query["response_type"] == "code"
        assert query["client_id"] == CLIENT_ID
        assert query["redirect_uri"] == REDIRECT_URI
        assert query["scope"].split() == ["openid", "email"]
        assert query["state"] == request.state
        assert query["nonce"] == request.nonce
        assert query["code_challenge_method"] == "S256"
        assert query["code_challenge"] == pkce_challenge(request.code_verifier)
        assert "code_verifier" not in query

    def test_state_and_nonce_entropy(self, exchanger):
        _, request = exchanger.build_authorization_url()
        # 32 random bytes encode to 43 base64url characters.
        assert len(request.state) >= 43
        assert len(request.nonce) >= 43
        assert 43 <= len(request.code_verifier) <= 128

    def test_no_repeats_over_10000_calls(self, exchanger):
        states, nonces = set(), set()
        for _ in range(10000):
            _, request = exchanger.build_authorization_url()
            states.add(request.state)
            nonces.add(request.nonce)
        assert len(states) == 10000
        assert len(nonces) == 10000

    def test_optional_parameters(self, exchanger):
        url, _ = exchanger.build_authorization_url(
            scopes=["profile"], prompt="consent", login_hint="alice@example.com",
            extra_params={"hd": "example.com"},
        )
        query = query_of(url)
        assert query["scope"] == "openid profile"
        assert query["prompt"] == "consent"
        assert query["login_hint"] == "alice@example.com"
        assert query["hd"] == "example.com"

    @pytest.mark.parametrize("name", ["response_type", "state", "nonce", "redirect_uri"])
    def test_protocol_parameters_cannot_be_overridden(self, exchanger, name):
        with pytest.raises(ConfigurationError):
            exchanger.build_authorization_url(extra_params={name: "token"})

    def test_pkce_disabled(self, provider_config, key_store):
        provider_config.use_pkce = False
        verifier = TokenVerifier(key_store, VerificationPolicy(ISSUER, CLIENT_ID))
        url, request = AuthorizationCodeExchanger(provider_config, verifier).build_authorization_url()
        assert request.code_verifier is None
        assert "code_challenge" not in query_of(url)

    def test_request_expiry(self, exchanger, provider_config):
        _, request = exchanger.build_authorization_url(now=1_700_000_000)
        assert request.expires_at - request.created_at == provider_config.request_ttl
        assert not request.is_expired(1_700_000_000 + 599)
        assert request.is_expired(1_700_000_000 + 600)

    def test_secrets_not_in_repr(self, exchanger):
        _, request = exchanger.build_authorization_url()
        text = repr(request)
        assert request.state not in text
        assert request.nonce not in text
        assert request.code_verifier not in text


class TestExchangeCode:
    """Code exchange with a mocked token endpoint"""

    @pytest.mark.asyncio
    async def test_success(self, exchanger, hmac_key):
        _, request = exchanger.build_authorization_url()
        exchanger._post_token_request = AsyncMock(return_value=token_body(hmac_key, request.nonce))

        result = await exchanger.exchange_code("code-1", request, request.state)

        assert result.subject == "user-42"
        assert result.access_token == "at-123"
        assert result.expires_in == 3600
        assert "at-123" not in repr(result)
        form = exchanger._post_token_request.await_args.args[0]
        assert form["grant_type"] == "authorization_code"
        assert form["code"] == "code-1"
        assert form["redirect_uri"] == REDIRECT_URI
        assert form["client_id"] == CLIENT_ID
        assert form["client_secret"] == CLIENT_SECRET
        assert form["code_verifier"] == request.code_verifier

    @pytest.mark.asyncio
    async def test_state_mismatch_before_network(self, exchanger):
        _, request = exchanger.build_authorization_url()
        exchanger._post_token_request = AsyncMock()

        with pytest.raises(StateMismatch) as excinfo:
            await exchanger.exchange_code("code-1", request, "forged-state")
        assert excinfo.value.code == ErrorCode.STATE_MISMATCH
        exchanger._post_token_request.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_state(self, exchanger):
        _, request = exchanger.build_authorization_url()
        with pytest.raises(StateMismatch):
            await exchanger.exchange_code("code-1", request, None)

    @pytest.mark.asyncio
    async def test_replay_rejected(self, exchanger, hmac_key):
        """Two exchanges with the same request cannot both succeed"""
        _, request = exchanger.build_authorization_url()
        exchanger._post_token_request = AsyncMock(return_value=token_body(hmac_key, request.nonce))

        await exchanger.exchange_code("code-1", request, request.state)
        with pytest.raises(StateMismatch) as excinfo:
            await exchanger.exchange_code("code-1", request, request.state)
        assert excinfo.value.code == ErrorCode.REQUEST_REPLAYED
        assert exchanger._post_token_request.await_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_replay(self, exchanger, hmac_key):
        _, request = exchanger.build_authorization_url()
        exchanger._post_token_request = AsyncMock(return_value=token_body(hmac_key, request.nonce))

        results = await asyncio.gather(
            exchanger.exchange_code("code-1", request, request.state),
            exchanger.exchange_code("code-1", request, request.state),
            return_exceptions=True,
        )
        assert sum(1 for r in results if isinstance(r, StateMismatch)) == 1
        assert sum(1 for r in results if not isinstance(r, Exception)) == 1

    @pytest.mark.asyncio
    async def test_failed_attempt_still_consumes_request(self, exchanger):
        _, request = exchanger.build_authorization_url()
        with pytest.raises(StateMismatch):
            await exchanger.exchange_code("code-1", request, "wrong")
        with pytest.raises(StateMismatch) as excinfo:
            await exchanger.exchange_code("code-1", request, request.state)
        assert excinfo.value.code == ErrorCode.REQUEST_REPLAYED

    @pytest.mark.asyncio
    async def test_expired_request(self, exchanger):
        past = get_current_time() - timedelta(hours=1)
        request = AuthorizationRequest(state="s" * 43, nonce="n" * 43, redirect_uri=REDIRECT_URI,
                                       created_at=past, expires_at=past + timedelta(minutes=10))
        with pytest.raises(StateMismatch) as excinfo:
            await exchanger.exchange_code("code-1", request, request.state)
        assert excinfo.value.code == ErrorCode.REQUEST_EXPIRED

    @pytest.mark.asyncio
    async def test_nonce_mismatch_rejected(self, exchanger, hmac_key):
        _, request = exchanger.build_authorization_url()
        exchanger._post_token_request = AsyncMock(return_value=token_body(hmac_key, "other-nonce"))

        with pytest.raises(ClaimMismatch) as excinfo:
            await exchanger.exchange_code("code-1", request, request.state)
        assert excinfo.value.code == ErrorCode.NONCE_MISMATCH

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self, exchanger, hmac_key):
        _, request = exchanger.build_authorization_url()
        exchanger._post_token_request = AsyncMock(side_effect=[
            TransientNetworkError("reset"),
            TransientNetworkError("reset"),
            token_body(hmac_key, request.nonce),
        ])

        result = await exchanger.exchange_code("code-1", request, request.state)
        assert result.subject == "user-42"
        assert exchanger._post_token_request.await_count == 3

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self, exchanger):
        _, request = exchanger.build_authorization_url()
        exchanger._post_token_request = AsyncMock(side_effect=TransientNetworkError("down"))

        with pytest.raises(TransientNetworkError):
            await exchanger.exchange_code("code-1", request, request.state)
        assert exchanger._post_token_request.await_count == 3

    @pytest.mark.asyncio
    async def test_provider_error_not_retried(self, exchanger):
        _, request = exchanger.build_authorization_url()
        exchanger._post_token_request = AsyncMock(side_effect=ExchangeFailed("invalid_grant"))

        with pytest.raises(ExchangeFailed) as excinfo:
            await exchanger.exchange_code("code-1", request, request.state)
        assert excinfo.value.provider_error == "invalid_grant"
        assert exchanger._post_token_request.await_count == 1

    @pytest.mark.asyncio
    async def test_deadline(self, exchanger):
        _, request = exchanger.build_authorization_url()

        async def hang(form):
            await asyncio.sleep(10)

        exchanger._post_token_request = hang
        with pytest.raises(TransientNetworkError):
            await exchanger.exchange_code("code-1", request, request.state, timeout=0.05)
        assert request.consumed

    @pytest.mark.asyncio
    async def test_missing_code(self, exchanger):
        _, request = exchanger.build_authorization_url()
        with pytest.raises(ExchangeFailed):
            await exchanger.exchange_code("", request, request.state)


def queue_responses(session, *responses):
    """Make each ``session.post`` yield the next of ``responses``"""
    contexts = []
    for response in responses:
        context = MagicMock()
        context.__aenter__.return_value = response
        context.__aexit__.return_value = False
        contexts.append(context)
    session.post.side_effect = contexts


def mock_response(status=200, body=None, error=None):
    response = MagicMock(status=status)
    response.json = AsyncMock(return_value=body, side_effect=error)
    return response


class TestTokenEndpointResponses:
    """HTTP-level handling of token endpoint replies"""

    @pytest.fixture
    def session(self):
        return MagicMock()

    @pytest.fixture
    def exchanger(self, provider_config, key_store, session):
        verifier = TokenVerifier(key_store, VerificationPolicy(ISSUER, CLIENT_ID))
        return AuthorizationCodeExchanger(provider_config, verifier, session=session, sleep=no_sleep)

    @pytest.mark.asyncio
    async def test_reset_while_reading_body_is_retried(self, exchanger, session, hmac_key):
        _, request = exchanger.build_authorization_url()
        queue_responses(
            session,
            mock_response(error=aiohttp.ClientPayloadError("connection reset")),
            mock_response(error=aiohttp.ClientPayloadError("connection reset")),
            mock_response(body=token_body(hmac_key, request.nonce)),
        )

        result = await exchanger.exchange_code("code-1", request, request.state)

        assert result.subject == "user-42"
        assert session.post.call_count == 3

    @pytest.mark.asyncio
    async def test_persistent_reset_is_transient(self, exchanger, session):
        _, request = exchanger.build_authorization_url()
        queue_responses(session, *(
            mock_response(error=aiohttp.ClientPayloadError("connection reset")) for _ in range(3)
        ))

        with pytest.raises(TransientNetworkError):
            await exchanger.exchange_code("code-1", request, request.state)
        assert session.post.call_count == 3

    @pytest.mark.asyncio
    async def test_server_errors_are_retried(self, exchanger, session):
        _, request = exchanger.build_authorization_url()
        queue_responses(session, *(mock_response(status=503, error=ValueError("not json")) for _ in range(3)))

        with pytest.raises(TransientNetworkError):
            await exchanger.exchange_code("code-1", request, request.state)
        assert session.post.call_count == 3

    @pytest.mark.asyncio
    async def test_server_error_with_oauth_error_not_retried(self, exchanger, session):
        _, request = exchanger.build_authorization_url()
        queue_responses(session, mock_response(status=500, body={"error": "server_error"}))

        with pytest.raises(ExchangeFailed) as excinfo:
            await exchanger.exchange_code("code-1", request, request.state)
        assert excinfo.value.provider_error == "server_error"
        assert session.post.call_count == 1

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, exchanger, session):
        _, request = exchanger.build_authorization_url()
        queue_responses(session, mock_response(status=400, body={"error": "invalid_grant"}))

        with pytest.raises(ExchangeFailed):
            await exchanger.exchange_code("code-1", request, request.state)
        assert session.post.call_count == 1


class TestExchangeAgainstProvider:
    """Full round trip against the local provider"""

    @pytest.fixture
    def live_exchanger(self, live_provider_config, rsa_key):
        store = KeyStore([rsa_key])
        verifier = TokenVerifier(store, VerificationPolicy(live_provider_config.issuer, CLIENT_ID))
        return AuthorizationCodeExchanger(live_provider_config, verifier)

    @pytest.mark.asyncio
    async def test_round_trip(self, live_exchanger, fake_provider):
        url, request = live_exchanger.build_authorization_url()
        code, state = fake_provider.approve(url, "alice", {"email": "alice@example.com"})

        result = await live_exchanger.exchange_code(code, request, state, timeout=5)

        assert result.subject == "alice"
        assert result.claims["email"] == "alice@example.com"
        assert result.claims["nonce"] == request.nonce

    @pytest.mark.asyncio
    async def test_provider_rejects_reused_code(self, live_exchanger, fake_provider):
        url, request = live_exchanger.build_authorization_url()
        code, state = fake_provider.approve(url, "alice")
        await live_exchanger.exchange_code(code, request, state)

        # A fresh request cannot smuggle in the spent code either.
        _, second = live_exchanger.build_authorization_url()
        with pytest.raises(ExchangeFailed) as excinfo:
            await live_exchanger.exchange_code(code, second, second.state)
        assert excinfo.value.provider_error == "invalid_grant"
        assert excinfo.value.status == 400

    @pytest.mark.asyncio
    async def test_wrong_client_secret(self, live_provider_config, fake_provider, rsa_key):
        live_provider_config.client_secret = "wrong-secret"
        verifier = TokenVerifier(KeyStore([rsa_key]),
                                 VerificationPolicy(live_provider_config.issuer, CLIENT_ID))
        exchanger = AuthorizationCodeExchanger(live_provider_config, verifier)
        url, request = exchanger.build_authorization_url()
        code, state = fake_provider.approve(url, "alice")

        with pytest.raises(ExchangeFailed) as excinfo:
            await exchanger.exchange_code(code, request, state)
        assert excinfo.value.provider_error == "invalid_client"

    @pytest.mark.asyncio
    async def test_unreachable_provider(self, provider_config, key_store):
        provider_config.token_endpoint = "http://127.0.0.1:9/token"
        verifier = TokenVerifier(key_store, VerificationPolicy(ISSUER, CLIENT_ID))
        exchanger = AuthorizationCodeExchanger(provider_config, verifier, sleep=no_sleep)
        _, request = exchanger.build_authorization_url()

        with pytest.raises(TransientNetworkError):
            await exchanger.exchange_code("code-1", request, request.state)
