"""
Shared fixtures: keys, a local provider and token helpers.
"""

import pytest
from datetime import timedelta

from cryptography.hazmat.primitives.asymmetric import ec, rsa

from authpipe.crypto.keys import KeyStore, SigningKey
from authpipe.crypto.signature import SignatureEngine
from authpipe.demo.provider import FakeProvider
from authpipe.oauth2.types import ProviderConfig
from authpipe.resilience.retry import RetryConfig
from authpipe.token.codec import TokenCodec

CLIENT_ID = "client-123"
CLIENT_SECRET = "client-secret-for-tests-only"
REDIRECT_URI = "http://localhost:8080/callback"
ISSUER = "https://idp.example"

HMAC_SECRET_A = b"a" * 16 + b"0123456789abcdef"
HMAC_SECRET_B = b"b" * 16 + b"0123456789abcdef"

# Fixed evaluation time used by deterministic tests.
NOW = 1_700_000_000


def make_token(payload, key, header=None):
    """Sign ``payload`` with ``key`` and return the compact token."""
    codec = TokenCodec()
    hdr = {"alg": key.algorithm, "typ": "JWT"}
    if key.kid is not None:
        hdr["kid"] = key.kid
    hdr.update(header or {})
    signature = SignatureEngine().sign(codec.encode_signing_input(hdr, payload), key)
    return codec.encode(hdr, payload, signature)


def id_token_claims(**overrides):
    """Valid ID-token claims at ``NOW`` for ``ISSUER``/``CLIENT_ID``."""
    claims = {
        "iss": ISSUER,
        "sub": "user-42",
        "aud": CLIENT_ID,
        "iat": NOW,
        "exp": NOW + 3600,
    }
    claims.update(overrides)
    return claims


@pytest.fixture(scope="session")
def rsa_private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def other_rsa_private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def rsa_key(rsa_private_key):
    """RS256 signing key"""
    return SigningKey(kid="rsa-1", algorithm="RS256", material=rsa_private_key)


@pytest.fixture(scope="session")
def ec_key():
    """ES256 signing key"""
    return SigningKey(kid="ec-1", algorithm="ES256", material=ec.generate_private_key(ec.SECP256R1()))


@pytest.fixture
def hmac_key():
    """HS256 key A"""
    return SigningKey.from_secret("hs-a", HMAC_SECRET_A)


@pytest.fixture
def other_hmac_key():
    """HS256 key B"""
    return SigningKey.from_secret("hs-b", HMAC_SECRET_B)


@pytest.fixture
def key_store(hmac_key):
    return KeyStore([hmac_key], current_kid=hmac_key.kid)


@pytest.fixture
def fast_retry():
    """Retry configuration with negligible delays"""
    return RetryConfig(max_attempts=3, initial_delay=timedelta(milliseconds=1), jitter=False)


@pytest.fixture
def provider_config(fast_retry):
    """Provider configuration pointing at a static issuer"""
    return ProviderConfig(
        issuer=ISSUER,
        client_id=CLIENT_ID,
        client_secret=CLIENT_SECRET,
        redirect_uri=REDIRECT_URI,
        authorization_endpoint="https://idp.example/authorize",
        token_endpoint="https://idp.example/token",
        scopes=["openid", "email"],
        retry=fast_retry,
    )


@pytest.fixture
async def fake_provider(rsa_key):
    """Running local provider"""
    provider = FakeProvider(CLIENT_ID, CLIENT_SECRET, REDIRECT_URI, signing_key=rsa_key)
    await provider.start()
    yield provider
    await provider.close()


@pytest.fixture
def live_provider_config(fake_provider, fast_retry):
    """Provider configuration pointing at the running local provider"""
    return ProviderConfig(
        issuer=fake_provider.issuer,
        client_id=CLIENT_ID,
        client_secret=CLIENT_SECRET,
        redirect_uri=REDIRECT_URI,
        authorization_endpoint=fake_provider.authorization_endpoint,
        token_endpoint=fake_provider.token_endpoint,
        jwks_uri=fake_provider.jwks_uri,
        scopes=["openid", "email"],
        retry=fast_retry,
    )
