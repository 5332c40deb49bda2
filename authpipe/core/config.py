"""
Configuration module for the authpipe login pipeline.

Copyright (c) 2025 Gimel Foundation and the persons identified as the document authors.
All rights reserved. This file is subject to the Gimel Foundation's Legal Provisions Relating to GiFo Documents.
See http://GimelFoundation.com or https://github.com/Gimel-Foundation for details.
Code Components extracted from GiFo-RfC 0111 must include this license text and are provided without warranty.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from ..crypto.keys import HMAC_ALGORITHMS, KeyStore, SigningKey
from ..errors import ConfigurationError
from ..oauth2.types import ProviderConfig
from ..resilience.retry import RetryConfig
from ..session.issuer import SessionConfig
from ..token.verifier import DEFAULT_LEEWAY
from ..util.config import (
    ENV_PREFIX, expand_config_variables, get_bool_config, get_config_value,
    get_duration_config, get_float_config, get_list_config, load_config_file,
    parse_duration_string,
)

logger = logging.getLogger(__name__)

DEFAULT_KEY_GRACE = timedelta(hours=1)
DEFAULT_JWKS_CACHE_TTL = 3600


@dataclass
class PipelineConfig:
    """Everything the login pipeline needs, with secrets injected as keys."""
    provider: ProviderConfig
    session: SessionConfig
    session_keys: List[SigningKey] = field(default_factory=list, repr=False)
    current_session_kid: Optional[str] = None
    provider_keys: List[SigningKey] = field(default_factory=list, repr=False)
    clock_skew: timedelta = field(default_factory=lambda: DEFAULT_LEEWAY)
    key_grace: timedelta = field(default_factory=lambda: DEFAULT_KEY_GRACE)
    jwks_cache_ttl: int = DEFAULT_JWKS_CACHE_TTL

    def __post_init__(self):
        if self.current_session_kid is None and self.session_keys:
            self.current_session_kid = self.session_keys[0].kid

    def validate(self) -> bool:
        """Validate the configuration"""
        self.provider.validate()
        self.session.validate()
        if self.clock_skew < timedelta(0):
            raise ConfigurationError("clock_skew cannot be negative")
        if self.key_grace < timedelta(0):
            raise ConfigurationError("key_grace cannot be negative")
        if self.jwks_cache_ttl <= 0:
            raise ConfigurationError("jwks_cache_ttl must be positive")
        if not self.session_keys:
            raise ConfigurationError("At least one session signing key is required")
        if not self.provider.jwks_uri and not self.provider_keys:
            raise ConfigurationError("Provider keys are required when no jwks_uri is configured")
        # Raises on duplicate ids or a current key that cannot sign.
        self.build_session_key_store()
        return True

    def build_session_key_store(self) -> KeyStore:
        """Key store holding the session signing keys."""
        return KeyStore(self.session_keys, current_kid=self.current_session_kid)

    def build_provider_key_store(self) -> KeyStore:
        """Key store for ID-token verification, seeded with static provider keys."""
        return KeyStore(self.provider_keys)

    @classmethod
    def from_env(cls, prefix: str = ENV_PREFIX) -> "PipelineConfig":
        """
        Create configuration from environment variables.

        Reads ``{prefix}ISSUER``, ``{prefix}CLIENT_ID``, ``{prefix}CLIENT_SECRET``,
        ``{prefix}REDIRECT_URI``, the endpoint URLs, ``{prefix}SESSION_SECRET``
        and optional tuning values. Missing values are left empty so that
        ``validate()`` reports them.
        """
        def value(key: str, default: Any = None) -> Any:
            return get_config_value(key, default, env_prefix=prefix)

        clock_skew = get_duration_config("CLOCK_SKEW", DEFAULT_LEEWAY, prefix)
        provider = ProviderConfig(
            issuer=value("ISSUER", ""),
            client_id=value("CLIENT_ID", ""),
            client_secret=value("CLIENT_SECRET", ""),
            redirect_uri=value("REDIRECT_URI", ""),
            authorization_endpoint=value("AUTHORIZATION_ENDPOINT", ""),
            token_endpoint=value("TOKEN_ENDPOINT", ""),
            jwks_uri=value("JWKS_URI"),
            scopes=get_list_config("SCOPES", ["openid"], prefix),
            use_pkce=get_bool_config("USE_PKCE", True, prefix),
            request_ttl=get_duration_config("REQUEST_TTL", timedelta(minutes=10), prefix),
            http_timeout=get_float_config("HTTP_TIMEOUT", 10.0, prefix),
        )
        session = SessionConfig(
            issuer=value("SESSION_ISSUER", ""),
            audience=value("SESSION_AUDIENCE", ""),
            ttl=get_duration_config("SESSION_TTL", timedelta(hours=8), prefix),
            leeway=clock_skew,
            embedded_claims=get_list_config("SESSION_CLAIMS", [], prefix),
        )

        algorithm = value("SESSION_ALGORITHM", "HS256")
        keys = []
        secret = value("SESSION_SECRET")
        if secret:
            keys.append(SigningKey.from_secret(value("SESSION_KID", "session-1"), secret, algorithm))
        previous = value("SESSION_PREVIOUS_SECRET")
        if previous:
            keys.append(SigningKey.from_secret(value("SESSION_PREVIOUS_KID", "session-0"),
                                               previous, algorithm))

        return cls(
            provider=provider,
            session=session,
            session_keys=keys,
            current_session_kid=keys[0].kid if keys else None,
            clock_skew=clock_skew,
            key_grace=get_duration_config("KEY_GRACE", DEFAULT_KEY_GRACE, prefix),
            jwks_cache_ttl=get_config_value("JWKS_CACHE_TTL", DEFAULT_JWKS_CACHE_TTL, int, prefix),
        )

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "PipelineConfig":
        """Create configuration from a JSON or YAML file. ``${VAR}`` is expanded."""
        data = expand_config_variables(load_config_file(path))
        logger.info(f"Loaded pipeline configuration from {path}")
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PipelineConfig":
        """
        Create configuration from a nested mapping.

        Key entries look like ``{"kid": "s1", "algorithm": "HS256",
        "secret_env": "SESSION_SECRET"}``; ``secret``, ``secret_env``,
        ``pem`` and ``pem_file`` are accepted as key material sources.
        """
        provider_data = dict(data.get("provider") or {})
        session_data = dict(data.get("session") or {})
        clock_skew = parse_duration_string(data.get("clock_skew", DEFAULT_LEEWAY))

        retry_data = provider_data.pop("retry", None) or {}
        retry = RetryConfig(
            max_attempts=int(retry_data.get("max_attempts", 3)),
            initial_delay=parse_duration_string(retry_data.get("initial_delay", "200ms")),
            max_delay=parse_duration_string(retry_data.get("max_delay", "2s")),
            multiplier=float(retry_data.get("multiplier", 2.0)),
            jitter=bool(retry_data.get("jitter", True)),
        )
        provider_keys = [_key_from_dict(k) for k in provider_data.pop("keys", None) or []]
        provider = ProviderConfig(
            issuer=provider_data.get("issuer", ""),
            client_id=provider_data.get("client_id", ""),
            client_secret=provider_data.get("client_secret", ""),
            redirect_uri=provider_data.get("redirect_uri", ""),
            authorization_endpoint=provider_data.get("authorization_endpoint", ""),
            token_endpoint=provider_data.get("token_endpoint", ""),
            jwks_uri=provider_data.get("jwks_uri"),
            scopes=list(provider_data.get("scopes") or ["openid"]),
            use_pkce=bool(provider_data.get("use_pkce", True)),
            request_ttl=parse_duration_string(provider_data.get("request_ttl", "10m")),
            http_timeout=float(provider_data.get("http_timeout", 10.0)),
            retry=retry,
        )

        session_keys = [_key_from_dict(k) for k in session_data.get("keys") or []]
        session = SessionConfig(
            issuer=session_data.get("issuer", ""),
            audience=session_data.get("audience", ""),
            ttl=parse_duration_string(session_data.get("ttl", "8h")),
            leeway=clock_skew,
            embedded_claims=list(session_data.get("embedded_claims") or []),
        )

        return cls(
            provider=provider,
            session=session,
            session_keys=session_keys,
            current_session_kid=session_data.get("current_kid"),
            provider_keys=provider_keys,
            clock_skew=clock_skew,
            key_grace=parse_duration_string(data.get("key_grace", DEFAULT_KEY_GRACE)),
            jwks_cache_ttl=int(data.get("jwks_cache_ttl", DEFAULT_JWKS_CACHE_TTL)),
        )


def _key_from_dict(data: Mapping[str, Any]) -> SigningKey:
    kid = data.get("kid")
    if not kid:
        raise ConfigurationError("Configured keys must have a kid")
    algorithm = data.get("algorithm", "HS256")

    if algorithm in HMAC_ALGORITHMS:
        secret = data.get("secret")
        if secret is None and data.get("secret_env"):
            secret = os.environ.get(data["secret_env"])
        if not secret:
            raise ConfigurationError(f"No secret configured for key {kid!r}")
        return SigningKey.from_secret(kid, secret, algorithm)

    pem = data.get("pem")
    if pem is None and data.get("pem_file"):
        with open(data["pem_file"], "rb") as f:
            pem = f.read()
    if not pem:
        raise ConfigurationError(f"No PEM configured for key {kid!r}")
    return SigningKey.from_pem(kid, pem, algorithm)


def config_summary(config: PipelineConfig) -> Dict[str, Any]:
    """Non-secret view of a configuration, suitable for startup logs."""
    return {
        "issuer": config.provider.issuer,
        "client_id": config.provider.client_id,
        "redirect_uri": config.provider.redirect_uri,
        "scopes": list(config.provider.scopes),
        "use_pkce": config.provider.use_pkce,
        "jwks_uri": config.provider.jwks_uri,
        "session_issuer": config.session.issuer,
        "session_ttl_seconds": int(config.session.ttl.total_seconds()),
        "session_kids": [k.kid for k in config.session_keys],
        "current_session_kid": config.current_session_kid,
    }
