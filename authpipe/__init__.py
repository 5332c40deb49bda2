"""
authpipe Python Package

Authentication token pipeline: OpenID Connect authorization-code exchange,
token verification and self-issued sessions.
"""

__version__ = "0.1.0"
__author__ = "Mauricio Fernandez"
__email__ = "mauricio.fernandez@siemens.com"

from .core.pipeline import AuthPipeline
from .core.config import PipelineConfig
from .crypto.keys import KeyStore, SigningKey
from .crypto.signature import SignatureEngine
from .errors import AuthenticationFailed, AuthPipelineError, ErrorCode
from .oauth2.exchanger import AuthorizationCodeExchanger
from .oauth2.types import AuthorizationRequest, ExchangeResult, ProviderConfig
from .session.issuer import Session, SessionConfig, SessionIssuer
from .token.codec import TokenCodec, decode_unverified
from .token.verifier import TokenVerifier, VerificationPolicy

__all__ = [
    "AuthPipeline",
    "PipelineConfig",
    "KeyStore",
    "SigningKey",
    "SignatureEngine",
    "AuthenticationFailed",
    "AuthPipelineError",
    "ErrorCode",
    "AuthorizationCodeExchanger",
    "AuthorizationRequest",
    "ExchangeResult",
    "ProviderConfig",
    "Session",
    "SessionConfig",
    "SessionIssuer",
    "TokenCodec",
    "decode_unverified",
    "TokenVerifier",
    "VerificationPolicy",
]
