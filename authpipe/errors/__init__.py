# Copyright (c) 2025 Gimel Foundation and the persons identified as the document authors.
# All rights reserved. This file is subject to the Gimel Foundation's Legal Provisions Relating to GiFo Documents.
# See http://GimelFoundation.com or https://github.com/Gimel-Foundation for details.
# Code Components extracted from GiFo-RfC 0111 must include this license text and are provided without warranty.

"""
Error taxonomy for the authentication token pipeline.

Every failure in the pipeline is a rejected attempt, never a crash. Each error
carries a stable diagnostic ``code`` that is safe to write to server-side logs.
End users only ever see ``AuthenticationFailed`` with a fixed message.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Structured diagnostic codes."""

    # Token structure and signature
    MALFORMED = "malformed"
    BAD_SIGNATURE = "bad_signature"

    # Claims
    EXPIRED = "expired"
    NBF_VIOLATION = "nbf_violation"
    IAT_IN_FUTURE = "iat_in_future"
    ISS_MISMATCH = "iss_mismatch"
    AUD_MISMATCH = "aud_mismatch"
    AZP_MISMATCH = "azp_mismatch"
    NONCE_MISMATCH = "nonce_mismatch"
    SUB_MISSING = "sub_missing"

    # Authorization request lifecycle
    STATE_MISMATCH = "state_mismatch"
    REQUEST_REPLAYED = "request_replayed"
    REQUEST_EXPIRED = "request_expired"
    REQUEST_STORE_ERROR = "request_store_error"

    # Provider round trip
    EXCHANGE_FAILED = "exchange_failed"
    NETWORK_ERROR = "network_error"

    # Programming contract
    INVALID_CONFIGURATION = "invalid_configuration"
    UNSUPPORTED_ALGORITHM = "unsupported_algorithm"

    AUTHENTICATION_FAILED = "authentication_failed"


class AuthPipelineError(Exception):
    """Base error for all pipeline failures."""

    default_code = ErrorCode.AUTHENTICATION_FAILED

    def __init__(self, message: str, code: Optional[ErrorCode] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    @property
    def diagnostic_code(self) -> str:
        """Code suitable for server-side logs."""
        return self.code.value

    def is_retryable(self) -> bool:
        """Check if this error might be resolved by retrying."""
        return False

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary representation (server-side only)."""
        result = {
            "error": self.code.value,
            "error_description": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


class MalformedToken(AuthPipelineError):
    """Token does not have the compact three-segment structure."""

    default_code = ErrorCode.MALFORMED


class BadSignature(AuthPipelineError):
    """No trusted key verifies the token signature."""

    default_code = ErrorCode.BAD_SIGNATURE


class ExpiredToken(AuthPipelineError):
    """Token ``exp`` is outside the accepted window."""

    default_code = ErrorCode.EXPIRED

    def __init__(self, message: str = "Token has expired",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, ErrorCode.EXPIRED, details)


class ClaimMismatch(AuthPipelineError):
    """A semantic claim (issuer, audience, nonce, ...) failed validation."""

    _codes = {
        "iss": ErrorCode.ISS_MISMATCH,
        "aud": ErrorCode.AUD_MISMATCH,
        "azp": ErrorCode.AZP_MISMATCH,
        "nonce": ErrorCode.NONCE_MISMATCH,
        "nbf": ErrorCode.NBF_VIOLATION,
        "iat": ErrorCode.IAT_IN_FUTURE,
        "sub": ErrorCode.SUB_MISSING,
    }

    def __init__(self, claim: str, message: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        code = self._codes.get(claim, ErrorCode.AUTHENTICATION_FAILED)
        super().__init__(message or f"Claim '{claim}' rejected", code, details)
        self.claim = claim


class StateMismatch(AuthPipelineError):
    """Callback does not match a live, unconsumed authorization request."""

    default_code = ErrorCode.STATE_MISMATCH


class ExchangeFailed(AuthPipelineError):
    """Provider rejected the authorization code exchange."""

    default_code = ErrorCode.EXCHANGE_FAILED

    def __init__(self, provider_error: str, description: Optional[str] = None,
                 status: Optional[int] = None):
        message = f"Code exchange rejected by provider: {provider_error}"
        details: Dict[str, Any] = {"provider_error": provider_error}
        if description:
            details["provider_error_description"] = description
        if status is not None:
            details["status"] = status
        super().__init__(message, ErrorCode.EXCHANGE_FAILED, details)
        self.provider_error = provider_error
        self.description = description
        self.status = status


class TransientNetworkError(AuthPipelineError):
    """Connection-level failure talking to the provider."""

    default_code = ErrorCode.NETWORK_ERROR

    def is_retryable(self) -> bool:
        return True


class RequestStoreError(AuthPipelineError):
    """Pending-request store is full, unavailable or refused the write."""

    default_code = ErrorCode.REQUEST_STORE_ERROR


class ConfigurationError(AuthPipelineError, ValueError):
    """Configuration is missing or would weaken security."""

    default_code = ErrorCode.INVALID_CONFIGURATION


class UnsupportedAlgorithmError(AuthPipelineError):
    """Key object declares an algorithm the engine cannot handle."""

    default_code = ErrorCode.UNSUPPORTED_ALGORITHM


class AuthenticationFailed(AuthPipelineError):
    """
    Opaque outcome surfaced to callers of the pipeline facade.

    The message never varies. ``diagnostic`` holds the code of the underlying
    failure for server-side logs; the original error is chained as ``__cause__``.
    """

    PUBLIC_MESSAGE = "authentication failed"

    def __init__(self, diagnostic: ErrorCode = ErrorCode.AUTHENTICATION_FAILED):
        super().__init__(self.PUBLIC_MESSAGE, ErrorCode.AUTHENTICATION_FAILED)
        self.diagnostic = diagnostic

    @property
    def diagnostic_code(self) -> str:
        return self.diagnostic.value

    def to_public_dict(self) -> Dict[str, Any]:
        """Representation safe to return to an end user."""
        return {"error": self.PUBLIC_MESSAGE}


__all__ = [
    "ErrorCode",
    "AuthPipelineError",
    "MalformedToken",
    "BadSignature",
    "ExpiredToken",
    "ClaimMismatch",
    "StateMismatch",
    "ExchangeFailed",
    "TransientNetworkError",
    "RequestStoreError",
    "ConfigurationError",
    "UnsupportedAlgorithmError",
    "AuthenticationFailed",
]
