# Copyright (c) 2025 Gimel Foundation and the persons identified as the document authors.
# All rights reserved. This file is subject to the Gimel Foundation's Legal Provisions Relating to GiFo Documents.
# See http://GimelFoundation.com or https://github.com/Gimel-Foundation for details.
# Code Components extracted from GiFo-RfC 0111 must include this license text and are provided without warranty.

"""
Common utilities and helper functions for authpipe.
"""

import hmac
import secrets
from datetime import datetime, timezone
from typing import Optional, Union


def get_current_time() -> datetime:
    """Get current UTC time."""
    return datetime.now(timezone.utc)


def to_timestamp(value: Union[datetime, int, float]) -> int:
    """Convert a datetime (naive values are treated as UTC) to a Unix timestamp."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp())
    return int(value)


def from_timestamp(value: Union[int, float]) -> datetime:
    """Convert a Unix timestamp to an aware UTC datetime."""
    return datetime.fromtimestamp(value, tz=timezone.utc)


def resolve_now(now: Optional[Union[datetime, int, float]] = None) -> float:
    """Return ``now`` as a float timestamp, defaulting to the current time."""
    if now is None:
        return get_current_time().timestamp()
    if isinstance(now, datetime):
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now.timestamp()
    return float(now)


def generate_secure_token(nbytes: int = 32) -> str:
    """Generate a cryptographically secure URL-safe random token."""
    return secrets.token_urlsafe(nbytes)


def constant_time_equals(a: Optional[str], b: Optional[str]) -> bool:
    """Compare two strings without leaking timing information."""
    if a is None or b is None:
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))
