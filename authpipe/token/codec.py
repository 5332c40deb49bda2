# Copyright (c) 2025 Gimel Foundation and the persons identified as the document authors.
# All rights reserved. This file is subject to the Gimel Foundation's Legal Provisions Relating to GiFo Documents.
# See http://GimelFoundation.com or https://github.com/Gimel-Foundation for details.
# Code Components extracted from GiFo-RfC 0111 must include this license text and are provided without warranty.

"""
Compact token codec: ``base64url(header).base64url(payload).base64url(signature)``.

The codec is independent of key material. ``decode`` keeps the first two wire
segments verbatim as ``signing_input`` so signatures are always checked over
the bytes that were actually signed, never over a re-serialization.
"""

import base64
import binascii
import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from ..errors import MalformedToken

SEGMENT_DELIMITER = "."

# Upper bound on the wire form; larger values are rejected before decoding.
MAX_TOKEN_LENGTH = 64 * 1024
# Deepest nesting of arrays and objects accepted in a header or payload.
MAX_JSON_DEPTH = 32

_BASE64URL = re.compile(r"^[A-Za-z0-9_-]+$")


def b64url_encode(data: bytes) -> str:
    """Encode bytes as unpadded base64url text."""
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def b64url_decode(segment: str) -> bytes:
    """
    Strictly decode one unpadded base64url segment.

    Padding, characters outside the URL-safe alphabet, impossible lengths and
    non-canonical trailing bits are all rejected.
    """
    if not segment or not _BASE64URL.match(segment) or len(segment) % 4 == 1:
        raise MalformedToken("Segment is not valid base64url")
    try:
        data = base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))
    except (binascii.Error, ValueError):
        raise MalformedToken("Segment is not valid base64url")
    if b64url_encode(data) != segment:
        raise MalformedToken("Segment is not canonical base64url")
    return data


def _reject_duplicates(pairs: List[Tuple[str, Any]]) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for key, value in pairs:
        if key in result:
            raise MalformedToken(f"Duplicate member {key!r}")
        result[key] = value
    return result


def _reject_constant(name: str) -> Any:
    raise MalformedToken(f"Non-standard JSON constant {name}")


def _nesting_exceeds(value: Any, limit: int) -> bool:
    stack = [(value, 1)]
    while stack:
        item, depth = stack.pop()
        if isinstance(item, dict):
            children = item.values()
        elif isinstance(item, list):
            children = item
        else:
            continue
        if depth > limit:
            return True
        stack.extend((child, depth + 1) for child in children)
    return False


def _json_object(data: bytes, what: str) -> Dict[str, Any]:
    try:
        text = data.decode("utf-8")
        value = json.loads(text, object_pairs_hook=_reject_duplicates,
                           parse_constant=_reject_constant)
    except (UnicodeDecodeError, ValueError, RecursionError):
        raise MalformedToken(f"Token {what} is not valid JSON")
    if not isinstance(value, dict):
        raise MalformedToken(f"Token {what} must be a JSON object")
    if _nesting_exceeds(value, MAX_JSON_DEPTH):
        raise MalformedToken(f"Token {what} is nested too deeply")
    return value


def _json_bytes(value: Dict[str, Any]) -> bytes:
    return json.dumps(value, separators=(",", ":")).encode("utf-8")


@dataclass(frozen=True)
class DecodedToken:
    """Structurally valid token. Nothing in it is trusted until verified."""
    header: Dict[str, Any]
    payload: Dict[str, Any]
    signing_input: bytes = field(repr=False)
    signature: bytes = field(repr=False)

    @property
    def algorithm(self) -> str:
        return self.header["alg"]

    @property
    def kid(self):
        return self.header.get("kid")


class TokenCodec:
    """Encodes and decodes the three-segment compact token format."""

    def decode(self, wire: str) -> DecodedToken:
        """Split, base64url-decode and parse a wire token."""
        if not isinstance(wire, str):
            raise MalformedToken("Token must be a string")
        if len(wire) > MAX_TOKEN_LENGTH:
            raise MalformedToken("Token exceeds the maximum length")

        segments = wire.split(SEGMENT_DELIMITER)
        if len(segments) != 3 or not all(segments):
            raise MalformedToken("Token must have exactly three non-empty segments")

        header_segment, payload_segment, signature_segment = segments
        header = _json_object(b64url_decode(header_segment), "header")
        payload = _json_object(b64url_decode(payload_segment), "payload")
        signature = b64url_decode(signature_segment)

        if not isinstance(header.get("alg"), str) or not header["alg"]:
            raise MalformedToken("Token header must declare an algorithm")

        signing_input = f"{header_segment}{SEGMENT_DELIMITER}{payload_segment}".encode("ascii")
        return DecodedToken(header=header, payload=payload,
                            signing_input=signing_input, signature=signature)

    def encode_signing_input(self, header: Dict[str, Any], payload: Dict[str, Any]) -> bytes:
        """Bytes that a signer must sign for ``header`` and ``payload``."""
        return (
            b64url_encode(_json_bytes(header)) + SEGMENT_DELIMITER + b64url_encode(_json_bytes(payload))
        ).encode("ascii")

    def encode(self, header: Dict[str, Any], payload: Dict[str, Any], signature: bytes) -> str:
        """Assemble the wire form from its parts."""
        if not isinstance(header.get("alg"), str) or not header["alg"]:
            raise MalformedToken("Token header must declare an algorithm")
        if not signature:
            raise MalformedToken("Signature must not be empty")
        signing_input = self.encode_signing_input(header, payload).decode("ascii")
        return f"{signing_input}{SEGMENT_DELIMITER}{b64url_encode(signature)}"


@dataclass(frozen=True)
class UnverifiedClaims:
    """Header and payload read WITHOUT signature or claim checks."""
    header: Dict[str, Any]
    payload: Dict[str, Any]


def decode_unverified(wire: str) -> UnverifiedClaims:
    """
    Inspect a token without verifying it.

    For debugging and log correlation only. The result carries no trust and
    must never feed an authentication or authorization decision.
    """
    token = TokenCodec().decode(wire)
    return UnverifiedClaims(header=dict(token.header), payload=dict(token.payload))
