"""
Tests for the compact token codec.
"""

import base64
import json

import pytest

from authpipe.errors import ErrorCode, MalformedToken
from authpipe.token.codec import (
    MAX_JSON_DEPTH, MAX_TOKEN_LENGTH, TokenCodec, b64url_decode, b64url_encode, decode_unverified,
)


def segment(raw) -> str:
    if isinstance(raw, str):
        raw = raw.encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


SIG = segment(b"signature-bytes")
HEADER = segment('{"alg":"HS256"}')
EMPTY = segment("{}")


@pytest.fixture
def codec():
    return TokenCodec()


class TestBase64Url:
    """Strict base64url segments"""

    def test_round_trip(self):
        for data in (b"a", b"ab", b"abc", b"\xff\xfe\xfd\xfc"):
            assert b64url_decode(b64url_encode(data)) == data

    @pytest.mark.parametrize("bad", ["abc=", "ab+c", "ab/c", "a", "ab c", "", "abcde"])
    def test_invalid_segments(self, bad):
        with pytest.raises(MalformedToken):
            b64url_decode(bad)

    def test_non_canonical_trailing_bits(self):
        """'QR' decodes like 'QQ' but is not the canonical encoding"""
        assert b64url_decode("QQ") == b"A"
        with pytest.raises(MalformedToken):
            b64url_decode("QR")


class TestTokenCodec:
    """Decode and encode"""

    def test_encode_decode_round_trip(self, codec):
        header = {"alg": "HS256", "typ": "JWT", "kid": "k1"}
        payload = {"iss": "https://idp.example", "aud": ["a", "b"], "exp": 1700000000, "n": None}
        wire = codec.encode(header, payload, b"\x01\x02\x03")

        token = codec.decode(wire)
        assert token.header == header
        assert token.payload == payload
        assert token.signature == b"\x01\x02\x03"
        assert token.algorithm == "HS256"
        assert token.kid == "k1"
        assert token.signing_input == codec.encode_signing_input(header, payload)

    def test_payload_order_preserved(self, codec):
        payload = {"z": 1, "a": 2, "m": 3}
        token = codec.decode(codec.encode({"alg": "HS256"}, payload, b"s"))
        assert list(token.payload) == ["z", "a", "m"]

    def test_signing_input_is_verbatim(self, codec):
        """Whitespace in received segments is kept, never re-serialized"""
        header = segment('{ "alg" : "HS256" }')
        payload = segment('{\n  "sub": "x"\n}')
        token = codec.decode(f"{header}.{payload}.{SIG}")
        assert token.signing_input == f"{header}.{payload}".encode("ascii")

    @pytest.mark.parametrize("wire", [
        "onlyone",
        "two.parts",
        "a.b.c.d",
        f".{EMPTY}.{SIG}",
        f"{HEADER}..{SIG}",
        f"{HEADER}.{EMPTY}.",
    ])
    def test_wrong_segment_count_or_empty(self, codec, wire):
        with pytest.raises(MalformedToken):
            codec.decode(wire)

    def test_non_string_rejected(self, codec):
        with pytest.raises(MalformedToken):
            codec.decode(b"a.b.c")
        with pytest.raises(MalformedToken):
            codec.decode(None)

    @pytest.mark.parametrize("header", [
        "not json",
        "[1, 2]",
        '"string"',
        '{"typ": "JWT"}',
        '{"alg": 5}',
        '{"alg": ""}',
        '{"alg": "HS256", "alg": "none"}',
        '{"alg": "HS256", "x": NaN}',
    ])
    def test_bad_header(self, codec, header):
        with pytest.raises(MalformedToken) as exc_info:
            codec.decode(f"{segment(header)}.{EMPTY}.{SIG}")
        assert exc_info.value.code == ErrorCode.MALFORMED

    def test_bad_payload(self, codec):
        for payload in ("[]", b"\xff\xfe", '{"sub":1,"sub":2}'):
            with pytest.raises(MalformedToken):
                codec.decode(f"{HEADER}.{segment(payload)}.{SIG}")

    def test_deeply_nested_header(self, codec):
        """Nesting past the parser's recursion limit is malformed input"""
        nested = "[" * 20000 + "]" * 20000
        header = segment('{"alg":"HS256","x":' + nested + "}")
        with pytest.raises(MalformedToken):
            codec.decode(f"{header}.{EMPTY}.{SIG}")

    def test_deeply_nested_payload(self, codec):
        nested = '{"a":' + "[" * 20000 + "]" * 20000 + "}"
        with pytest.raises(MalformedToken):
            codec.decode(f"{HEADER}.{segment(nested)}.{SIG}")

    def test_nesting_limit(self, codec):
        shallow = '{"a":' + "[" * 10 + "]" * 10 + "}"
        assert codec.decode(f"{HEADER}.{segment(shallow)}.{SIG}").payload["a"]
        deep = '{"a":' + "[" * (MAX_JSON_DEPTH + 1) + "]" * (MAX_JSON_DEPTH + 1) + "}"
        with pytest.raises(MalformedToken):
            codec.decode(f"{HEADER}.{segment(deep)}.{SIG}")

    def test_oversized_token(self, codec):
        payload = segment('{"pad":"' + "x" * MAX_TOKEN_LENGTH + '"}')
        with pytest.raises(MalformedToken):
            codec.decode(f"{HEADER}.{payload}.{SIG}")

    def test_padded_segment_rejected(self, codec):
        header = base64.urlsafe_b64encode(b'{"alg":"HS256","kk":1}').decode()
        assert header.endswith("=")
        with pytest.raises(MalformedToken):
            codec.decode(f"{header}.{EMPTY}.{SIG}")

    def test_encode_requires_alg_and_signature(self, codec):
        with pytest.raises(MalformedToken):
            codec.encode({"typ": "JWT"}, {}, b"s")
        with pytest.raises(MalformedToken):
            codec.encode({"alg": "HS256"}, {}, b"")

    def test_compact_serialization(self, codec):
        wire = codec.encode({"alg": "HS256"}, {"a": 1}, b"s")
        header, payload, _ = wire.split(".")
        assert b64url_decode(header) == b'{"alg":"HS256"}'
        assert json.loads(b64url_decode(payload)) == {"a": 1}


class TestDecodeUnverified:
    """Inspection helper"""

    def test_returns_header_and_payload(self, codec):
        wire = codec.encode({"alg": "HS256", "kid": "k"}, {"sub": "user"}, b"not-a-real-signature")
        claims = decode_unverified(wire)
        assert claims.header["kid"] == "k"
        assert claims.payload["sub"] == "user"

    def test_still_rejects_malformed(self):
        with pytest.raises(MalformedToken):
            decode_unverified("garbage")
