"""
Unit tests for token parsing and signature verification.
"""

import base64
import json

import pytest
from jwt.utils import base64url_decode, base64url_encode

from service_auth.app.validation.codec import (
    TokenEncodingError,
    TokenFormatError,
    decode_json_segment,
    split_token,
    strip_bearer,
)
from service_auth.app.validation.models import ErrorKind
from service_auth.app.validation.signature import SignatureVerifier
from shared.test_helpers import TEST_SECRET, session_token_factory


def encode_segment(value) -> str:
    return base64url_encode(json.dumps(value).encode()).decode()


class TestCodec:
    """Test cases for the segment codec."""

    def test_strip_bearer_prefix(self):
        assert strip_bearer("Bearer abc.def.ghi") == "abc.def.ghi"
        assert strip_bearer("bearer abc.def.ghi") == "abc.def.ghi"
        assert strip_bearer("  abc.def.ghi ") == "abc.def.ghi"

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "a..c", ".b.c"])
    def test_split_rejects_wrong_shape(self, token):
        with pytest.raises(TokenFormatError):
            split_token(token)

    def test_decode_accepts_missing_padding(self):
        unpadded = base64.urlsafe_b64encode(b'{"a":1}').rstrip(b"=").decode()
        assert decode_json_segment(unpadded) == {"a": 1}

    def test_decode_reads_claims_of_minted_token(self):
        _, payload, _ = session_token_factory.token(sub="7001").split(".")
        assert decode_json_segment(payload)["sub"] == "7001"

    def test_decode_rejects_non_object(self):
        with pytest.raises(TokenEncodingError):
            decode_json_segment(encode_segment([1, 2]))

    def test_decode_rejects_invalid_utf8(self):
        with pytest.raises(TokenEncodingError):
            decode_json_segment(base64url_encode(b"\xff\xfe{}").decode())


class TestSignatureVerifier:
    """Test cases for SignatureVerifier."""

    @pytest.fixture
    def verifier(self):
        return SignatureVerifier(TEST_SECRET)

    def test_empty_secret_rejected(self):
        with pytest.raises(ValueError):
            SignatureVerifier("")

    def test_accepts_minted_token(self, verifier):
        assert verifier.verify(session_token_factory.token()) is None

    def test_wrong_secret_rejected(self):
        token = session_token_factory.token()
        assert SignatureVerifier("another-shared-secret-of-32-bytes!").verify(token) == ErrorKind.SIGNATURE_MISMATCH

    def test_other_algorithm_rejected(self, verifier):
        token = session_token_factory.encode(session_token_factory.claims(), algorithm="HS512")
        assert verifier.verify(token) == ErrorKind.UNSUPPORTED_ALGORITHM

    def test_every_signature_bit_flip_rejected(self, verifier):
        header, payload, signature = session_token_factory.token().split(".")
        digest = base64url_decode(signature)

        for index in range(len(digest)):
            for bit in range(8):
                tampered = bytearray(digest)
                tampered[index] ^= 1 << bit
                forged = f"{header}.{payload}.{base64url_encode(bytes(tampered)).decode()}"
                assert verifier.verify(forged) == ErrorKind.SIGNATURE_MISMATCH

    def test_payload_change_rejected(self, verifier):
        header, payload, signature = session_token_factory.token().split(".")
        claims = decode_json_segment(payload)
        claims["sub"] = "someone-else"
        assert verifier.verify(f"{header}.{encode_segment(claims)}.{signature}") == ErrorKind.SIGNATURE_MISMATCH

    def test_undecodable_signature_rejected(self, verifier):
        header, payload, _ = session_token_factory.token().split(".")
        assert verifier.verify(f"{header}.{payload}.a") == ErrorKind.SIGNATURE_MISMATCH
