"""
Test 3: Crypto primitives (sessions/crypto.py)

Tests opaque token generation, hashing, constant-time comparison and
TokenSigner.
"""

import re

import pytest

from tessera.config import ConfigFault
from tessera.sessions.crypto import (
    SIGNED_HEADER,
    TOKEN_LENGTH,
    TokenSigner,
    b64decode_json,
    b64encode,
    b64encode_json,
    generate_opaque_token,
    hash_token,
    tokens_equal,
)
from tessera.sessions.faults import InvalidTokenFault

from conftest import TEST_SECRET


TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9_-]{32}$")


# ============================================================================
# Opaque Tokens
# ============================================================================

class TestOpaqueTokens:

    def test_length_and_alphabet(self):
        for _ in range(100):
            token = generate_opaque_token()
            assert len(token) == TOKEN_LENGTH == 32
            assert TOKEN_PATTERN.match(token)

    def test_unique(self):
        tokens = {generate_opaque_token() for _ in range(500)}
        assert len(tokens) == 500


class TestHashing:

    def test_sha256_hex(self):
        # sha256("abc")
        assert hash_token("abc") == (
            "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
        )

    def test_deterministic(self):
        token = generate_opaque_token()
        assert hash_token(token) == hash_token(token)

    def test_tokens_equal(self):
        assert tokens_equal("abc", "abc")
        assert not tokens_equal("abc", "abd")
        assert not tokens_equal("abc", None)
        assert not tokens_equal(None, None)


# ============================================================================
# TokenSigner
# ============================================================================

class TestTokenSigner:

    def test_round_trip(self):
        signer = TokenSigner(TEST_SECRET)
        token = signer.sign({"sub": "anonymous", "n": 1}, expires_in=60)
        claims = signer.verify(token)
        assert claims["sub"] == "anonymous"
        assert claims["n"] == 1
        assert claims["iss"] == "tessera"
        assert claims["aud"] == "tessera"
        assert claims["exp"] == claims["iat"] + 60

    def test_compact_format(self):
        token = TokenSigner(TEST_SECRET).sign({"sub": "x"})
        header, payload, signature = token.split(".")
        assert b64decode_json(header) == {"alg": "HS256", "typ": "JWT"}
        assert b64decode_json(payload)["sub"] == "x"
        assert signature

    def test_short_secret_rejected(self):
        with pytest.raises(ConfigFault):
            TokenSigner("x" * 31)

    def test_wrong_secret(self):
        token = TokenSigner(TEST_SECRET).sign({"sub": "x"})
        with pytest.raises(InvalidTokenFault):
            TokenSigner("another-secret-that-is-also-long-enough").verify(token)

    def test_tampered_payload(self):
        signer = TokenSigner(TEST_SECRET)
        header, _, signature = signer.sign({"sub": "x", "role": "user"}).split(".")
        forged = b64encode_json({"sub": "x", "role": "admin", "iss": "tessera", "aud": "tessera"})
        with pytest.raises(InvalidTokenFault):
            signer.verify(f"{header}.{forged}.{signature}")

    def test_expired(self):
        signer = TokenSigner(TEST_SECRET)
        token = signer.sign({"sub": "x"}, expires_in=-1)
        with pytest.raises(InvalidTokenFault) as exc_info:
            signer.verify(token)
        assert exc_info.value.reason == "expired"

    def test_wrong_audience(self):
        token = TokenSigner(TEST_SECRET, audience="other").sign({"sub": "x"})
        with pytest.raises(InvalidTokenFault):
            TokenSigner(TEST_SECRET).verify(token)

    def test_unsupported_algorithm(self):
        signer = TokenSigner(TEST_SECRET)
        _, payload, signature = signer.sign({"sub": "x"}).split(".")
        header = b64encode_json({"alg": "none", "typ": "JWT"})
        with pytest.raises(InvalidTokenFault):
            signer.verify(f"{header}.{payload}.{signature}")

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d", "!!.??.**"])
    def test_malformed(self, garbage):
        with pytest.raises(InvalidTokenFault):
            TokenSigner(TEST_SECRET).verify(garbage)

    @pytest.mark.parametrize("garbage", [None, "", "abc", "a.b.c"])
    def test_parse_fails_closed(self, garbage):
        assert TokenSigner(TEST_SECRET).parse(garbage) is None

    def test_deeply_nested_header(self):
        token = b64encode(b"[" * 100000) + ".e30.AAAA"
        signer = TokenSigner(TEST_SECRET)

        with pytest.raises(InvalidTokenFault) as exc_info:
            signer.verify(token)
        assert exc_info.value.reason == "unsupported algorithm"
        assert signer.parse(token) is None

    def test_deeply_nested_signed_payload(self):
        signer = TokenSigner(TEST_SECRET)
        payload_b64 = b64encode(b"[" * 100000)
        message = f"{SIGNED_HEADER}.{payload_b64}".encode()
        token = f"{message.decode()}.{b64encode(signer._mac(message))}"

        with pytest.raises(InvalidTokenFault) as exc_info:
            signer.verify(token)
        assert exc_info.value.reason == "undecodable"
        assert signer.parse(token) is None

    def test_parse_valid(self):
        signer = TokenSigner(TEST_SECRET)
        assert signer.parse(signer.sign({"sub": "x"}))["sub"] == "x"
