"""Tests for the signer and the three-segment token codec."""

import json

import pytest

from apigate.config import Settings, SigningAlgorithm
from apigate.service.errors import AuthInvalidError
from apigate.service.signer import Signer
from apigate.service.tokens import (
    TokenClaims,
    TokenCodec,
    TokenType,
    decode_segment,
    encode_segment,
)


@pytest.fixture(scope="module")
def signer():
    return Signer.generate()


@pytest.fixture
def codec(signer):
    return TokenCodec(signer)


def _claims(**overrides) -> TokenClaims:
    values = dict(
        issuer="apigate",
        audience="apigate-v1",
        issued_at=1_700_000_000,
        expires_at=1_700_003_600,
        subject_id=7,
        token_type=TokenType.ACCESS,
        token_id="abc123",
        user={"id": 7, "username": "alice", "email": "alice@example.com", "roles": ["editor"]},
    )
    values.update(overrides)
    return TokenClaims(**values)


class TestSigner:
    """Tests for RSA signing."""

    def test_signature_verifies(self, signer):
        sig = signer.sign(b"payload")
        assert signer.verify(b"payload", sig)

    def test_signature_rejects_other_data(self, signer):
        sig = signer.sign(b"payload")
        assert not signer.verify(b"payload!", sig)

    def test_signature_rejects_garbage(self, signer):
        assert not signer.verify(b"payload", b"\x00" * 16)

    def test_other_key_cannot_verify(self, signer):
        other = Signer.generate()
        assert not other.verify(b"payload", signer.sign(b"payload"))

    def test_from_settings_persists_and_reloads_key(self, tmp_path):
        key_path = tmp_path / "keys" / "signing.pem"
        settings = Settings(
            shared_fs_root=str(tmp_path),
            jwt_private_key_path=str(key_path),
            server_secret="s" * 40,
        )
        first = Signer.from_settings(settings)
        assert key_path.exists()
        assert key_path.with_suffix(".pub").exists()
        assert oct(key_path.stat().st_mode & 0o777) == "0o600"

        second = Signer.from_settings(settings)
        assert second.verify(b"data", first.sign(b"data"))

    def test_algorithm_selects_hash(self):
        signer = Signer.generate(algorithm=SigningAlgorithm.RS512)
        assert signer.algorithm == SigningAlgorithm.RS512
        assert signer.verify(b"x", signer.sign(b"x"))


class TestSegments:
    def test_segments_are_unpadded(self):
        assert "=" not in encode_segment(b"a")
        assert decode_segment(encode_segment(b"a")) == b"a"

    def test_rejects_standard_alphabet(self):
        with pytest.raises(ValueError):
            decode_segment("ab+/")

    def test_rejects_non_canonical_trailing_bits(self):
        assert encode_segment(b"\x00") == "AA"
        with pytest.raises(ValueError):
            decode_segment("AB")

    def test_rejects_impossible_length(self):
        with pytest.raises(ValueError):
            decode_segment("AAAAA")


class TestTokenCodec:
    """Tests for encoding and decoding compact tokens."""

    def test_encode_produces_three_segments(self, codec):
        token = codec.encode(_claims())
        assert token.count(".") == 2
        header = json.loads(decode_segment(token.split(".")[0]))
        assert header == {"typ": "JWT", "alg": "RS256"}

    def test_decode_returns_claims(self, codec):
        claims = _claims()
        decoded = codec.decode(codec.encode(claims))
        assert decoded == claims

    def test_payload_uses_registered_claim_names(self, codec):
        token = codec.encode(_claims(not_before=1_700_000_010))
        payload = json.loads(decode_segment(token.split(".")[1]))
        assert payload["iss"] == "apigate"
        assert payload["sub"] == 7
        assert payload["type"] == "access"
        assert payload["jti"] == "abc123"
        assert payload["nbf"] == 1_700_000_010

    def test_wrong_segment_count(self, codec):
        with pytest.raises(AuthInvalidError, match="Invalid token format"):
            codec.decode("only.two")

    def test_bad_encoding(self, codec):
        with pytest.raises(AuthInvalidError, match="Invalid token encoding"):
            codec.decode("!!!.@@@.###")

    def test_tampered_payload_rejected(self, codec):
        header, _, signature = codec.encode(_claims()).split(".")
        forged = encode_segment(
            json.dumps(_claims(subject_id=1).to_payload()).encode()
        )
        with pytest.raises(AuthInvalidError, match="Invalid token signature"):
            codec.decode(f"{header}.{forged}.{signature}")

    def test_alg_none_rejected(self, codec):
        header = encode_segment(json.dumps({"typ": "JWT", "alg": "none"}).encode())
        payload = encode_segment(json.dumps(_claims().to_payload()).encode())
        with pytest.raises(AuthInvalidError, match="Invalid token algorithm"):
            codec.decode(f"{header}.{payload}.")

    def test_hmac_alg_rejected(self, codec):
        token = codec.encode(_claims())
        _, payload, signature = token.split(".")
        header = encode_segment(json.dumps({"typ": "JWT", "alg": "HS256"}).encode())
        with pytest.raises(AuthInvalidError, match="Invalid token algorithm"):
            codec.decode(f"{header}.{payload}.{signature}")

    def test_missing_claims_rejected(self, codec, signer):
        header = encode_segment(json.dumps({"typ": "JWT", "alg": "RS256"}).encode())
        payload = encode_segment(json.dumps({"sub": 1}).encode())
        signature = encode_segment(signer.sign(f"{header}.{payload}".encode()))
        with pytest.raises(AuthInvalidError, match="Invalid token claims"):
            codec.decode(f"{header}.{payload}.{signature}")

    def test_peek_token_id(self, codec):
        token = codec.encode(_claims(token_id="peek-me"))
        assert TokenCodec.peek_token_id(token) == "peek-me"
        assert TokenCodec.peek_token_id("not-a-token") is None

    @pytest.mark.parametrize("position", [-1, -2, 10])
    def test_altered_signature_character_rejected(self, codec, position):
        token = codec.encode(_claims())
        header, payload, signature = token.split(".")
        index = position % len(signature)
        for replacement in "AQgwBCDEFabc-_":
            if replacement == signature[index]:
                continue
            altered = signature[:index] + replacement + signature[index + 1 :]
            with pytest.raises(AuthInvalidError):
                codec.decode(f"{header}.{payload}.{altered}")

    def test_padded_signature_rejected(self, codec):
        token = codec.encode(_claims())
        with pytest.raises(AuthInvalidError, match="Invalid token encoding"):
            codec.decode(token + "==")
