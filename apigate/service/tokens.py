from __future__ import annotations

import base64
import binascii
import json
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from apigate.logging import get_logger
from apigate.service.errors import AuthInvalidError
from apigate.service.signer import Signer

logger = get_logger(__name__)


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class TokenClaims:
    """Signed token payload. Times are integer unix seconds."""

    issuer: str
    audience: str
    issued_at: int
    expires_at: int
    subject_id: int
    token_type: TokenType
    token_id: str
    not_before: Optional[int] = None
    user: Optional[dict] = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "iss": self.issuer,
            "aud": self.audience,
            "iat": self.issued_at,
            "exp": self.expires_at,
            "sub": self.subject_id,
            "type": self.token_type.value,
            "jti": self.token_id,
        }
        if self.not_before is not None:
            payload["nbf"] = self.not_before
        if self.user is not None:
            payload["user"] = self.user
        return payload

    @classmethod
    def from_payload(cls, payload: Any) -> "TokenClaims":
        if not isinstance(payload, dict):
            raise AuthInvalidError("Invalid token encoding")
        try:
            nbf = payload.get("nbf")
            return cls(
                issuer=str(payload["iss"]),
                audience=str(payload["aud"]),
                issued_at=int(payload["iat"]),
                expires_at=int(payload["exp"]),
                subject_id=int(payload["sub"]),
                token_type=TokenType(payload["type"]),
                token_id=str(payload["jti"]),
                not_before=int(nbf) if nbf is not None else None,
                user=payload.get("user") if isinstance(payload.get("user"), dict) else None,
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise AuthInvalidError("Invalid token claims") from exc


def encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


_SEGMENT_ALPHABET = re.compile(r"[A-Za-z0-9_-]*")


def decode_segment(segment: str) -> bytes:
    """Strict unpadded base64url; only the canonical spelling of a value decodes."""

    if not _SEGMENT_ALPHABET.fullmatch(segment):
        raise ValueError("segment is not base64url")
    padding = "=" * ((4 - len(segment) % 4) % 4)
    data = base64.urlsafe_b64decode(segment + padding)
    # unused trailing bits would otherwise let several spellings share one value
    if encode_segment(data) != segment:
        raise ValueError("segment is not canonical base64url")
    return data


class TokenCodec:
    """Three-segment ``header.claims.signature`` encoding signed by a ``Signer``."""

    def __init__(self, signer: Signer) -> None:
        self.signer = signer

    @property
    def algorithm(self) -> str:
        return self.signer.algorithm.value

    def encode(self, claims: TokenClaims) -> str:
        header = {"typ": "JWT", "alg": self.algorithm}
        header_enc = encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = encode_segment(
            json.dumps(claims.to_payload(), separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        signature = self.signer.sign(signing_input.encode())
        return f"{signing_input}.{encode_segment(signature)}"

    def decode(self, token: str) -> TokenClaims:
        """Check structure, algorithm and signature; time checks are the caller's."""

        segments = token.split(".") if isinstance(token, str) else []
        if len(segments) != 3:
            raise AuthInvalidError("Invalid token format")
        header_b64, payload_b64, sig_b64 = segments

        try:
            header = json.loads(decode_segment(header_b64))
            payload = json.loads(decode_segment(payload_b64))
            signature = decode_segment(sig_b64)
        except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError, ValueError):
            raise AuthInvalidError("Invalid token encoding")

        if not isinstance(header, dict) or header.get("alg") != self.algorithm:
            # Reject alg confusion, including "none" and HMAC variants
            logger.warning(
                "token_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise AuthInvalidError("Invalid token algorithm")

        if not self.signer.verify(f"{header_b64}.{payload_b64}".encode(), signature):
            raise AuthInvalidError("Invalid token signature")

        return TokenClaims.from_payload(payload)

    @staticmethod
    def peek_token_id(token: str) -> Optional[str]:
        """Read ``jti`` without verifying the signature."""

        segments = token.split(".")
        if len(segments) != 3:
            return None
        try:
            payload = json.loads(decode_segment(segments[1]))
        except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError, ValueError):
            return None
        if not isinstance(payload, dict) or not payload.get("jti"):
            return None
        return str(payload["jti"])
