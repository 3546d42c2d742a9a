from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional


class CredentialKind(str, Enum):
    BEARER = "bearer"
    API_KEY = "api_key"
    BASIC = "basic"


@dataclass(frozen=True)
class Credential:
    """Raw credential material pulled from a request, not yet verified."""

    kind: CredentialKind
    token: Optional[str] = None
    api_key: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    client_ip: Optional[str] = None

    def __repr__(self) -> str:
        return f"Credential(kind={self.kind.value!r})"


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is None:
        value = headers.get(name.lower())
    return value.strip() if value else None


def _decode_basic(encoded: str) -> Optional[tuple[str, str]]:
    try:
        decoded = base64.b64decode(encoded, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None
    username, sep, password = decoded.partition(":")
    if not sep or not username:
        return None
    return username, password


def extract_credential(
    headers: Mapping[str, str], *, client_ip: Optional[str] = None
) -> Optional[Credential]:
    """First match wins: Bearer, then Key / X-API-Key, then HTTP Basic."""

    authorization = _header(headers, "Authorization") or ""
    scheme, _, value = authorization.partition(" ")
    scheme = scheme.lower()
    value = value.strip()

    if scheme == "bearer" and value:
        return Credential(CredentialKind.BEARER, token=value, client_ip=client_ip)
    if scheme == "key" and value:
        return Credential(CredentialKind.API_KEY, api_key=value, client_ip=client_ip)

    api_key = _header(headers, "X-API-Key")
    if api_key:
        return Credential(CredentialKind.API_KEY, api_key=api_key, client_ip=client_ip)

    if scheme == "basic" and value:
        parsed = _decode_basic(value)
        if parsed:
            username, password = parsed
            return Credential(
                CredentialKind.BASIC,
                username=username,
                password=password,
                client_ip=client_ip,
            )
    return None
