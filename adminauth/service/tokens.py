"""Opaque token helpers shared by the refresh, setup and reset flows."""

from __future__ import annotations

import hashlib
import secrets


def generate_token(nbytes: int = 32) -> str:
    """Return ``nbytes`` of CSPRNG output as lowercase hex."""
    return secrets.token_hex(nbytes)


def hash_token(token: str) -> str:
    """Digest stored in place of a raw opaque token."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_temp_password(nbytes: int = 12) -> str:
    return secrets.token_urlsafe(nbytes)
