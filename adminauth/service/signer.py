"""RS256 signing and verification for access and ID tokens.

Keys are loaded once at startup into an immutable :class:`SigningKeys`
value. Rotating keys means building a new value, which yields a new ``kid``.
"""

from __future__ import annotations

import hashlib
import secrets
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

import jwt
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from adminauth.config import Settings
from adminauth.logging import get_logger

ALGORITHM = "RS256"
ACCESS_TOKEN_TYPE = "access"

logger = get_logger(__name__)


class KeyLoadError(RuntimeError):
    """Signing keys are missing, malformed or do not form a pair."""


class TokenError(Exception):
    """Base class for access token verification failures."""


class TokenExpiredError(TokenError):
    pass


class TokenIssuerError(TokenError):
    pass


class TokenSignatureError(TokenError):
    """Bad signature, unknown ``kid`` or a malformed token."""


@dataclass(frozen=True)
class SigningKeys:
    private_key: rsa.RSAPrivateKey
    public_key: rsa.RSAPublicKey
    kid: str

    @classmethod
    def from_pem(cls, private_pem: bytes, public_pem: bytes) -> "SigningKeys":
        try:
            private_key = serialization.load_pem_private_key(private_pem, password=None)
            public_key = serialization.load_pem_public_key(public_pem)
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            raise KeyLoadError(f"unable to parse signing keys: {exc}") from exc
        if not isinstance(private_key, rsa.RSAPrivateKey) or not isinstance(
            public_key, rsa.RSAPublicKey
        ):
            raise KeyLoadError("signing keys must be RSA")
        if private_key.public_key().public_numbers() != public_key.public_numbers():
            raise KeyLoadError("public key does not match private key")
        return cls(private_key=private_key, public_key=public_key, kid=_key_id(public_key))


def _key_id(public_key: rsa.RSAPublicKey) -> str:
    # Re-serialise so whitespace in the configured PEM cannot change the kid
    canonical = public_key.public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return hashlib.sha256(canonical).hexdigest()[:16]


def _read_pem(inline: Optional[str], path: str, label: str) -> bytes:
    if inline and inline.strip():
        # Env files often carry PEMs with escaped newlines
        return inline.strip().replace("\\n", "\n").encode("utf-8")
    try:
        return Path(path).read_bytes()
    except OSError as exc:
        raise KeyLoadError(f"{label} key not readable at {path}: {exc}") from exc


def load_signing_keys(settings: Settings) -> SigningKeys:
    private_pem = _read_pem(
        settings.jwt_private_key_pem, settings.jwt_private_key_path, "private"
    )
    public_pem = _read_pem(
        settings.jwt_public_key_pem, settings.jwt_public_key_path, "public"
    )
    keys = SigningKeys.from_pem(private_pem, public_pem)
    logger.info("signing_keys_loaded", kid=keys.kid)
    return keys


def generate_signing_keys(bits: int = 2048) -> Tuple[bytes, bytes]:
    """Return a fresh ``(private_pem, public_pem)`` RSA pair."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=bits)
    private_pem = private_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    public_pem = private_key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return private_pem, public_pem


class TokenSigner:
    def __init__(
        self,
        keys: SigningKeys,
        issuer: str,
        *,
        access_ttl_seconds: int = 900,
        id_token_ttl_seconds: int = 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.keys = keys
        self.issuer = issuer
        self.access_ttl_seconds = access_ttl_seconds
        self.id_token_ttl_seconds = id_token_ttl_seconds
        self._clock = clock

    @property
    def kid(self) -> str:
        return self.keys.kid

    def _now(self) -> int:
        return int(self._clock())

    def _encode(self, payload: Dict[str, Any]) -> str:
        return jwt.encode(
            payload, self.keys.private_key, algorithm=ALGORITHM, headers={"kid": self.kid}
        )

    def sign_access_token(self, principal_id: str, audience: Optional[str] = None) -> str:
        now = self._now()
        payload: Dict[str, Any] = {
            "sub": principal_id,
            "iat": now,
            "exp": now + self.access_ttl_seconds,
            "iss": self.issuer,
            "jti": secrets.token_hex(16),
            "type": ACCESS_TOKEN_TYPE,
        }
        if audience:
            payload["aud"] = audience
        return self._encode(payload)

    def sign_id_token(self, claims: Dict[str, Any], audience: str) -> str:
        now = self._now()
        payload = {
            **claims,
            "iss": self.issuer,
            "aud": audience,
            "iat": now,
            "exp": now + self.id_token_ttl_seconds,
        }
        return self._encode(payload)

    def verify_access_token(self, token: str, audience: Optional[str] = None) -> Dict[str, Any]:
        """Decode ``token`` and return its claims.

        Raises :class:`TokenExpiredError`, :class:`TokenIssuerError` or
        :class:`TokenSignatureError`.
        """
        try:
            header = jwt.get_unverified_header(token)
        except jwt.InvalidTokenError as exc:
            raise TokenSignatureError("malformed token") from exc
        if header.get("kid") != self.kid:
            raise TokenSignatureError("unknown signing key")
        try:
            claims = jwt.decode(
                token,
                self.keys.public_key,
                algorithms=[ALGORITHM],
                issuer=self.issuer,
                audience=audience,
                options={
                    "verify_aud": audience is not None,
                    "require": ["exp", "iat", "sub"],
                },
            )
        except jwt.ExpiredSignatureError as exc:
            raise TokenExpiredError("token expired") from exc
        except jwt.InvalidIssuerError as exc:
            raise TokenIssuerError("issuer mismatch") from exc
        except jwt.InvalidTokenError as exc:
            raise TokenSignatureError(str(exc) or "invalid token") from exc
        if claims.get("type") != ACCESS_TOKEN_TYPE:
            raise TokenSignatureError("not an access token")
        return claims

    def remaining_seconds(self, claims: Dict[str, Any]) -> int:
        try:
            return max(0, int(claims.get("exp", 0)) - self._now())
        except (TypeError, ValueError):
            return 0

    def public_jwk(self) -> Dict[str, Any]:
        jwk = RSAAlgorithm.to_jwk(self.keys.public_key, as_dict=True)
        return {
            "kty": jwk["kty"],
            "kid": self.kid,
            "alg": ALGORITHM,
            "use": "sig",
            "n": jwk["n"],
            "e": jwk["e"],
        }

    def jwks(self) -> Dict[str, Any]:
        return {"keys": [self.public_jwk()]}
