"""Unit tests for RS256 signing keys and the token signer.

Tests for:
- Key loading, pairing and kid derivation
- Access token claims and verification failures
- ID tokens and the JWKS document
"""

import time

import jwt
import pytest
from jwt.algorithms import RSAAlgorithm

from adminauth.config import Settings
from adminauth.service.signer import (
    KeyLoadError,
    SigningKeys,
    TokenExpiredError,
    TokenIssuerError,
    TokenSignatureError,
    TokenSigner,
    generate_signing_keys,
    load_signing_keys,
)

ISSUER = "http://auth.test"


@pytest.fixture(scope="module")
def pem_pair():
    return generate_signing_keys()


@pytest.fixture(scope="module")
def keys(pem_pair):
    return SigningKeys.from_pem(*pem_pair)


@pytest.fixture
def signer(keys):
    return TokenSigner(keys, ISSUER, access_ttl_seconds=900, id_token_ttl_seconds=3600)


class TestSigningKeys:
    """Tests for key loading."""

    def test_kid_is_stable_for_same_key(self, pem_pair):
        """The same public key always yields the same kid."""
        first = SigningKeys.from_pem(*pem_pair)
        second = SigningKeys.from_pem(*pem_pair)

        assert first.kid == second.kid
        assert len(first.kid) == 16

    def test_new_key_changes_kid(self, keys):
        """Rotating the key pair produces a different kid."""
        rotated = SigningKeys.from_pem(*generate_signing_keys())

        assert rotated.kid != keys.kid

    def test_mismatched_pair_rejected(self, pem_pair):
        """A public key from another pair is refused."""
        _, other_public = generate_signing_keys()

        with pytest.raises(KeyLoadError):
            SigningKeys.from_pem(pem_pair[0], other_public)

    def test_garbage_pem_rejected(self):
        with pytest.raises(KeyLoadError):
            SigningKeys.from_pem(b"not a key", b"not a key either")

    def test_inline_pem_with_escaped_newlines(self, pem_pair):
        """Inline PEMs from env files may carry literal \\n sequences."""
        private_pem, public_pem = pem_pair
        settings = Settings(
            jwt_private_key_pem=private_pem.decode().replace("\n", "\\n"),
            jwt_public_key_pem=public_pem.decode().replace("\n", "\\n"),
        )

        loaded = load_signing_keys(settings)

        assert loaded.kid == SigningKeys.from_pem(*pem_pair).kid

    def test_key_files_loaded_from_paths(self, pem_pair, tmp_path):
        private_path = tmp_path / "private-key.pem"
        public_path = tmp_path / "public-key.pem"
        private_path.write_bytes(pem_pair[0])
        public_path.write_bytes(pem_pair[1])
        settings = Settings(
            jwt_private_key_path=str(private_path),
            jwt_public_key_path=str(public_path),
        )

        assert load_signing_keys(settings).kid == SigningKeys.from_pem(*pem_pair).kid

    def test_missing_key_file_is_fatal(self, tmp_path):
        settings = Settings(
            jwt_private_key_path=str(tmp_path / "missing.pem"),
            jwt_public_key_path=str(tmp_path / "missing.pub"),
        )

        with pytest.raises(KeyLoadError):
            load_signing_keys(settings)


class TestAccessTokens:
    """Tests for access token signing and verification."""

    def test_access_token_claims(self, signer):
        """Access tokens carry sub, iss, iat, exp and a kid header."""
        token = signer.sign_access_token("user-1")

        header = jwt.get_unverified_header(token)
        claims = signer.verify_access_token(token)

        assert header["alg"] == "RS256"
        assert header["kid"] == signer.kid
        assert claims["sub"] == "user-1"
        assert claims["iss"] == ISSUER
        assert claims["exp"] - claims["iat"] == 900
        assert claims["type"] == "access"
        assert "aud" not in claims

    def test_tokens_have_unique_jti(self, signer):
        first = signer.verify_access_token(signer.sign_access_token("user-1"))
        second = signer.verify_access_token(signer.sign_access_token("user-1"))

        assert first["jti"] != second["jti"]

    def test_expired_token(self, keys):
        """Tokens minted in the past fail as expired."""
        past = TokenSigner(keys, ISSUER, access_ttl_seconds=60, clock=lambda: time.time() - 3600)
        current = TokenSigner(keys, ISSUER)

        with pytest.raises(TokenExpiredError):
            current.verify_access_token(past.sign_access_token("user-1"))

    def test_wrong_issuer(self, keys, signer):
        other = TokenSigner(keys, "http://elsewhere.test")

        with pytest.raises(TokenIssuerError):
            signer.verify_access_token(other.sign_access_token("user-1"))

    def test_foreign_key_rejected(self, signer):
        """A token signed by a different key has an unknown kid."""
        stranger = TokenSigner(SigningKeys.from_pem(*generate_signing_keys()), ISSUER)

        with pytest.raises(TokenSignatureError):
            signer.verify_access_token(stranger.sign_access_token("user-1"))

    def test_tampered_payload_rejected(self, signer):
        token = signer.sign_access_token("user-1")
        header, payload, signature = token.split(".")
        forged = signer.sign_access_token("user-2").split(".")[1]

        with pytest.raises(TokenSignatureError):
            signer.verify_access_token(".".join([header, forged, signature]))

    def test_malformed_token(self, signer):
        with pytest.raises(TokenSignatureError):
            signer.verify_access_token("not-a-jwt")

    def test_audience_checked_only_when_requested(self, signer):
        token = signer.sign_access_token("user-1", audience="client-a")

        assert signer.verify_access_token(token)["aud"] == "client-a"
        assert signer.verify_access_token(token, audience="client-a")["sub"] == "user-1"
        with pytest.raises(TokenSignatureError):
            signer.verify_access_token(token, audience="client-b")

    def test_remaining_seconds(self, keys):
        now = 1_700_000_000
        signer = TokenSigner(keys, ISSUER, access_ttl_seconds=900, clock=lambda: now)

        assert signer.remaining_seconds({"exp": now + 120}) == 120
        assert signer.remaining_seconds({"exp": now - 5}) == 0
        assert signer.remaining_seconds({}) == 0


class TestIdTokensAndJwks:
    """Tests for OIDC ID tokens and key publication."""

    def test_id_token_audience_and_lifetime(self, signer, keys):
        token = signer.sign_id_token({"sub": "user-1", "nonce": "n-1"}, "client-a")

        claims = jwt.decode(
            token, keys.public_key, algorithms=["RS256"], audience="client-a", issuer=ISSUER
        )

        assert claims["nonce"] == "n-1"
        assert claims["exp"] - claims["iat"] == 3600

    def test_id_token_rejected_as_access_token(self, signer):
        token = signer.sign_id_token({"sub": "user-1"}, "client-a")

        with pytest.raises(TokenSignatureError):
            signer.verify_access_token(token)
        with pytest.raises(TokenSignatureError):
            signer.verify_access_token(token, audience="client-a")

    def test_jwks_verifies_issued_tokens(self, signer):
        """The published JWK is enough to verify a token."""
        jwks = signer.jwks()
        (jwk,) = jwks["keys"]

        assert jwk["kid"] == signer.kid
        assert jwk["alg"] == "RS256"
        assert jwk["use"] == "sig"
        assert jwk["kty"] == "RSA"
        assert set(jwk) == {"kty", "kid", "alg", "use", "n", "e"}

        public_key = RSAAlgorithm.from_jwk(jwk)
        claims = jwt.decode(
            signer.sign_access_token("user-1"),
            public_key,
            algorithms=["RS256"],
            issuer=ISSUER,
        )
        assert claims["sub"] == "user-1"
