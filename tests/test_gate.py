"""Unit tests for the access gate pipeline."""

import time
from datetime import datetime, timedelta, timezone

import pytest

from adminauth.service.errors import AuthenticationError, ForbiddenError
from adminauth.service.gate import (
    ADMIN_ONLY,
    MSG_FORBIDDEN,
    MSG_INVALID_TOKEN,
    MSG_LOGIN_EXPIRED,
    MSG_NOT_LOGGED_IN,
    MSG_PASSWORD_CHANGED,
    MSG_SESSION_INVALID,
    MSG_USER_GONE,
    AccessGate,
    BearerHeaderSource,
    CookieSource,
    restrict_to,
)
from adminauth.service.revocation import RevocationCache
from adminauth.service.signer import SigningKeys, TokenSigner, generate_signing_keys
from adminauth.storage.memory import MemoryStore
from adminauth.storage.ttl_cache import MemoryCache

ISSUER = "http://auth.test"


@pytest.fixture(scope="module")
def keys():
    return SigningKeys.from_pem(*generate_signing_keys())


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def signer(keys):
    return TokenSigner(keys, ISSUER)


@pytest.fixture
def revocation():
    return RevocationCache(MemoryCache())


@pytest.fixture
def gate(memory_store, signer, revocation):
    return AccessGate(memory_store, signer, revocation)


@pytest.fixture
def operator(memory_store):
    return memory_store.create_user("op@example.com", "op", role="operator")


def bearer(token):
    return {"authorization": f"Bearer {token}"}


async def _denied(gate, headers=None, cookies=None, policy=None):
    with pytest.raises(AuthenticationError) as excinfo:
        await gate.authenticate(headers or {}, cookies or {}, policy)
    return excinfo.value


class TestTokenSources:
    """Tests for token extraction order."""

    def test_bearer_header(self):
        assert BearerHeaderSource().extract({"authorization": "Bearer abc"}, {}) == "abc"
        assert BearerHeaderSource().extract({"authorization": "Basic abc"}, {}) is None
        assert BearerHeaderSource().extract({"authorization": "Bearer "}, {}) is None

    def test_cookie(self):
        assert CookieSource().extract({}, {"accessToken": "abc"}) == "abc"
        assert CookieSource("jwt").extract({}, {"accessToken": "abc"}) is None

    def test_header_wins_over_cookie(self, gate):
        token = gate.extract_token({"authorization": "Bearer header"}, {"accessToken": "cookie"})

        assert token == "header"

    def test_falls_back_to_cookie(self, gate):
        assert gate.extract_token({}, {"accessToken": "cookie"}) == "cookie"


class TestGatePipeline:
    """Tests for each stage of the gate."""

    async def test_valid_token_passes(self, gate, signer, operator):
        token = signer.sign_access_token(operator.id)

        ctx = await gate.authenticate(bearer(token), {})

        assert ctx.user_id == operator.id
        assert ctx.role == "operator"
        assert ctx.token == token
        assert ctx.claims["sub"] == operator.id

    async def test_missing_token(self, gate):
        error = await _denied(gate)

        assert error.message == MSG_NOT_LOGGED_IN
        assert error.status_code == 401
        assert error.detail == {"stage": "token_extracted"}

    async def test_blacklisted_token(self, gate, signer, revocation, operator):
        token = signer.sign_access_token(operator.id)
        await revocation.blacklist(token, 60)

        error = await _denied(gate, bearer(token))

        assert error.message == MSG_SESSION_INVALID

    async def test_unreachable_blacklist_denies(self, memory_store, signer, operator):
        """The gate fails closed when the revocation cache is down."""

        class DownCache:
            async def exists(self, key):
                raise ConnectionError("down")

        gate = AccessGate(memory_store, signer, RevocationCache(DownCache()))

        error = await _denied(gate, bearer(signer.sign_access_token(operator.id)))

        assert error.message == MSG_SESSION_INVALID

    async def test_expired_token(self, gate, keys, operator):
        past = TokenSigner(keys, ISSUER, access_ttl_seconds=60, clock=lambda: time.time() - 600)

        error = await _denied(gate, bearer(past.sign_access_token(operator.id)))

        assert error.message == MSG_LOGIN_EXPIRED

    async def test_invalid_signature(self, gate, operator):
        stranger = TokenSigner(SigningKeys.from_pem(*generate_signing_keys()), ISSUER)

        error = await _denied(gate, bearer(stranger.sign_access_token(operator.id)))

        assert error.message == MSG_INVALID_TOKEN
        assert error.detail == {"stage": "signature_verified"}

    async def test_id_token_is_not_an_access_token(self, gate, signer, operator):
        id_token = signer.sign_id_token({"sub": operator.id}, "dashboard")

        error = await _denied(gate, bearer(id_token))

        assert error.message == MSG_INVALID_TOKEN
        assert error.detail == {"stage": "signature_verified"}

    async def test_deleted_principal(self, gate, signer, memory_store, operator):
        token = signer.sign_access_token(operator.id)
        memory_store.delete_user(operator.id)

        error = await _denied(gate, bearer(token))

        assert error.message == MSG_USER_GONE

    async def test_inactive_principal(self, gate, signer, memory_store, operator):
        token = signer.sign_access_token(operator.id)
        memory_store.update_user(operator.id, is_active=False)

        error = await _denied(gate, bearer(token))

        assert error.message == MSG_USER_GONE

    async def test_token_older_than_password_change(self, gate, signer, memory_store, operator):
        token = signer.sign_access_token(operator.id)
        memory_store.save_password(
            operator.id, "hash", "argon2id", changed_at=datetime.now(timezone.utc) + timedelta(seconds=5)
        )

        error = await _denied(gate, bearer(token))

        assert error.message == MSG_PASSWORD_CHANGED
        assert error.detail == {"stage": "freshness_checked"}

    async def test_token_after_password_change_passes(self, gate, signer, memory_store, operator):
        memory_store.save_password(
            operator.id, "hash", "argon2id", changed_at=datetime.now(timezone.utc) - timedelta(seconds=5)
        )

        ctx = await gate.authenticate(bearer(signer.sign_access_token(operator.id)), {})

        assert ctx.user_id == operator.id


class TestRolePolicy:
    """Tests for role authorization."""

    def test_restrict_to(self):
        policy = restrict_to("admin", "auditor")

        assert policy.allows("admin")
        assert policy.allows("auditor")
        assert not policy.allows("operator")
        assert not policy.allows(None)

    async def test_wrong_role_forbidden(self, gate, signer, operator):
        with pytest.raises(ForbiddenError) as excinfo:
            await gate.authenticate(bearer(signer.sign_access_token(operator.id)), {}, ADMIN_ONLY)

        assert excinfo.value.message == MSG_FORBIDDEN
        assert excinfo.value.status_code == 403

    async def test_admin_allowed(self, gate, signer, memory_store):
        admin = memory_store.create_user("admin@example.com", "admin", role="admin")

        ctx = await gate.authenticate(bearer(signer.sign_access_token(admin.id)), {}, ADMIN_ONLY)

        assert ctx.role == "admin"

    def test_freshness_boundary_uses_whole_seconds(self, operator):
        """A token issued in the same second as the change is still fresh."""
        changed = datetime(2024, 1, 1, 12, 0, 0, 900000, tzinfo=timezone.utc)
        operator.password_changed_at = changed
        same_second = int(changed.timestamp())

        assert not AccessGate.changed_password_after(operator, {"iat": same_second})
        assert AccessGate.changed_password_after(operator, {"iat": same_second - 1})
