"""Unit tests for refresh rotation, the revocation blacklist and auth codes."""

import asyncio
import threading
import time
from datetime import timedelta

import pytest

from adminauth.service.auth_codes import AUTH_CODE_PREFIX, AuthCodeCache, AuthorizationGrant
from adminauth.service.errors import DependencyError
from adminauth.service.refresh_tokens import RefreshTokenStore, RotationOutcome
from adminauth.service.revocation import BLACKLIST_PREFIX, RevocationCache
from adminauth.service.tokens import hash_token
from adminauth.storage.memory import MemoryStore
from adminauth.storage.models import utcnow
from adminauth.storage.ttl_cache import MemoryCache


class RacingStore(MemoryStore):
    """Runs ``before_swap`` once, just ahead of the compare-and-swap."""

    before_swap = None

    def swap_refresh_token(self, user_id, expected_hash, new_hash, expires_at):
        hook, self.before_swap = self.before_swap, None
        if hook:
            hook()
        return super().swap_refresh_token(user_id, expected_hash, new_hash, expires_at)


class BrokenCache:
    async def set(self, key, value, ttl_seconds=None):
        raise ConnectionError("cache down")

    async def get(self, key):
        raise ConnectionError("cache down")

    async def getdel(self, key):
        raise ConnectionError("cache down")

    async def exists(self, key):
        raise ConnectionError("cache down")

    async def delete(self, key):
        raise ConnectionError("cache down")


@pytest.fixture
def memory_store(tmp_path):
    return RacingStore(fs_root=str(tmp_path))


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("holder@example.com", "holder")


@pytest.fixture
def refresh_store(memory_store):
    return RefreshTokenStore(memory_store, ttl_seconds=3600)


class TestRefreshTokenStore:
    """Tests for the single-slot refresh token."""

    def test_create_stores_only_digest(self, refresh_store, memory_store, user):
        token = refresh_store.create(user.id)

        stored = memory_store.get_user(user.id)
        assert len(token) == 128
        assert stored.refresh_token == hash_token(token)
        assert stored.refresh_token != token
        assert stored.refresh_token_expires > utcnow()

    def test_create_replaces_previous_token(self, refresh_store, user):
        """Only the most recently issued token is live."""
        first = refresh_store.create(user.id)
        second = refresh_store.create(user.id)

        assert refresh_store.validate(first) is None
        assert refresh_store.validate(second).id == user.id

    def test_create_for_unknown_principal(self, refresh_store):
        with pytest.raises(LookupError):
            refresh_store.create("missing")

    def test_validate_rejects_expired(self, refresh_store, memory_store, user):
        token = refresh_store.create(user.id)
        memory_store.set_refresh_token(
            user.id, hash_token(token), utcnow() - timedelta(seconds=1)
        )

        assert refresh_store.validate(token) is None
        assert refresh_store.rotate(token).outcome is RotationOutcome.INVALID

    def test_rotate_issues_new_token(self, refresh_store, user):
        old = refresh_store.create(user.id)

        rotation = refresh_store.rotate(old)

        assert rotation.rotated
        assert rotation.user_id == user.id
        assert rotation.token != old
        assert refresh_store.validate(old) is None
        assert refresh_store.validate(rotation.token).id == user.id

    def test_replayed_token_is_invalid(self, refresh_store, user):
        old = refresh_store.create(user.id)
        refresh_store.rotate(old)

        assert refresh_store.rotate(old).outcome is RotationOutcome.INVALID

    def test_concurrent_rotation_reports_conflict(self, refresh_store, memory_store, user):
        """A rotation that loses the race never overwrites the winner."""
        old = refresh_store.create(user.id)
        winner = {}

        def rotate_first():
            winner["rotation"] = refresh_store.rotate(old)

        memory_store.before_swap = rotate_first
        loser = refresh_store.rotate(old)

        assert winner["rotation"].rotated
        assert loser.outcome is RotationOutcome.CONFLICT
        assert loser.token is None
        assert refresh_store.validate(winner["rotation"].token).id == user.id

    def test_parallel_rotations_have_single_winner(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path / "parallel"))
        holder = store.create_user("race@example.com", "race")
        refresh_store = RefreshTokenStore(store, ttl_seconds=3600)
        old = refresh_store.create(holder.id)
        results = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            results.append(refresh_store.rotate(old))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sum(1 for r in results if r.rotated) == 1
        assert all(
            r.outcome in (RotationOutcome.INVALID, RotationOutcome.CONFLICT)
            for r in results
            if not r.rotated
        )

    def test_revoke_clears_slot(self, refresh_store, user):
        token = refresh_store.create(user.id)

        refresh_store.revoke(user.id)

        assert refresh_store.validate(token) is None
        assert refresh_store.rotate(token).outcome is RotationOutcome.INVALID


class TestRevocationCache:
    """Tests for the access token blacklist."""

    async def test_blacklist_and_check(self):
        cache = MemoryCache()
        revocation = RevocationCache(cache)

        await revocation.blacklist("tok", 60)

        assert await revocation.is_blacklisted("tok")
        assert await cache.exists(f"{BLACKLIST_PREFIX}tok")
        assert not await revocation.is_blacklisted("other")

    async def test_non_positive_ttl_is_skipped(self):
        cache = MemoryCache()
        revocation = RevocationCache(cache)

        await revocation.blacklist("tok", 0)

        assert not await cache.exists(f"{BLACKLIST_PREFIX}tok")

    async def test_entry_expires_with_token(self):
        cache = MemoryCache()
        revocation = RevocationCache(cache)
        await revocation.blacklist("tok", 5)

        key = f"{BLACKLIST_PREFIX}tok"
        value, _ = cache._entries[key]
        cache._entries[key] = (value, time.monotonic() - 1)

        assert not await revocation.is_blacklisted("tok")

    async def test_unreachable_cache_fails_closed(self):
        """A lookup error is treated as revoked."""
        revocation = RevocationCache(BrokenCache())

        assert await revocation.is_blacklisted("tok")

    async def test_remove(self):
        revocation = RevocationCache(MemoryCache())
        await revocation.blacklist("tok", 60)

        await revocation.remove("tok")

        assert not await revocation.is_blacklisted("tok")


class TestAuthCodeCache:
    """Tests for one-time authorization codes."""

    async def test_code_is_single_use(self):
        codes = AuthCodeCache(MemoryCache())
        code = codes.generate_code()
        grant = codes.new_grant("user-1", "client-a", "https://app.test/cb", state="s1", nonce="n1")

        await codes.store(code, grant)
        first = await codes.consume(code)
        second = await codes.consume(code)

        assert isinstance(first, AuthorizationGrant)
        assert first.user_id == "user-1"
        assert first.state == "s1"
        assert first.nonce == "n1"
        assert not first.expired
        assert second is None

    async def test_concurrent_consumers_get_one_grant(self):
        codes = AuthCodeCache(MemoryCache())
        code = codes.generate_code()
        await codes.store(code, codes.new_grant("user-1", "client-a", "https://app.test/cb"))

        results = await asyncio.gather(*(codes.consume(code) for _ in range(5)))

        assert sum(1 for r in results if r is not None) == 1

    async def test_default_lifetime_is_ten_minutes(self):
        codes = AuthCodeCache(MemoryCache())
        grant = codes.new_grant("user-1", "client-a", "https://app.test/cb")

        remaining = (grant.expires_at - utcnow()).total_seconds()

        assert codes.ttl_seconds == 600
        assert 590 < remaining <= 600

    async def test_code_format_and_key(self):
        cache = MemoryCache()
        codes = AuthCodeCache(cache)
        code = codes.generate_code()
        await codes.store(code, codes.new_grant("user-1", "client-a", "https://app.test/cb"))

        assert len(code) == 64
        assert int(code, 16) >= 0
        assert await cache.exists(f"{AUTH_CODE_PREFIX}{code}")
        assert await codes.exists(code)

    async def test_corrupt_payload_is_ignored(self):
        cache = MemoryCache()
        codes = AuthCodeCache(cache)
        await cache.set(f"{AUTH_CODE_PREFIX}bad", "{not json", 60)

        assert await codes.consume("bad") is None

    async def test_cache_failure_raises_dependency_error(self):
        codes = AuthCodeCache(BrokenCache())

        with pytest.raises(DependencyError):
            await codes.consume("code")
        with pytest.raises(DependencyError):
            await codes.store("code", codes.new_grant("u", "c", "https://app.test/cb"))
