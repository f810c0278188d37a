"""Tests for the JSON-persisted in-memory store."""

from datetime import timedelta

import pytest

from adminauth.storage.errors import ConstraintViolation, ReferenceViolation
from adminauth.storage.memory import MemoryStore
from adminauth.storage.models import utcnow


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


class TestUsers:
    """Tests for principal records."""

    def test_default_roles_seeded(self, memory_store):
        names = [role.name for role in memory_store.list_roles()]

        assert names == ["admin", "operator"]

    def test_create_user_defaults(self, memory_store):
        user = memory_store.create_user("a@example.com", "alice")

        assert user.role == "operator"
        assert user.is_active
        assert user.refresh_token is None
        assert memory_store.get_user_by_email("a@example.com").id == user.id
        assert memory_store.get_user_by_username("alice").id == user.id

    def test_duplicate_email_rejected(self, memory_store):
        memory_store.create_user("a@example.com", "alice")

        with pytest.raises(ConstraintViolation) as excinfo:
            memory_store.create_user("a@example.com", "alice2")

        assert excinfo.value.detail["field"] == "email"

    def test_duplicate_username_rejected(self, memory_store):
        memory_store.create_user("a@example.com", "alice")

        with pytest.raises(ConstraintViolation):
            memory_store.create_user("b@example.com", "alice")

    def test_unknown_role_rejected(self, memory_store):
        with pytest.raises(ConstraintViolation):
            memory_store.create_user("a@example.com", "alice", role="ghost")

    def test_update_rejects_protected_fields(self, memory_store):
        """Refresh and password-change fields have dedicated writers."""
        user = memory_store.create_user("a@example.com", "alice")

        with pytest.raises(ValueError):
            memory_store.update_user(user.id, refresh_token="x")
        with pytest.raises(ValueError):
            memory_store.update_user(user.id, password_changed_at=utcnow())

    def test_list_and_count_with_filters(self, memory_store):
        memory_store.create_user("a@example.com", "alice")
        bob = memory_store.create_user("b@example.com", "bob", role="admin")
        memory_store.create_user("c@example.com", "carol", is_active=False)

        assert memory_store.count_users() == 3
        assert [u.id for u in memory_store.list_users(role="admin")] == [bob.id]
        assert memory_store.count_users(is_active=False) == 1
        assert len(memory_store.list_users(limit=2)) == 2

    def test_delete_removes_credentials(self, memory_store):
        user = memory_store.create_user("a@example.com", "alice")
        memory_store.save_password(user.id, "hash", "argon2id")

        assert memory_store.delete_user(user.id)
        assert memory_store.get_password_record(user.id) is None
        assert not memory_store.delete_user(user.id)

    def test_password_for_missing_user(self, memory_store):
        with pytest.raises(ConstraintViolation):
            memory_store.save_password("missing", "hash", "argon2id")


class TestRefreshSlot:
    """Tests for the compare-and-swap slot."""

    def test_swap_requires_expected_digest(self, memory_store):
        user = memory_store.create_user("a@example.com", "alice")
        expires = utcnow() + timedelta(hours=1)
        memory_store.set_refresh_token(user.id, "digest-1", expires)

        assert not memory_store.swap_refresh_token(user.id, "stale", "digest-2", expires)
        assert memory_store.swap_refresh_token(user.id, "digest-1", "digest-2", expires)
        assert memory_store.get_user_by_refresh_token("digest-2").id == user.id
        assert memory_store.get_user_by_refresh_token("digest-1") is None

    def test_clear(self, memory_store):
        user = memory_store.create_user("a@example.com", "alice")
        memory_store.set_refresh_token(user.id, "digest", utcnow() + timedelta(hours=1))

        memory_store.clear_refresh_token(user.id)

        assert memory_store.get_user(user.id).refresh_token is None
        assert memory_store.get_user(user.id).refresh_token_expires is None


class TestRolesAndPermissions:
    """Tests for role and permission references."""

    def test_role_rename_cascades_to_members(self, memory_store):
        role = memory_store.create_role("auditor")
        user = memory_store.create_user("a@example.com", "alice", role="auditor")

        memory_store.update_role(role.id, name="reviewer")

        assert memory_store.get_user(user.id).role == "reviewer"

    def test_role_with_members_cannot_be_deleted(self, memory_store):
        role = memory_store.create_role("auditor")
        memory_store.create_user("a@example.com", "alice", role="auditor")

        with pytest.raises(ReferenceViolation):
            memory_store.delete_role(role.id)

    def test_referenced_permission_cannot_be_deleted(self, memory_store):
        role = memory_store.create_role("auditor")
        permission = memory_store.create_permission("users:read")
        memory_store.set_role_permissions(role.id, [permission.id])

        with pytest.raises(ReferenceViolation):
            memory_store.delete_permission(permission.id)

        memory_store.set_role_permissions(role.id, [])
        assert memory_store.delete_permission(permission.id)

    def test_unknown_permission_rejected(self, memory_store):
        role = memory_store.create_role("auditor")

        with pytest.raises(ConstraintViolation):
            memory_store.set_role_permissions(role.id, ["nope"])

    def test_duplicate_names_rejected(self, memory_store):
        memory_store.create_permission("users:read")

        with pytest.raises(ConstraintViolation):
            memory_store.create_permission("users:read")
        with pytest.raises(ConstraintViolation):
            memory_store.create_role("admin")


class TestPersistence:
    """Tests for reloading state from disk."""

    def test_state_survives_restart(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = store.create_user("a@example.com", "alice", role="admin")
        store.save_password(user.id, "hash", "argon2id", changed_at=utcnow())
        store.set_refresh_token(user.id, "digest", utcnow() + timedelta(hours=1))
        permission = store.create_permission("users:read")
        role = store.get_role_by_name("admin")
        store.set_role_permissions(role.id, [permission.id])

        reloaded = MemoryStore(fs_root=str(tmp_path))

        restored = reloaded.get_user(user.id)
        assert restored.email == "a@example.com"
        assert restored.role == "admin"
        assert restored.password_changed_at is not None
        assert restored.refresh_token_expires > utcnow()
        assert reloaded.get_password_record(user.id) == ("hash", "argon2id")
        assert reloaded.get_role_by_name("admin").permissions == [permission.id]
        assert (tmp_path / "state" / "memory_store.json").exists()
