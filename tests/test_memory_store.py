from datetime import datetime, timezone

import pytest

from buyerportal.storage.errors import ConstraintViolation
from buyerportal.storage.memory import MemoryStore


def test_memory_store_persists_users_companies_and_credentials(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    parent = store.create_company("Acme Holdings", company_id="100")
    store.create_company("Acme East", parent_company_id=parent.id, company_id="101")
    user = store.create_user("Persist@Acme.test", role="manager", company_id="101")
    store.save_password(user.id, "hash", "argon2id")
    revoked_at = datetime.now(timezone.utc)
    store.update_user(user.id, sessions_revoked_at=revoked_at)

    reloaded = MemoryStore(fs_root=str(tmp_path))

    reloaded_user = reloaded.get_user(user.id)
    assert reloaded_user.email == "persist@acme.test"
    assert reloaded_user.role == "manager"
    assert reloaded_user.company_id == "101"
    assert reloaded_user.sessions_revoked_at == revoked_at
    assert reloaded.get_password_record(user.id) == ("hash", "argon2id")
    assert [c.id for c in reloaded.list_child_companies("100")] == ["101"]
    assert reloaded.get_company("101").hierarchy_level == 1


def test_non_persistent_store_writes_nothing(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path / "volatile"), persist=False)
    store.create_user("temp@acme.test")

    assert not (tmp_path / "volatile").exists()


def test_corrupt_state_file_starts_empty(tmp_path):
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    (state_dir / "memory_store.json").write_text("{not json")

    store = MemoryStore(fs_root=str(tmp_path))

    assert store.list_users() == []


def test_returned_records_are_copies(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    user = store.create_user("copy@acme.test")
    user.role = "superadmin"

    assert store.get_user(user.id).role == "buyer"


def test_constraints(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    store.create_user("dup@acme.test")
    with pytest.raises(ConstraintViolation):
        store.create_user("DUP@acme.test")
    with pytest.raises(ConstraintViolation):
        store.create_user("role@acme.test", role="owner")
    with pytest.raises(ValueError):
        store.update_user("whatever", email="x@acme.test")
    with pytest.raises(ConstraintViolation):
        store.save_password("missing", "hash", "argon2id")

    store.create_company("Top", company_id="1")
    store.create_company("Mid", parent_company_id="1", company_id="2")
    with pytest.raises(ConstraintViolation):
        store.create_company("Bottom", parent_company_id="2")
    with pytest.raises(ConstraintViolation):
        store.create_company("Orphan", parent_company_id="404")
    with pytest.raises(ConstraintViolation):
        store.create_company("Again", company_id="1")
