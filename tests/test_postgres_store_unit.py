from contextlib import contextmanager
from datetime import datetime, timezone

import pytest

from buyerportal.storage.errors import ConstraintViolation
from buyerportal.storage.postgres import PostgresStore


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class _Result:
    def __init__(self, row):
        self.row = row

    def fetchone(self):
        return self.row

    def fetchall(self):
        return [self.row] if self.row else []


class RecordingPool:
    """Captures SQL and answers every statement with one canned row."""

    def __init__(self, row=None):
        self.row = row
        self.statements = []

    @contextmanager
    def connection(self):
        yield self

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        return _Result(self.row)


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    return store


def test_row_to_user_normalizes_ids_and_defaults():
    created = datetime(2026, 3, 1, tzinfo=timezone.utc)
    user = PostgresStore._row_to_user(
        {
            "id": "u-1",
            "email": "buyer@acme.test",
            "name": None,
            "role": None,
            "company_id": 101,
            "status": None,
            "created_at": created,
            "sessions_revoked_at": None,
        }
    )
    assert user.company_id == "101"
    assert user.role == "buyer"
    assert user.status == "active"
    assert user.created_at == created
    assert user.is_active


def test_row_to_company_handles_missing_parent():
    company = PostgresStore._row_to_company(
        {"id": 100, "name": "Acme", "parent_company_id": None, "hierarchy_level": None}
    )
    assert company.id == "100"
    assert company.parent_company_id is None
    assert company.hierarchy_level == 0


def test_update_user_rejects_unknown_fields_before_touching_db():
    store = _store(DummyPool())
    with pytest.raises(ValueError):
        store.update_user("u-1", email="new@acme.test")
    with pytest.raises(ConstraintViolation):
        store.update_user("u-1", role="owner")
    with pytest.raises(ConstraintViolation):
        store.update_user("u-1", status="suspended")


def test_create_user_rejects_unknown_role_before_touching_db():
    store = _store(DummyPool())
    with pytest.raises(ConstraintViolation):
        store.create_user("buyer@acme.test", role="owner")


def test_update_user_builds_allow_listed_assignment():
    pool = RecordingPool(
        {"id": "u-1", "email": "buyer@acme.test", "role": "manager", "company_id": "102"}
    )
    store = _store(pool)

    user = store.update_user("u-1", company_id="102", role="manager")

    sql, params = pool.statements[-1]
    assert sql == "UPDATE portal_users SET role = %s, company_id = %s WHERE id = %s RETURNING *"
    assert params == ["manager", "102", "u-1"]
    assert user.role == "manager"
    assert user.company_id == "102"


def test_create_user_lowercases_email():
    pool = RecordingPool()
    store = _store(pool)
    user = store.create_user("Buyer@Acme.TEST", name="Ada", company_id="101")
    assert user.email == "buyer@acme.test"
    _, params = pool.statements[-1]
    assert params[1] == "buyer@acme.test"
    assert params[4] == "101"


def test_create_company_refuses_third_level():
    pool = RecordingPool({"id": "101", "name": "Acme East", "parent_company_id": "100"})
    store = _store(pool)
    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_company("Acme East Depot", parent_company_id="101")
    assert excinfo.value.detail == {"field": "parent_company_id"}
