from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from buyerportal.logging import get_logger
from buyerportal.storage.errors import ConstraintViolation
from buyerportal.storage.models import ROLES, USER_STATUSES, Company, User

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS portal_companies (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        parent_company_id TEXT REFERENCES portal_companies(id),
        hierarchy_level INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS portal_users (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT,
        role TEXT NOT NULL DEFAULT 'buyer',
        company_id TEXT REFERENCES portal_companies(id),
        status TEXT NOT NULL DEFAULT 'active',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        sessions_revoked_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS portal_credentials (
        user_id TEXT PRIMARY KEY REFERENCES portal_users(id),
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS portal_users_company_idx ON portal_users (company_id)",
    "CREATE INDEX IF NOT EXISTS portal_companies_parent_idx ON portal_companies (parent_company_id)",
)

_UPDATABLE_USER_COLUMNS = ("name", "role", "company_id", "status", "sessions_revoked_at")


class PostgresStore:
    """Postgres-backed identity store for local users, companies and credentials."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        company_id = row.get("company_id")
        return User(
            id=str(row["id"]),
            email=row["email"],
            name=row.get("name"),
            role=row.get("role") or "buyer",
            company_id=str(company_id) if company_id is not None else None,
            status=row.get("status") or "active",
            created_at=row.get("created_at") or datetime.now(timezone.utc),
            sessions_revoked_at=row.get("sessions_revoked_at"),
        )

    @staticmethod
    def _row_to_company(row: Dict[str, Any]) -> Company:
        parent = row.get("parent_company_id")
        return Company(
            id=str(row["id"]),
            name=row["name"],
            parent_company_id=str(parent) if parent is not None else None,
            hierarchy_level=int(row.get("hierarchy_level") or 0),
            created_at=row.get("created_at") or datetime.now(timezone.utc),
        )

    # users
    def create_user(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        role: str = "buyer",
        company_id: Optional[str] = None,
        status: str = "active",
    ) -> User:
        if role not in ROLES:
            raise ConstraintViolation("unknown role", {"field": "role", "value": role})
        user = User(
            id=str(uuid.uuid4()),
            email=email.strip().lower(),
            name=name,
            role=role,
            company_id=company_id,
            status=status,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO portal_users (id, email, name, role, company_id, status, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.name,
                        user.role,
                        user.company_id,
                        user.status,
                        user.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("company not found", {"field": "company_id"})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM portal_users WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM portal_users WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def list_users(
        self, company_id: Optional[str] = None, limit: int = 100
    ) -> List[User]:
        with self._connect() as conn:
            if company_id is None:
                rows = conn.execute(
                    "SELECT * FROM portal_users ORDER BY created_at LIMIT %s", (limit,)
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM portal_users WHERE company_id = %s ORDER BY created_at LIMIT %s",
                    (company_id, limit),
                ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - set(_UPDATABLE_USER_COLUMNS)
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        if "role" in fields and fields["role"] not in ROLES:
            raise ConstraintViolation("unknown role", {"field": "role", "value": fields["role"]})
        if "status" in fields and fields["status"] not in USER_STATUSES:
            raise ConstraintViolation("unknown status", {"field": "status"})
        if not fields:
            return self.get_user(user_id)
        # Column names come from the allow-list above, never from callers
        columns = [c for c in _UPDATABLE_USER_COLUMNS if c in fields]
        assignments = ", ".join(f"{column} = %s" for column in columns)
        params = [fields[column] for column in columns] + [user_id]
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE portal_users SET {assignments} WHERE id = %s RETURNING *",
                    params,
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("company not found", {"field": "company_id"})
        return self._row_to_user(row) if row else None

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        return self.update_user(user_id, role=role)

    def deactivate_user(self, user_id: str) -> Optional[User]:
        return self.update_user(user_id, status="inactive")

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO portal_credentials (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM portal_credentials WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # companies
    def create_company(
        self,
        name: str,
        *,
        parent_company_id: Optional[str] = None,
        company_id: Optional[str] = None,
    ) -> Company:
        if parent_company_id:
            parent = self.get_company(parent_company_id)
            if parent is None:
                raise ConstraintViolation(
                    "parent company not found", {"field": "parent_company_id"}
                )
            if parent.parent_company_id:
                raise ConstraintViolation(
                    "parent company is itself a subsidiary",
                    {"field": "parent_company_id"},
                )
        company = Company.new(
            name, parent_company_id=parent_company_id, company_id=company_id
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO portal_companies (id, name, parent_company_id, hierarchy_level, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        company.id,
                        company.name,
                        company.parent_company_id,
                        company.hierarchy_level,
                        company.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("company already exists", {"field": "id"})
        return company

    def get_company(self, company_id: str) -> Optional[Company]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM portal_companies WHERE id = %s", (str(company_id),)
            ).fetchone()
        return self._row_to_company(row) if row else None

    def list_companies(self) -> List[Company]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM portal_companies ORDER BY created_at"
            ).fetchall()
        return [self._row_to_company(row) for row in rows]

    def list_child_companies(self, parent_company_id: str) -> List[Company]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM portal_companies WHERE parent_company_id = %s ORDER BY created_at",
                (str(parent_company_id),),
            ).fetchall()
        return [self._row_to_company(row) for row in rows]
