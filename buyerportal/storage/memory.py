from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from buyerportal.logging import get_logger
from buyerportal.storage.errors import ConstraintViolation
from buyerportal.storage.models import ROLES, USER_STATUSES, Company, User

_UPDATABLE_USER_FIELDS = {"name", "role", "company_id", "status", "sessions_revoked_at"}


class MemoryStore:
    """In-process identity store for local users, companies and credentials.

    With ``persist=True`` every write snapshots the maps to
    ``<fs_root>/state/memory_store.json`` so identities survive a restart.
    """

    def __init__(self, fs_root: str = "/tmp/buyerportal", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.companies: Dict[str, Company] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        # RLock so helpers can call each other while holding it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.persist = persist
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

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
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                name=name,
                role=role,
                company_id=company_id,
                status=status,
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return replace(user) if user else None

    def list_users(
        self, company_id: Optional[str] = None, limit: int = 100
    ) -> List[User]:
        with self._data_lock:
            results = [
                replace(u)
                for u in self.users.values()
                if company_id is None or u.company_id == company_id
            ]
        return sorted(results, key=lambda u: u.created_at)[:limit]

    def update_user(self, user_id: str, **fields) -> Optional[User]:
        unknown = set(fields) - _UPDATABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        if "role" in fields and fields["role"] not in ROLES:
            raise ConstraintViolation("unknown role", {"field": "role", "value": fields["role"]})
        if "status" in fields and fields["status"] not in USER_STATUSES:
            raise ConstraintViolation("unknown status", {"field": "status"})
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for key, value in fields.items():
                setattr(user, key, value)
            self._persist_state()
            return replace(user)

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        return self.update_user(user_id, role=role)

    def deactivate_user(self, user_id: str) -> Optional[User]:
        return self.update_user(user_id, status="inactive")

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # companies
    def create_company(
        self,
        name: str,
        *,
        parent_company_id: Optional[str] = None,
        company_id: Optional[str] = None,
    ) -> Company:
        with self._data_lock:
            if company_id and company_id in self.companies:
                raise ConstraintViolation("company already exists", {"field": "id"})
            if parent_company_id:
                parent = self.companies.get(parent_company_id)
                if not parent:
                    raise ConstraintViolation(
                        "parent company not found", {"field": "parent_company_id"}
                    )
                if parent.parent_company_id:
                    # Hierarchy is at most two levels deep
                    raise ConstraintViolation(
                        "parent company is itself a subsidiary",
                        {"field": "parent_company_id"},
                    )
            company = Company.new(
                name, parent_company_id=parent_company_id, company_id=company_id
            )
            self.companies[company.id] = company
            self._persist_state()
            return replace(company)

    def get_company(self, company_id: str) -> Optional[Company]:
        with self._data_lock:
            company = self.companies.get(str(company_id))
            return replace(company) if company else None

    def list_companies(self) -> List[Company]:
        with self._data_lock:
            results = [replace(c) for c in self.companies.values()]
        return sorted(results, key=lambda c: c.created_at)

    def list_child_companies(self, parent_company_id: str) -> List[Company]:
        with self._data_lock:
            results = [
                replace(c)
                for c in self.companies.values()
                if c.parent_company_id == str(parent_company_id)
            ]
        return sorted(results, key=lambda c: c.created_at)

    # persistence
    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "companies": [self._serialize_company(c) for c in self.companies.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.warning("memory_store_state_corrupt", path=str(path), error=str(exc))
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.companies = {
            c["id"]: self._deserialize_company(c) for c in data.get("companies", [])
        }
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.logger.info(
            "memory_store_state_loaded",
            users=len(self.users),
            companies=len(self.companies),
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "role": user.role,
            "company_id": user.company_id,
            "status": user.status,
            "created_at": self._serialize_datetime(user.created_at),
            "sessions_revoked_at": self._serialize_datetime(user.sessions_revoked_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            name=data.get("name"),
            role=data.get("role", "buyer"),
            company_id=data.get("company_id"),
            status=data.get("status", "active"),
            created_at=self._deserialize_datetime(data["created_at"]),
            sessions_revoked_at=self._deserialize_datetime(data.get("sessions_revoked_at")),
        )

    def _serialize_company(self, company: Company) -> dict:
        return {
            "id": company.id,
            "name": company.name,
            "parent_company_id": company.parent_company_id,
            "hierarchy_level": company.hierarchy_level,
            "created_at": self._serialize_datetime(company.created_at),
        }

    def _deserialize_company(self, data: dict) -> Company:
        return Company(
            id=str(data["id"]),
            name=data["name"],
            parent_company_id=data.get("parent_company_id"),
            hierarchy_level=int(data.get("hierarchy_level", 0)),
            created_at=self._deserialize_datetime(data["created_at"]),
        )
