import asyncio
import inspect
import json
import os
import sys
import tempfile
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

# Test environment must exist before anything imports the runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="buyerportal_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# No Redis: session state, reset tokens and rate limits stay in-process
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("TOKEN_SWEEP_INTERVAL_SECONDS", "0")
os.environ.setdefault("UPSTREAM_BASE_URL", "https://upstream.test")
os.environ.setdefault("UPSTREAM_STORE_HASH", "teststore")

import httpx  # noqa: E402
import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from buyerportal.service.runtime import reset_runtime_for_tests  # noqa: E402
from buyerportal.service.upstream import (  # noqa: E402
    COMPANY_PATH,
    LOGIN_PATH,
    RESOURCE_PATHS,
    UpstreamClient,
)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def runtime():
    from buyerportal.service.runtime import get_runtime

    return get_runtime()


class FakeUpstream:
    """In-process stand-in for the upstream B2B platform.

    Collections are returned unfiltered across companies, the way a
    misbehaving or privileged upstream would, so tenant filtering in the
    broker is what keeps callers apart.
    """

    def __init__(self, settings):
        self.settings = settings
        self.accounts: Dict[str, Dict[str, Any]] = {}
        self.tokens: Dict[str, str] = {}
        self.resources: Dict[str, List[Dict[str, Any]]] = {kind: [] for kind in RESOURCE_PATHS}
        self.requests: List[httpx.Request] = []
        self.logged_out: List[str] = []
        self.down = False
        self._next_id = 1000

    def add_account(
        self,
        email: str,
        password: str,
        company_id: str,
        *,
        company_name: Optional[str] = None,
        parent_company_id: Optional[str] = None,
        first_name: str = "Test",
        last_name: str = "Buyer",
    ) -> None:
        self.accounts[email] = {
            "password": password,
            "company_id": company_id,
            "company_name": company_name or f"Company {company_id}",
            "parent_company_id": parent_company_id,
            "first_name": first_name,
            "last_name": last_name,
        }

    def add(self, kind: str, **item: Any) -> Dict[str, Any]:
        self.resources[kind].append(item)
        return item

    def revoke_all(self) -> None:
        self.tokens.clear()

    @staticmethod
    def _ok(data: Any) -> httpx.Response:
        return httpx.Response(200, json={"code": 200, "data": data, "meta": {"message": "SUCCESS"}})

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.down:
            raise httpx.ConnectError("upstream down", request=request)
        path = request.url.path
        if path == LOGIN_PATH:
            return self._login(request)
        token = request.headers.get("Authorization", "").removeprefix("Bearer ")
        if path == self.settings.upstream_logout_path:
            self.tokens.pop(token, None)
            self.logged_out.append(token)
            return httpx.Response(200, json={"code": 200})
        email = self.tokens.get(token)
        if email is None:
            return httpx.Response(401, json={"meta": {"message": "invalid token"}})
        if path == COMPANY_PATH:
            account = self.accounts[email]
            parent = account["parent_company_id"]
            return self._ok(
                {
                    "id": int(account["company_id"]),
                    "companyName": account["company_name"],
                    "parentCompany": {"id": int(parent)} if parent else None,
                }
            )
        for kind, base in RESOURCE_PATHS.items():
            if path == base or path.startswith(base + "/"):
                parts = [p for p in path[len(base):].split("/") if p]
                return self._resource(kind, request, parts)
        return httpx.Response(404, json={"meta": {"message": "no route"}})

    def _login(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        account = self.accounts.get(body.get("email"))
        if account is None or account["password"] != body.get("password"):
            return httpx.Response(401, json={"meta": {"message": "bad credentials"}})
        token = f"up-{uuid.uuid4().hex}"
        self.tokens[token] = body["email"]
        return self._ok(
            {
                "token": token,
                "user": {
                    "firstName": account["first_name"],
                    "lastName": account["last_name"],
                    "companyId": int(account["company_id"]),
                },
            }
        )

    def _find(self, kind: str, resource_id: str) -> Optional[Dict[str, Any]]:
        return next(
            (item for item in self.resources[kind] if str(item.get("id")) == resource_id), None
        )

    def _resource(self, kind: str, request: httpx.Request, parts: List[str]) -> httpx.Response:
        method = request.method
        if not parts:
            if method == "GET":
                return self._ok({"list": list(self.resources[kind])})
            if method == "POST":
                self._next_id += 1
                item = {**json.loads(request.content or b"{}"), "id": self._next_id}
                self.resources[kind].append(item)
                return self._ok(item)
        item = self._find(kind, parts[0]) if parts else None
        if item is None:
            return httpx.Response(404, json={"meta": {"message": "not found"}})
        if len(parts) == 2:
            return self._ok({"id": item["id"], "action": parts[1], "status": "done"})
        if method == "GET":
            return self._ok(item)
        if method == "PATCH":
            item.update(json.loads(request.content or b"{}"))
            return self._ok(item)
        if method == "DELETE":
            self.resources[kind].remove(item)
            return self._ok({"id": item["id"]})
        return httpx.Response(405)


@pytest.fixture
def fake_upstream(runtime) -> FakeUpstream:
    """Install a FakeUpstream behind the runtime's upstream client."""
    fake = FakeUpstream(runtime.settings)
    client = UpstreamClient(runtime.settings, transport=httpx.MockTransport(fake))
    runtime.upstream = client
    runtime.auth.upstream = client
    return fake


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
