"""
Shared fixtures: a Microsoft Graph stand-in built on httpx.MockTransport.
"""

import asyncio
import importlib.util
import json
import sys
import types
from datetime import datetime, timezone
from pathlib import Path

import httpx
import pytest

# A source checkout is importable as m365_admin without installing it
if importlib.util.find_spec("m365_admin") is None:
    _pkg_dir = Path(__file__).resolve().parent.parent
    _pkg = types.ModuleType("m365_admin")
    _pkg.__path__ = [str(_pkg_dir)]
    _pkg.__spec__ = importlib.util.spec_from_file_location(
        "m365_admin", _pkg_dir / "__init__.py", submodule_search_locations=[str(_pkg_dir)]
    )
    sys.modules["m365_admin"] = _pkg
    _pkg.__spec__.loader.exec_module(_pkg)

from m365_admin.config import TaskConfig  # noqa: E402
from m365_admin.graph import client as graph_client  # noqa: E402
from m365_admin.graph.client import GraphClient  # noqa: E402
from m365_admin.safety.guardian import ChangeGuard  # noqa: E402

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class GraphStub:
    """
    Routes requests by (method, path) where path includes the API version,
    e.g. ("GET", "/v1.0/subscribedSkus"). A route holds a list of responses;
    each call takes the next one and the last one repeats.
    """

    def __init__(self):
        self.routes: dict[tuple[str, str], list] = {}
        self.requests: list[httpx.Request] = []

    def add(self, method, path, json_body=None, status=200, text=None, headers=None):
        self.routes.setdefault((method, path), []).append(
            {"json": json_body, "status": status, "text": text, "headers": headers or {}}
        )
        return self

    def calls(self, method=None, path=None):
        return [
            r for r in self.requests
            if (method is None or r.method == method) and (path is None or r.url.path == path)
        ]

    def body(self, request):
        return json.loads(request.content) if request.content else None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(
                404, json={"error": {"code": "Request_ResourceNotFound", "message": "not found"}}
            )
        reply = queue.pop(0) if len(queue) > 1 else queue[0]
        if reply["text"] is not None:
            return httpx.Response(reply["status"], text=reply["text"], headers=reply["headers"])
        if reply["json"] is None:
            return httpx.Response(reply["status"], headers=reply["headers"])
        return httpx.Response(reply["status"], json=reply["json"], headers=reply["headers"])

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def graph_stub():
    return GraphStub()


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    """Throttling backoff returns immediately; waits are recorded."""
    waits = []
    real_sleep = asyncio.sleep

    async def fake_sleep(seconds, *args, **kwargs):
        waits.append(seconds)
        await real_sleep(0)

    monkeypatch.setattr(graph_client.asyncio, "sleep", fake_sleep)
    return waits


@pytest.fixture
def run_graph(graph_stub):
    """
    run_graph(func, apply=False, read_only=False) opens a GraphClient over
    the stub, awaits func(graph) and returns (result, guard).
    """

    def _run(func, apply=False, read_only=False):
        guard = ChangeGuard(apply=apply, read_only=read_only)

        async def _main():
            async with GraphClient("test-token", guard, transport=graph_stub.transport()) as graph:
                return await func(graph)

        return asyncio.run(_main()), guard

    return _run


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def task_config():
    return TaskConfig()


def make_user(
    uid,
    upn=None,
    last_sign_in=None,
    non_interactive=None,
    created="2024-01-01T00:00:00Z",
    enabled=True,
    user_type="Member",
    licenses=None,
    **extra,
):
    user = {
        "id": uid,
        "displayName": uid.title(),
        "userPrincipalName": upn or f"{uid}@contoso.com",
        "mail": upn or f"{uid}@contoso.com",
        "accountEnabled": enabled,
        "userType": user_type,
        "createdDateTime": created,
        "assignedLicenses": [{"skuId": s} for s in (licenses or [])],
        "signInActivity": {
            "lastSignInDateTime": last_sign_in,
            "lastNonInteractiveSignInDateTime": non_interactive,
        },
    }
    user.update(extra)
    return user
