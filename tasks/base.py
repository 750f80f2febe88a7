"""
Base task class — common contract for every admin task.
A task reads from Graph, shapes report rows, and optionally applies
per-item changes whose outcome is recorded and journaled.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Awaitable, Callable, Optional
from urllib.parse import quote

import httpx

from ..graph.client import GraphClient, GraphAPIError
from ..cache.store import RunJournal
from ..config import TaskConfig

logger = logging.getLogger("m365_admin.tasks")

USER_SELECT = (
    "id,displayName,userPrincipalName,mail,accountEnabled,userType,"
    "createdDateTime,signInActivity,assignedLicenses,usageLocation,"
    "lastPasswordChangeDateTime,passwordPolicies,"
    "externalUserState,externalUserStateChangeDateTime"
)

# Outcome of a single per-item change
ACTION_PLANNED = "planned"
ACTION_DONE = "done"
ACTION_FAILED = "failed"
ACTION_SKIPPED = "skipped"

USERS_CACHE_KEY = "directory:users"


def user_path(user: str, *segments: str) -> str:
    """users/{id or UPN}[/...] with the UPN escaped (guest UPNs contain '#')."""
    return "/".join([f"users/{quote(user, safe='@')}", *segments])


def parse_graph_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse a Graph ISO-8601 timestamp into an aware datetime."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, TypeError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def whole_days_between(earlier: datetime, later: datetime) -> int:
    """Number of full days from earlier to later (never negative)."""
    return max(0, (later - earlier).days)


class TaskResult:
    """Standardized result from a task."""

    def __init__(self, task_name: str):
        self.task_name = task_name
        self.data: dict[str, Any] = {}
        self.rows: list[dict] = []
        self.actions: list[dict] = []
        self.metadata: dict[str, Any] = {
            "task": task_name,
            "started_at": None,
            "completed_at": None,
            "duration_seconds": 0,
            "errors": [],
            "warnings": [],
            "endpoints_queried": 0,
        }

    def add_data(self, key: str, value: Any):
        self.data[key] = value

    def add_rows(self, rows: list[dict]):
        self.rows.extend(rows)

    @property
    def summary(self) -> dict:
        return self.data.get("summary", {})

    def add_action(self, target: str, action: str, status: str, detail: str = ""):
        self.actions.append({
            "target": target,
            "action": action,
            "status": status,
            "detail": detail,
        })

    def action_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for a in self.actions:
            counts[a["status"]] = counts.get(a["status"], 0) + 1
        return counts

    def add_error(self, error: str):
        self.metadata["errors"].append(error)
        logger.error(f"[{self.task_name}] {error}")

    def add_warning(self, warning: str):
        self.metadata["warnings"].append(warning)
        logger.warning(f"[{self.task_name}] {warning}")

    @property
    def ok(self) -> bool:
        return not self.metadata["errors"]

    def to_dict(self) -> dict:
        return {
            "data": self.data,
            "rows": self.rows,
            "actions": self.actions,
            "metadata": self.metadata,
        }


class BaseTask(ABC):
    """
    Abstract base class for all admin tasks.

    Subclasses implement run() to gather data and apply changes.
    The base class provides:
      - Timing and metadata
      - Run-log entries in the journal
      - Error capture (a crashing task never takes down the run)
      - A shared directory snapshot of users
      - Per-item change recording
    """

    name: str = "base"
    description: str = "Base task"
    mutating: bool = False

    def __init__(
        self,
        graph: GraphClient,
        config: TaskConfig,
        journal: Optional[RunJournal] = None,
        run_id: str = "",
        now: Optional[datetime] = None,
        shared: Optional[dict] = None,
    ):
        self.graph = graph
        self.config = config
        self.journal = journal
        self.run_id = run_id
        self.now = now or datetime.now(timezone.utc)
        self.shared = shared if shared is not None else {}

    async def execute(self) -> TaskResult:
        """Execute the task with timing, journaling, and error handling."""
        result = TaskResult(self.name)
        result.metadata["started_at"] = time.time()
        logger.info(f"[{self.name}] Starting...")
        if self.journal:
            self.journal.start_run(self.run_id, self.name)

        try:
            await self.run(result)
        except Exception as e:
            result.add_error(f"Task failed: {type(e).__name__}: {e}")
            logger.exception(f"[{self.name}] Task failed")

        result.metadata["completed_at"] = time.time()
        result.metadata["duration_seconds"] = round(
            result.metadata["completed_at"] - result.metadata["started_at"], 2
        )
        if self.journal:
            self.journal.complete_run(
                self.run_id, self.name, "completed" if result.ok else "failed"
            )
        logger.info(
            f"[{self.name}] Completed in {result.metadata['duration_seconds']}s — "
            f"{len(result.rows)} rows, {len(result.actions)} actions"
        )
        return result

    @abstractmethod
    async def run(self, result: TaskResult):
        """Implement the task. Add data, rows and actions to result."""
        raise NotImplementedError

    # ── Graph helpers ───────────────────────────────────────────────────────

    async def safe_get(self, endpoint: str, result: TaskResult, **kwargs) -> dict:
        """Execute a GET and record errors without crashing."""
        try:
            data = await self.graph.get(endpoint, **kwargs)
            result.metadata["endpoints_queried"] += 1
            if data.get("_forbidden"):
                msg = data.get("_error_message", "Forbidden")
                result.add_warning(f"Permission denied: {endpoint} — {msg}")
                result.metadata.setdefault("permission_gaps", []).append(endpoint)
            return data
        except GraphAPIError as e:
            result.add_error(f"Failed to query {endpoint}: {e}")
            return {"value": []}

    async def safe_get_all(self, endpoint: str, result: TaskResult, **kwargs) -> list:
        """Get all pages and record errors."""
        try:
            data = await self.graph.get_all_pages(endpoint, **kwargs)
            result.metadata["endpoints_queried"] += 1
            return data
        except GraphAPIError as e:
            self._paging_failed(result, endpoint, e)
            return []

    async def safe_get_all_stream(
        self, endpoint: str, result: TaskResult, **kwargs
    ) -> AsyncGenerator[dict, None]:
        """
        Stream all pages item by item. A failure ends the stream early and is
        recorded like safe_get_all; items already yielded stay with the caller.
        """
        try:
            async for item in self.graph.get_all_pages_stream(endpoint, **kwargs):
                yield item
            result.metadata["endpoints_queried"] += 1
        except GraphAPIError as e:
            self._paging_failed(result, endpoint, e)

    def _paging_failed(self, result: TaskResult, endpoint: str, e: GraphAPIError):
        if e.status_code == 403:
            result.add_error(f"Permission denied: {endpoint} — {e.message}")
            result.metadata.setdefault("permission_gaps", []).append(endpoint)
        else:
            result.add_error(f"Failed to paginate {endpoint}: {e}")

    async def cached_users(self, result: TaskResult) -> list[dict]:
        """
        Return the directory user snapshot shared by all tasks of a run.
        Looked up in-memory first, then in the journal cache.

        Mutating tasks skip journal snapshots and list users live.
        """
        lock = self.shared.setdefault("_users_lock", asyncio.Lock())
        async with lock:
            if "users" in self.shared:
                if not (self.mutating and self.shared.get("_users_from_journal")):
                    return self.shared["users"]

            users = None
            if self.journal and not self.mutating:
                users = self.journal.get(USERS_CACHE_KEY)
                if users is not None:
                    logger.info(f"[{self.name}] Using cached user snapshot.")
                    self.shared["_users_from_journal"] = True

            if users is None:
                errors_before = len(result.metadata["errors"])
                users = await self.safe_get_all(
                    "users",
                    result,
                    params={"$select": USER_SELECT},
                    beta=True,  # signInActivity requires beta on older tenants
                )
                # A failed listing is not shared; the next task retries it
                if len(result.metadata["errors"]) > errors_before:
                    return users
                if self.journal:
                    self.journal.put(USERS_CACHE_KEY, users, self.run_id)
                self.shared["_users_from_journal"] = False

            self.shared["users"] = users
            return users

    # ── Changes ─────────────────────────────────────────────────────────────

    async def apply_change(
        self,
        result: TaskResult,
        target: str,
        action: str,
        call: Callable[[], Awaitable[dict]],
    ) -> str:
        """
        Run one guarded change and record its outcome.
        Returns the action status (planned, done or failed).
        """
        try:
            response = await call()
        except GraphAPIError as e:
            status, detail = ACTION_FAILED, f"{e.status_code}: {e.message}"
        except httpx.HTTPError as e:
            status, detail = ACTION_FAILED, f"{type(e).__name__}: {e}"
        else:
            status = ACTION_PLANNED if response.get("_dry_run") else ACTION_DONE
            detail = ""

        if status == ACTION_DONE and self.journal:
            # Directory snapshot is stale once the tenant changed
            self.journal.invalidate(USERS_CACHE_KEY)
        if status == ACTION_FAILED:
            logger.warning(f"[{self.name}] {action} failed for {target}: {detail}")
        self.record(result, target, action, status, detail)
        return status

    def record(self, result: TaskResult, target: str, action: str, status: str, detail: str = ""):
        """Record a per-item outcome on the result and in the journal."""
        result.add_action(target, action, status, detail)
        if self.journal:
            self.journal.record_action(self.run_id, self.name, target, action, status, detail)
