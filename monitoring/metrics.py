"""
Graph metric source for the Grafana JSON datasource.
Each metric target resolves to one series of [[value, epoch_ms]] datapoints.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from ..auth.authenticator import Authenticator
from ..graph.client import GraphAPIError, GraphClient

logger = logging.getLogger("m365_admin.monitoring.metrics")

METRICS = [
    "users.count",
    "users.active",
    "teams.count",
    "teams.activeUsers",
    "sharepoint.sites",
    "exchange.mailboxes",
    "onedrive.usage",
    "licenses.assigned",
    "licenses.available",
]

TEAMS_FILTER = "resourceProvisioningOptions/Any(x:x eq 'Team')"


def now_ms() -> int:
    return int(time.time() * 1000)


def series(target: str, value: float) -> dict:
    return {"target": target, "datapoints": [[value, now_ms()]]}


def latest_report_value(rows: list[dict], column: str) -> float:
    """Value of column in the most recent 'Report Date' row of a usage report."""
    dated = [r for r in rows if r.get("Report Date")]
    if not dated:
        return 0
    latest = max(dated, key=lambda r: r["Report Date"])
    try:
        return float(latest.get(column) or 0)
    except ValueError:
        return 0


class GraphMetricSource:
    """
    Resolves Grafana metric targets against Microsoft Graph.
    A failing metric is logged and reported as 0 so one broken permission
    does not blank a whole dashboard.
    """

    def __init__(
        self,
        graph: GraphClient,
        authenticator: Optional[Authenticator] = None,
        active_days: int = 30,
    ):
        self.graph = graph
        self.authenticator = authenticator
        self.active_days = active_days
        self._handlers = {
            "users.count": self._users_count,
            "users.active": self._users_active,
            "teams.count": self._teams_count,
            "teams.activeUsers": self._teams_active_users,
            "sharepoint.sites": self._sharepoint_sites,
            "exchange.mailboxes": self._exchange_mailboxes,
            "onedrive.usage": self._onedrive_usage,
            "licenses.assigned": self._licenses_assigned,
            "licenses.available": self._licenses_available,
        }

    def list_metrics(self) -> list[str]:
        return list(METRICS)

    async def refresh_token(self):
        if self.authenticator:
            self.graph.set_token(await self.authenticator.acquire_token())

    async def query(self, targets: list[dict]) -> list[dict]:
        await self.refresh_token()
        results = []
        for t in targets:
            target = t.get("target")
            handler = self._handlers.get(target)
            if handler is None:
                results.append({"target": target, "datapoints": []})
                continue
            try:
                value = await handler()
            except Exception as e:
                logger.error(f"Error getting {target}: {e}")
                value = 0
            results.append(series(target, value))
        return results

    async def passthrough(self, path: str, params: Optional[dict] = None) -> dict[str, Any]:
        """Read-only Graph GET relayed for the /api/graph endpoint."""
        await self.refresh_token()
        data = await self.graph.get(path, params=params or None)
        if data.get("_forbidden"):
            raise GraphAPIError(403, data.get("_error_message", "Forbidden"), path)
        if data.get("_not_found"):
            raise GraphAPIError(404, "Resource not found", path)
        if data.get("_max_retries_exceeded"):
            raise GraphAPIError(429, "Retries exhausted", path)
        return data

    # ── Metric handlers ─────────────────────────────────────────────────────

    async def _users_count(self) -> float:
        return await self.graph.get_count("users")

    async def _users_active(self) -> float:
        since = (datetime.now(timezone.utc) - timedelta(days=self.active_days)).strftime(
            "%Y-%m-%dT%H:%M:%SZ"
        )
        return await self.graph.get_filtered_count(
            "users", f"signInActivity/lastSignInDateTime ge {since}"
        )

    async def _teams_count(self) -> float:
        return await self.graph.get_count("groups", params={"$filter": TEAMS_FILTER})

    async def _teams_active_users(self) -> float:
        rows = await self.graph.get_report(
            "reports/getTeamsUserActivityUserDetail(period='D30')"
        )
        return len(rows)

    async def _sharepoint_sites(self) -> float:
        rows = await self.graph.get_report(
            "reports/getSharePointSiteUsageSiteCounts(period='D7')"
        )
        return latest_report_value(rows, "Total")

    async def _exchange_mailboxes(self) -> float:
        rows = await self.graph.get_report(
            "reports/getMailboxUsageMailboxCounts(period='D7')"
        )
        return latest_report_value(rows, "Total")

    async def _onedrive_usage(self) -> float:
        rows = await self.graph.get_report("reports/getOneDriveUsageStorage(period='D7')")
        return latest_report_value(rows, "Storage Used (Byte)")

    async def _subscribed_skus(self) -> list[dict]:
        return await self.graph.get_all_pages("subscribedSkus", skip_top=True)

    async def _licenses_assigned(self) -> float:
        return sum(int(s.get("consumedUnits") or 0) for s in await self._subscribed_skus())

    async def _licenses_available(self) -> float:
        total = 0
        for s in await self._subscribed_skus():
            enabled = int((s.get("prepaidUnits") or {}).get("enabled") or 0)
            total += max(0, enabled - int(s.get("consumedUnits") or 0))
        return total
