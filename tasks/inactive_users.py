"""
Inactive Users Report
Finds accounts whose most recent sign-in (interactive or non-interactive)
is older than the configured threshold, including accounts that never
signed in and were created before the threshold.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from .base import BaseTask, TaskResult, parse_graph_datetime, whole_days_between

logger = logging.getLogger("m365_admin.tasks.inactive_users")


def last_activity(user: dict) -> Optional[datetime]:
    """Most recent of the interactive and non-interactive sign-in times."""
    sign_in = user.get("signInActivity") or {}
    stamps = [
        parse_graph_datetime(sign_in.get("lastSignInDateTime")),
        parse_graph_datetime(sign_in.get("lastNonInteractiveSignInDateTime")),
    ]
    stamps = [s for s in stamps if s is not None]
    return max(stamps) if stamps else None


def evaluate_inactivity(user: dict, now: datetime, threshold_days: int) -> Optional[dict]:
    """
    Return an inactivity record for the user, or None if the user is active.

    Users who never signed in are measured from their creation date; an
    account created less than threshold_days ago is still considered new.
    """
    last = last_activity(user)
    cutoff = now - timedelta(days=threshold_days)

    if last is not None:
        if last >= cutoff:
            return None
        return {
            "last_activity": last.isoformat(),
            "days_inactive": whole_days_between(last, now),
            "never_signed_in": False,
        }

    created = parse_graph_datetime(user.get("createdDateTime"))
    if created is None or created >= cutoff:
        return None
    return {
        "last_activity": None,
        "days_inactive": whole_days_between(created, now),
        "never_signed_in": True,
    }


class InactiveUsersReport(BaseTask):
    name = "inactive_users"
    description = "Users without a sign-in in the last N days"

    async def run(self, result: TaskResult):
        users = await self.cached_users(result)
        threshold = self.config.inactive_days

        considered = 0
        rows = []
        for user in users:
            if not self.config.include_disabled and user.get("accountEnabled") is False:
                continue
            if not self.config.include_guests and user.get("userType") == "Guest":
                continue
            considered += 1

            record = evaluate_inactivity(user, self.now, threshold)
            if record is None:
                continue
            rows.append({
                "id": user.get("id"),
                "displayName": user.get("displayName"),
                "userPrincipalName": user.get("userPrincipalName"),
                "userType": user.get("userType", "Member"),
                "accountEnabled": user.get("accountEnabled"),
                "createdDateTime": user.get("createdDateTime"),
                "hasLicense": bool(user.get("assignedLicenses")),
                **record,
            })

        rows.sort(key=lambda r: r["days_inactive"], reverse=True)
        result.add_rows(rows)

        never = sum(1 for r in rows if r["never_signed_in"])
        result.add_data("summary", {
            "threshold_days": threshold,
            "users_considered": considered,
            "inactive_users": len(rows),
            "never_signed_in": never,
            "licensed_inactive": sum(1 for r in rows if r["hasLicense"]),
            "inactive_ratio": round(len(rows) / considered, 4) if considered else 0.0,
        })
        logger.info(f"[{self.name}] {len(rows)}/{considered} users inactive for {threshold}+ days")
