"""
Guest Cleanup
Selects stale guest accounts and deletes them (dry-run unless applied).

A guest is a deletion candidate when:
  - its invitation is still pending after guest_pending_days, or
  - it redeemed the invitation but has not signed in for guest_inactive_days, or
  - it never signed in and was created more than guest_inactive_days ago.
Guests from excluded domains or on the exclusion list are never touched.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from .base import ACTION_SKIPPED, BaseTask, TaskResult, parse_graph_datetime, whole_days_between
from .inactive_users import last_activity

logger = logging.getLogger("m365_admin.tasks.guests")

REASON_PENDING = "pending_acceptance"
REASON_INACTIVE = "inactive"
REASON_NEVER_SIGNED_IN = "never_signed_in"


def guest_domain(guest: dict) -> str:
    """
    Home domain of a guest: taken from mail, or decoded from the
    'alice_fabrikam.com#EXT#@contoso.onmicrosoft.com' UPN form.
    """
    mail = guest.get("mail") or ""
    if "@" in mail:
        return mail.rsplit("@", 1)[1].lower()
    upn = guest.get("userPrincipalName") or ""
    if "#EXT#" in upn:
        local = upn.split("#EXT#", 1)[0]
        if "_" in local:
            return local.rsplit("_", 1)[1].lower()
    return ""


def classify_guest(
    guest: dict,
    now: datetime,
    inactive_days: int,
    pending_days: int,
) -> Optional[dict]:
    """Return the deletion reason for a guest, or None when it should stay."""
    state = guest.get("externalUserState")
    created = parse_graph_datetime(guest.get("createdDateTime"))

    if state == "PendingAcceptance":
        invited = parse_graph_datetime(guest.get("externalUserStateChangeDateTime")) or created
        if invited and invited < now - timedelta(days=pending_days):
            return {"reason": REASON_PENDING, "days": whole_days_between(invited, now)}
        return None

    last = last_activity(guest)
    inactive_cutoff = now - timedelta(days=inactive_days)
    if last is not None:
        if last < inactive_cutoff:
            return {"reason": REASON_INACTIVE, "days": whole_days_between(last, now)}
        return None

    if created and created < inactive_cutoff:
        return {"reason": REASON_NEVER_SIGNED_IN, "days": whole_days_between(created, now)}
    return None


def is_excluded(guest: dict, excluded_domains: set[str], excluded_users: set[str]) -> bool:
    if guest_domain(guest) in excluded_domains:
        return True
    identifiers = {
        (guest.get("userPrincipalName") or "").lower(),
        (guest.get("mail") or "").lower(),
        (guest.get("id") or "").lower(),
    }
    return bool(identifiers & excluded_users)


class GuestCleanup(BaseTask):
    name = "guests"
    description = "Stale guest account review and deletion"
    mutating = True

    def __init__(self, *args, delete: bool = True, **kwargs):
        super().__init__(*args, **kwargs)
        self.delete = delete
        self.mutating = delete

    async def run(self, result: TaskResult):
        users = await self.cached_users(result)
        guests = [u for u in users if u.get("userType") == "Guest"]

        excluded_domains = {d.lower().lstrip("@") for d in self.config.guest_excluded_domains}
        excluded_users = {u.lower() for u in self.config.guest_excluded_users}

        candidates = []
        excluded = 0
        for guest in guests:
            verdict = classify_guest(
                guest,
                self.now,
                self.config.guest_inactive_days,
                self.config.guest_pending_days,
            )
            if verdict is None:
                continue
            if is_excluded(guest, excluded_domains, excluded_users):
                excluded += 1
                continue
            candidates.append((guest, verdict))

        # Longest-idle guests go first when the deletion cap applies
        candidates.sort(key=lambda c: c[1]["days"], reverse=True)

        for position, (guest, verdict) in enumerate(candidates):
            label = guest.get("mail") or guest.get("userPrincipalName") or guest.get("id")
            row = {
                "id": guest.get("id"),
                "displayName": guest.get("displayName"),
                "mail": guest.get("mail"),
                "domain": guest_domain(guest),
                "externalUserState": guest.get("externalUserState"),
                "createdDateTime": guest.get("createdDateTime"),
                "reason": verdict["reason"],
                "days": verdict["days"],
                "status": "reported",
            }
            if self.delete:
                if position >= self.config.max_deletions:
                    row["status"] = ACTION_SKIPPED
                    self.record(result, label, "delete_guest", ACTION_SKIPPED,
                                f"deletion cap of {self.config.max_deletions} reached")
                else:
                    row["status"] = await self.apply_change(
                        result,
                        label,
                        "delete_guest",
                        lambda gid=guest["id"]: self.graph.delete(f"users/{gid}"),
                    )
            result.add_rows([row])

        by_reason: dict[str, int] = {}
        for _, verdict in candidates:
            by_reason[verdict["reason"]] = by_reason.get(verdict["reason"], 0) + 1

        result.add_data("summary", {
            "total_guests": len(guests),
            "stale_guests": len(candidates) + excluded,
            "candidates": len(candidates),
            "excluded": excluded,
            "by_reason": by_reason,
            "stale_ratio": round((len(candidates) + excluded) / len(guests), 4) if guests else 0.0,
            **result.action_counts(),
        })
        logger.info(
            f"[{self.name}] {len(candidates)} deletion candidates among {len(guests)} guests "
            f"({excluded} excluded)"
        )
