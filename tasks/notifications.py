"""
Password Expiry Notifier
Warns users whose password expires soon. Each user's local quiet hours
decide whether the mail goes out now or is deferred to the next window.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import Optional

from ..quiet_hours import QuietHours
from .base import BaseTask, TaskResult, parse_graph_datetime, user_path

logger = logging.getLogger("m365_admin.tasks.notifications")

ACTION_DEFERRED = "deferred"

SUBJECT = "Your Microsoft 365 password expires in {days} day(s)"
EXPIRED_SUBJECT = "Your Microsoft 365 password has expired"
BODY = (
    "Hello {name},\n\n"
    "The password for {upn} {when}.\n"
    "Change it at https://mysignins.microsoft.com/security-info before it locks you out.\n\n"
    "— IT Service Desk"
)


def password_expiry(user: dict, max_age_days: int) -> Optional[datetime]:
    """Expiry date of the user's password, or None if it never expires."""
    if "DisablePasswordExpiration" in (user.get("passwordPolicies") or ""):
        return None
    changed = parse_graph_datetime(user.get("lastPasswordChangeDateTime"))
    if changed is None:
        return None
    return changed + timedelta(days=max_age_days)


def build_message(user: dict, days_left: int) -> dict:
    name = user.get("displayName") or user.get("userPrincipalName")
    if days_left <= 0:
        subject = EXPIRED_SUBJECT
        when = "has expired"
    else:
        subject = SUBJECT.format(days=days_left)
        when = f"expires in {days_left} day(s)"
    return {
        "message": {
            "subject": subject,
            "body": {
                "contentType": "Text",
                "content": BODY.format(name=name, upn=user.get("userPrincipalName"), when=when),
            },
            "toRecipients": [
                {"emailAddress": {"address": user.get("mail") or user.get("userPrincipalName")}}
            ],
        },
        "saveToSentItems": False,
    }


class PasswordExpiryNotifier(BaseTask):
    name = "password_expiry"
    description = "Password expiry notifications honouring quiet hours"
    mutating = True

    def __init__(self, *args, sender: str = "", **kwargs):
        super().__init__(*args, **kwargs)
        self.sender = sender
        self.quiet_hours = QuietHours(
            self.config.quiet_start_hour,
            self.config.quiet_end_hour,
            self.config.default_timezone,
        )

    async def run(self, result: TaskResult):
        if not self.sender:
            result.add_error("No sender mailbox configured for notifications")
            return

        users = await self.cached_users(result)
        warn_until = self.now + timedelta(days=self.config.password_warning_days)

        for user in users:
            if user.get("accountEnabled") is False or user.get("userType") == "Guest":
                continue
            expiry = password_expiry(user, self.config.password_max_age_days)
            if expiry is None or expiry > warn_until:
                continue

            expired = expiry <= self.now
            # Part of a day left still counts as a day
            days_left = math.ceil((expiry - self.now).total_seconds() / 86400)
            upn = user.get("userPrincipalName") or user.get("id")
            location = user.get("usageLocation")
            row = {
                "userPrincipalName": upn,
                "usageLocation": location,
                "timezone": str(self.quiet_hours.zone_for(location)),
                "passwordExpires": expiry.isoformat(),
                "days_left": days_left,
                "expired": expired,
            }

            if self.quiet_hours.is_quiet(self.now, location):
                send_at = self.quiet_hours.next_allowed(self.now, location)
                row.update(status=ACTION_DEFERRED, next_send_utc=send_at.isoformat())
                self.record(result, upn, "notify_password_expiry", ACTION_DEFERRED,
                            f"quiet hours until {send_at.isoformat()}")
            else:
                message = build_message(user, days_left)
                row["status"] = await self.apply_change(
                    result,
                    upn,
                    "notify_password_expiry",
                    lambda m=message: self.graph.post(user_path(self.sender, "sendMail"), m),
                )
                row["next_send_utc"] = ""
            result.add_rows([row])

        result.rows.sort(key=lambda r: r["days_left"])
        result.add_data("summary", {
            "expiring_users": len(result.rows),
            "already_expired": sum(1 for r in result.rows if r["expired"]),
            "warning_days": self.config.password_warning_days,
            **result.action_counts(),
        })
