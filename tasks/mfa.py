"""
MFA Registration Report
Reads reports/authenticationMethods/userRegistrationDetails.
"""

from __future__ import annotations

import logging

from .base import BaseTask, TaskResult

logger = logging.getLogger("m365_admin.tasks.mfa")


class MfaRegistrationReport(BaseTask):
    name = "mfa"
    description = "MFA registration coverage"

    async def run(self, result: TaskResult):
        details = await self.safe_get_all(
            "reports/authenticationMethods/userRegistrationDetails", result
        )

        rows = []
        for d in details:
            if not self.config.include_guests and d.get("userType") == "guest":
                continue
            rows.append({
                "userPrincipalName": d.get("userPrincipalName"),
                "userDisplayName": d.get("userDisplayName"),
                "userType": d.get("userType"),
                "isAdmin": bool(d.get("isAdmin")),
                "isMfaRegistered": bool(d.get("isMfaRegistered")),
                "isMfaCapable": bool(d.get("isMfaCapable")),
                "isPasswordlessCapable": bool(d.get("isPasswordlessCapable")),
                "methodsRegistered": ";".join(d.get("methodsRegistered") or []),
                "defaultMfaMethod": d.get("defaultMfaMethod"),
            })
        rows.sort(key=lambda r: (r["isMfaRegistered"], r["userPrincipalName"] or ""))
        result.add_rows(rows)

        registered = sum(1 for r in rows if r["isMfaRegistered"])
        admins_without = [
            r["userPrincipalName"] for r in rows if r["isAdmin"] and not r["isMfaRegistered"]
        ]
        result.add_data("summary", {
            "users": len(rows),
            "mfa_registered": registered,
            "mfa_capable": sum(1 for r in rows if r["isMfaCapable"]),
            "passwordless_capable": sum(1 for r in rows if r["isPasswordlessCapable"]),
            "coverage_pct": round(registered / len(rows) * 100, 1) if rows else 0.0,
            "admins_without_mfa": admins_without,
        })
        if admins_without:
            result.add_warning(f"{len(admins_without)} admin(s) without MFA registration")
