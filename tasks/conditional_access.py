"""
Conditional Access Report
Lists policies with their targets and grant controls, and flags the three
baseline protections: MFA, legacy-auth block, compliant device.
"""

from __future__ import annotations

import logging

from .base import BaseTask, TaskResult

logger = logging.getLogger("m365_admin.tasks.conditional_access")

LEGACY_CLIENT_APPS = {"exchangeActiveSync", "other"}


def grant_controls(policy: dict) -> list[str]:
    return list(((policy.get("grantControls") or {}).get("builtInControls")) or [])


def requires_mfa(policy: dict) -> bool:
    grants = (policy.get("grantControls") or {})
    if "mfa" in grant_controls(policy):
        return True
    # Authentication strengths replace the plain mfa control on newer policies
    return bool(grants.get("authenticationStrength"))


def blocks_legacy_auth(policy: dict) -> bool:
    client_apps = set((policy.get("conditions") or {}).get("clientAppTypes") or [])
    return "block" in grant_controls(policy) and bool(client_apps & LEGACY_CLIENT_APPS)


def requires_compliant_device(policy: dict) -> bool:
    return "compliantDevice" in grant_controls(policy)


class ConditionalAccessReport(BaseTask):
    name = "conditional_access"
    description = "Conditional Access policy inventory"

    async def run(self, result: TaskResult):
        policies = await self.safe_get_all(
            "identity/conditionalAccess/policies", result, skip_top=True
        )

        rows = []
        state_counts: dict[str, int] = {}
        for p in policies:
            users = ((p.get("conditions") or {}).get("users")) or {}
            apps = ((p.get("conditions") or {}).get("applications")) or {}
            state = p.get("state") or "unknown"
            state_counts[state] = state_counts.get(state, 0) + 1
            rows.append({
                "id": p.get("id"),
                "displayName": p.get("displayName"),
                "state": state,
                "includeUsers": ";".join(users.get("includeUsers") or []),
                "excludeUsers": ";".join(users.get("excludeUsers") or []),
                "includeGroups": ";".join(users.get("includeGroups") or []),
                "excludeGroups": ";".join(users.get("excludeGroups") or []),
                "includeApplications": ";".join(apps.get("includeApplications") or []),
                "clientAppTypes": ";".join(
                    (p.get("conditions") or {}).get("clientAppTypes") or []
                ),
                "grantControls": ";".join(grant_controls(p)),
                "requiresMfa": requires_mfa(p),
                "blocksLegacyAuth": blocks_legacy_auth(p),
                "requiresCompliantDevice": requires_compliant_device(p),
                "modifiedDateTime": p.get("modifiedDateTime"),
            })
        rows.sort(key=lambda r: (r["state"], r["displayName"] or ""))
        result.add_rows(rows)

        enabled = [r for r in rows if r["state"] == "enabled"]
        result.add_data("summary", {
            "total_policies": len(rows),
            "by_state": state_counts,
            "mfa_enforced": any(r["requiresMfa"] for r in enabled),
            "legacy_auth_blocked": any(r["blocksLegacyAuth"] for r in enabled),
            "compliant_device_required": any(r["requiresCompliantDevice"] for r in enabled),
        })
