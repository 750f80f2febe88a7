"""
License tasks
  - LicenseReport: SKU utilization from subscribedSkus, optional per-user assignments
  - LicenseRemoval: remove one SKU from explicit users or from every disabled holder
"""

from __future__ import annotations

import logging
from typing import Optional

from .base import ACTION_FAILED, ACTION_SKIPPED, BaseTask, TaskResult, user_path

logger = logging.getLogger("m365_admin.tasks.licenses")

# Friendly names for common SKU part numbers
SKU_FRIENDLY_NAMES = {
    "SPE_E3": "Microsoft 365 E3",
    "SPE_E5": "Microsoft 365 E5",
    "SPE_F1": "Microsoft 365 F3",
    "SPB": "Microsoft 365 Business Premium",
    "O365_BUSINESS_ESSENTIALS": "Microsoft 365 Business Basic",
    "O365_BUSINESS_PREMIUM": "Microsoft 365 Business Standard",
    "STANDARDPACK": "Office 365 E1",
    "ENTERPRISEPACK": "Office 365 E3",
    "ENTERPRISEPREMIUM": "Office 365 E5",
    "DESKLESSPACK": "Office 365 F3",
    "EXCHANGESTANDARD": "Exchange Online (Plan 1)",
    "EXCHANGEENTERPRISE": "Exchange Online (Plan 2)",
    "EXCHANGEDESKLESS": "Exchange Online Kiosk",
    "ATP_ENTERPRISE": "Microsoft Defender for Office 365 (Plan 1)",
    "THREAT_INTELLIGENCE": "Microsoft Defender for Office 365 (Plan 2)",
    "EMS": "Enterprise Mobility + Security E3",
    "EMSPREMIUM": "Enterprise Mobility + Security E5",
    "AAD_PREMIUM": "Microsoft Entra ID P1",
    "AAD_PREMIUM_P2": "Microsoft Entra ID P2",
    "INTUNE_A": "Microsoft Intune Plan 1",
    "POWER_BI_PRO": "Power BI Pro",
    "POWER_BI_STANDARD": "Power BI (free)",
    "PBI_PREMIUM_PER_USER": "Power BI Premium Per User",
    "PROJECTPROFESSIONAL": "Project Plan 3",
    "VISIOCLIENT": "Visio Plan 2",
    "MCOMEETADV": "Microsoft 365 Audio Conferencing",
    "MCOEV": "Microsoft Teams Phone Standard",
    "Microsoft_Teams_Premium": "Microsoft Teams Premium",
    "Microsoft_Teams_Rooms_Pro": "Microsoft Teams Rooms Pro",
    "Microsoft_365_Copilot": "Microsoft 365 Copilot",
    "FLOW_FREE": "Power Automate (free)",
    "POWERAPPS_DEV": "Power Apps Developer",
}


def friendly_name(part_number: str) -> str:
    return SKU_FRIENDLY_NAMES.get(part_number, part_number)


def summarize_sku(sku: dict) -> dict:
    """Flatten one subscribedSku into a report row."""
    prepaid = sku.get("prepaidUnits") or {}
    enabled = int(prepaid.get("enabled") or 0)
    consumed = int(sku.get("consumedUnits") or 0)
    return {
        "skuId": sku.get("skuId"),
        "skuPartNumber": sku.get("skuPartNumber"),
        "friendlyName": friendly_name(sku.get("skuPartNumber") or ""),
        "capabilityStatus": sku.get("capabilityStatus"),
        "enabled": enabled,
        "consumed": consumed,
        "available": max(0, enabled - consumed),
        "suspended": int(prepaid.get("suspended") or 0),
        "warning": int(prepaid.get("warning") or 0),
        "utilization_pct": round(consumed / enabled * 100, 1) if enabled else 0.0,
    }


class LicenseReport(BaseTask):
    name = "licenses"
    description = "Subscribed SKU utilization and per-user assignments"

    async def run(self, result: TaskResult):
        skus = await self.safe_get_all("subscribedSkus", result, skip_top=True)
        rows = [summarize_sku(s) for s in skus]
        rows.sort(key=lambda r: r["skuPartNumber"] or "")
        result.add_rows(rows)

        with_units = [r for r in rows if r["enabled"] > 0]
        total_enabled = sum(r["enabled"] for r in rows)
        total_consumed = sum(r["consumed"] for r in rows)
        result.add_data("summary", {
            "sku_count": len(rows),
            "total_enabled": total_enabled,
            "total_consumed": total_consumed,
            "total_available": sum(r["available"] for r in rows),
            "average_utilization_pct": round(
                sum(r["utilization_pct"] for r in with_units) / len(with_units), 1
            ) if with_units else 0.0,
            "overallocated_skus": [
                r["skuPartNumber"] for r in rows if r["consumed"] > r["enabled"]
            ],
        })

        if self.config.include_user_licenses:
            await self._collect_assignments(result, {r["skuId"]: r for r in rows})

    async def _collect_assignments(self, result: TaskResult, sku_index: dict):
        users = await self.cached_users(result)
        assignments = []
        for user in users:
            for lic in user.get("assignedLicenses") or []:
                sku = sku_index.get(lic.get("skuId"), {})
                assignments.append({
                    "userPrincipalName": user.get("userPrincipalName"),
                    "displayName": user.get("displayName"),
                    "accountEnabled": user.get("accountEnabled"),
                    "skuId": lic.get("skuId"),
                    "skuPartNumber": sku.get("skuPartNumber", ""),
                    "friendlyName": sku.get("friendlyName", ""),
                })
        result.add_data("user_assignments", assignments)


class LicenseRemoval(BaseTask):
    name = "license_removal"
    description = "Remove a license SKU from users"
    mutating = True

    def __init__(
        self,
        *args,
        sku_part_number: str = "",
        users: Optional[list[str]] = None,
        disabled_only: bool = False,
        **kwargs,
    ):
        super().__init__(*args, **kwargs)
        self.sku_part_number = sku_part_number
        self.target_users = users or []
        self.disabled_only = disabled_only

    async def run(self, result: TaskResult):
        skus = await self.safe_get_all("subscribedSkus", result, skip_top=True)
        sku = next(
            (s for s in skus
             if (s.get("skuPartNumber") or "").lower() == self.sku_part_number.lower()),
            None,
        )
        if sku is None:
            result.add_error(f"SKU '{self.sku_part_number}' is not subscribed in this tenant")
            return
        sku_id = sku["skuId"]

        targets = await self._resolve_targets(result)
        removed = 0
        for user in targets:
            label = user.get("userPrincipalName") or user.get("id")
            held = {lic.get("skuId") for lic in user.get("assignedLicenses") or []}
            if sku_id not in held:
                self.record(result, label, "remove_license", ACTION_SKIPPED,
                            f"{self.sku_part_number} not assigned")
                continue

            status = await self.apply_change(
                result,
                label,
                "remove_license",
                lambda uid=user["id"]: self.graph.post(
                    f"users/{uid}/assignLicense",
                    {"addLicenses": [], "removeLicenses": [sku_id]},
                ),
            )
            result.add_rows([{
                "userPrincipalName": user.get("userPrincipalName"),
                "accountEnabled": user.get("accountEnabled"),
                "skuPartNumber": sku.get("skuPartNumber"),
                "status": status,
            }])
            if status != ACTION_FAILED:
                removed += 1

        result.add_data("summary", {
            "sku": sku.get("skuPartNumber"),
            "targets": len(targets),
            **result.action_counts(),
        })
        logger.info(f"[{self.name}] {removed} license removals for {sku.get('skuPartNumber')}")

    async def _resolve_targets(self, result: TaskResult) -> list[dict]:
        """Explicit users are looked up one by one; otherwise all disabled users."""
        if self.target_users:
            resolved = []
            for upn in self.target_users:
                data = await self.safe_get(
                    user_path(upn),
                    result,
                    params={"$select": "id,userPrincipalName,accountEnabled,assignedLicenses"},
                )
                if data.get("_not_found") or not data.get("id"):
                    self.record(result, upn, "remove_license", ACTION_FAILED, "user not found")
                    continue
                resolved.append(data)
            return resolved

        users = await self.cached_users(result)
        if self.disabled_only:
            return [u for u in users if u.get("accountEnabled") is False]
        result.add_error("No target users given; pass users or use disabled-only mode")
        return []
