"""
Device Compliance Report
Intune managed devices: compliance state, platform and sync staleness.
"""

from __future__ import annotations

import logging

from .base import BaseTask, TaskResult, parse_graph_datetime, whole_days_between

logger = logging.getLogger("m365_admin.tasks.devices")

DEVICE_SELECT = (
    "id,deviceName,userPrincipalName,operatingSystem,osVersion,"
    "complianceState,lastSyncDateTime,enrolledDateTime,managedDeviceOwnerType,"
    "isEncrypted,model,manufacturer,serialNumber"
)


class DeviceComplianceReport(BaseTask):
    name = "devices"
    description = "Intune device compliance and stale devices"

    async def run(self, result: TaskResult):
        rows = []
        os_breakdown: dict[str, int] = {}
        state_counts: dict[str, int] = {}
        async for d in self.safe_get_all_stream(
            "deviceManagement/managedDevices",
            result,
            params={"$select": DEVICE_SELECT},
            skip_top=True,
        ):
            last_sync = parse_graph_datetime(d.get("lastSyncDateTime"))
            days_since_sync = whole_days_between(last_sync, self.now) if last_sync else None
            stale = days_since_sync is None or days_since_sync >= self.config.stale_device_days
            state = d.get("complianceState") or "unknown"
            os_name = d.get("operatingSystem") or "Unknown"

            os_breakdown[os_name] = os_breakdown.get(os_name, 0) + 1
            state_counts[state] = state_counts.get(state, 0) + 1
            rows.append({
                "deviceName": d.get("deviceName"),
                "userPrincipalName": d.get("userPrincipalName"),
                "operatingSystem": os_name,
                "osVersion": d.get("osVersion"),
                "complianceState": state,
                "ownerType": d.get("managedDeviceOwnerType"),
                "isEncrypted": d.get("isEncrypted"),
                "lastSyncDateTime": d.get("lastSyncDateTime"),
                "days_since_sync": days_since_sync,
                "stale": stale,
                "serialNumber": d.get("serialNumber"),
            })

        rows.sort(key=lambda r: (r["complianceState"] == "compliant", r["deviceName"] or ""))
        result.add_rows(rows)

        total = len(rows)
        compliant = state_counts.get("compliant", 0)
        result.add_data("summary", {
            "total_devices": total,
            "compliant": compliant,
            "noncompliant": state_counts.get("noncompliant", 0),
            "stale": sum(1 for r in rows if r["stale"]),
            "stale_threshold_days": self.config.stale_device_days,
            "compliance_pct": round(compliant / total * 100, 1) if total else 100.0,
            "by_state": state_counts,
            "by_os": os_breakdown,
        })
