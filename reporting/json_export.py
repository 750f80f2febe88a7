"""
JSON exporter — Produces the full raw JSON output of a run.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from .. import __version__


def export_json(
    results: dict,
    output_dir: Path,
    run_id: str,
    health: Optional[Any] = None,
    audit: Optional[dict] = None,
    mode: str = "DRY-RUN",
) -> Path:
    """
    Write all task results of a run to a JSON file.

    Returns:
        Path to the created JSON file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    payload = {
        "metadata": {
            "tool": "M365 Admin Toolkit",
            "version": __version__,
            "run_id": run_id,
            "generated_utc": datetime.now(timezone.utc).isoformat(),
            "mode": mode,
            "tasks": list(results.keys()),
        },
        "results": {name: r.to_dict() for name, r in results.items()},
    }
    if health is not None:
        payload["health_score"] = health.to_dict()
    if audit is not None:
        payload["audit"] = audit

    filepath = output_dir / f"m365_admin_{run_id}.json"
    with open(filepath, "w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2, default=str, ensure_ascii=False)

    return filepath
