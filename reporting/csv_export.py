"""
CSV exporter — Writes task report rows and per-item actions as CSV.
"""

from __future__ import annotations

import csv
import json
from pathlib import Path
from typing import Any, Optional


def _cell(value: Any) -> Any:
    """Nested values are JSON-encoded so every row stays one line."""
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str, ensure_ascii=False)
    if value is None:
        return ""
    return value


def write_rows(rows: list[dict], path: Path) -> Path:
    """Write dict rows to path; columns are the union of keys in first-seen order."""
    fields: list[str] = []
    for row in rows:
        for key in row:
            if key not in fields:
                fields.append(key)

    path.parent.mkdir(parents=True, exist_ok=True)
    # utf-8-sig so Excel opens the file with the right encoding
    with open(path, "w", newline="", encoding="utf-8-sig") as fh:
        writer = csv.DictWriter(fh, fieldnames=fields, extrasaction="ignore")
        writer.writeheader()
        for row in rows:
            writer.writerow({k: _cell(row.get(k)) for k in fields})
    return path


def export_csv(
    result: Any,
    output_dir: Path,
    run_id: str,
) -> list[Path]:
    """
    Write the report rows of a task (and its actions, if any).

    Returns:
        List of created CSV file paths (empty when the task produced nothing).
    """
    created = []
    if result.rows:
        created.append(write_rows(result.rows, output_dir / f"{result.task_name}_{run_id}.csv"))
    if result.actions:
        created.append(
            write_rows(result.actions, output_dir / f"{result.task_name}_actions_{run_id}.csv")
        )
    return created


def export_health_csv(health: Any, output_dir: Path, run_id: str) -> Optional[Path]:
    """Write the category breakdown of a health score."""
    if not health.categories:
        return None
    rows = [c.to_dict() for c in health.categories.values()]
    rows.append({
        "category": "overall",
        "display_name": "Overall",
        "score": round(health.overall_score, 1),
        "detail": health.rating,
    })
    return write_rows(rows, output_dir / f"health_score_{run_id}.csv")
