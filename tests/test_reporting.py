import csv
import json

from m365_admin.reporting import export_csv, export_health_csv, export_json
from m365_admin.scoring import compute_health
from m365_admin.tasks.base import TaskResult


def _result():
    result = TaskResult("guests")
    result.add_rows([
        {"id": "g1", "mail": "ann@fabrikam.com", "days": 120},
        {"id": "g2", "mail": "bob@fabrikam.com", "reasons": ["inactive", "never"]},
    ])
    result.add_action("ann@fabrikam.com", "delete_guest", "planned")
    result.add_data("summary", {"candidates": 2})
    return result


def read_csv(path):
    with open(path, newline="", encoding="utf-8-sig") as fh:
        return list(csv.DictReader(fh))


def test_csv_export_writes_rows_and_actions(tmp_path):
    paths = export_csv(_result(), tmp_path, "run1")
    assert [p.name for p in paths] == ["guests_run1.csv", "guests_actions_run1.csv"]

    rows = read_csv(paths[0])
    assert list(rows[0]) == ["id", "mail", "days", "reasons"]
    assert rows[0]["reasons"] == ""
    assert json.loads(rows[1]["reasons"]) == ["inactive", "never"]
    assert paths[0].read_bytes().startswith(b"\xef\xbb\xbf")

    actions = read_csv(paths[1])
    assert actions[0]["status"] == "planned"


def test_csv_export_skips_empty_results(tmp_path):
    assert export_csv(TaskResult("mfa"), tmp_path, "run1") == []


def test_json_export_payload(tmp_path):
    health = compute_health({"guests": {"total_guests": 4, "stale_ratio": 0.5, "stale_guests": 2}})
    path = export_json(
        {"guests": _result()}, tmp_path, "run1",
        health=health, audit={"change_guard": {"planned_changes": 1}}, mode="DRY-RUN",
    )
    payload = json.loads(path.read_text(encoding="utf-8"))
    assert path.name == "m365_admin_run1.json"
    assert payload["metadata"]["mode"] == "DRY-RUN"
    assert payload["metadata"]["tasks"] == ["guests"]
    assert payload["results"]["guests"]["data"]["summary"] == {"candidates": 2}
    assert payload["health_score"]["overall_score"] == 50.0
    assert payload["audit"]["change_guard"]["planned_changes"] == 1


def test_health_csv(tmp_path):
    health = compute_health({"mfa": {"coverage_pct": 80.0}})
    rows = read_csv(export_health_csv(health, tmp_path, "run1"))
    assert rows[0]["category"] == "mfa_coverage"
    assert rows[-1]["category"] == "overall"
    assert rows[-1]["score"] == "80.0"
    assert export_health_csv(compute_health({}), tmp_path, "run2") is None
