"""Reporting package — CSV and JSON output."""

from .json_export import export_json
from .csv_export import export_csv, export_health_csv, write_rows

__all__ = [
    "export_json",
    "export_csv",
    "export_health_csv",
    "write_rows",
]
