"""Monitoring package — Grafana Graph proxy and Prometheus scrape targets."""

from .metrics import GraphMetricSource, METRICS
from .targets import add_server, remove_server, list_servers

__all__ = [
    "GraphMetricSource",
    "METRICS",
    "add_server",
    "remove_server",
    "list_servers",
]
