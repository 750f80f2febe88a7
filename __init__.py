"""
M365 Admin Toolkit
==================
Administration tasks for Microsoft 365, Entra ID and Intune over Microsoft
Graph, plus a Grafana/Prometheus bridge for tenant and server monitoring.

Mutating tasks run in DRY-RUN mode unless --apply is given.
"""

__version__ = "1.0.0"
__author__ = "M365 Admin Toolkit"
