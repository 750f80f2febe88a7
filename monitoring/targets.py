"""
Prometheus file_sd targets for Windows servers running windows_exporter.

Prometheus watches the file and picks up changes without a restart:

    - job_name: windows-servers
      file_sd_configs:
        - files: ["/etc/prometheus/targets/windows.json"]
"""

from __future__ import annotations

import ipaddress
import json
import logging
import re
from pathlib import Path

logger = logging.getLogger("m365_admin.monitoring.targets")

WINDOWS_EXPORTER_PORT = 9182
JOB_LABEL = "windows-servers"

_HOSTNAME_RE = re.compile(
    r"^(?=.{1,253}$)([A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?)(\.[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?)*$"
)


def validate_host(address: str) -> str:
    """Hostname as given, or the IP address in its compressed form."""
    address = (address or "").strip()
    if address.startswith("[") and address.endswith("]"):
        address = address[1:-1]
    try:
        return ipaddress.ip_address(address).compressed
    except ValueError:
        pass
    if not _HOSTNAME_RE.match(address):
        raise ValueError(f"Invalid server address: {address!r}")
    return address


def format_target(address: str, port: int) -> str:
    """host:port, with IPv6 addresses in brackets."""
    if ":" in address:
        return f"[{address}]:{port}"
    return f"{address}:{port}"


def split_target(target: str) -> tuple[str, int]:
    if target.startswith("["):
        host, _, rest = target[1:].partition("]")
        port = rest[1:] if rest.startswith(":") else ""
    elif target.count(":") == 1:
        host, _, port = target.partition(":")
    else:
        # Bare hostname or unbracketed IPv6
        host, port = target, ""
    return host, int(port) if port.isdigit() else WINDOWS_EXPORTER_PORT


def _matches(target: str, address: str, port: int) -> bool:
    host, target_port = split_target(target)
    try:
        host = validate_host(host)
    except ValueError:
        return False
    return host == address and target_port == int(port)


def _load(path: Path) -> list[dict]:
    if not path.exists():
        return []
    with open(path, "r", encoding="utf-8") as fh:
        text = fh.read().strip()
    if not text:
        return []
    data = json.loads(text)
    if not isinstance(data, list):
        raise ValueError(f"{path} is not a file_sd target list")
    return data


def _save(path: Path, groups: list[dict]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with open(tmp, "w", encoding="utf-8") as fh:
        json.dump(groups, fh, indent=2)
    tmp.replace(path)


def list_servers(path: Path) -> list[dict]:
    """Return [{'address', 'port', 'name'}] for every configured target."""
    servers = []
    for group in _load(Path(path)):
        name = (group.get("labels") or {}).get("server_name", "")
        for target in group.get("targets", []):
            host, port = split_target(target)
            servers.append({"address": host, "port": port, "name": name})
    return servers


def add_server(path: Path, address: str, name: str, port: int = WINDOWS_EXPORTER_PORT) -> bool:
    """
    Add a server target. Returns False when address:port is already present.
    """
    path = Path(path)
    address = validate_host(address)
    if not 0 < int(port) < 65536:
        raise ValueError(f"Invalid port: {port}")
    target = format_target(address, port)

    groups = _load(path)
    if any(_matches(t, address, port) for g in groups for t in g.get("targets", [])):
        logger.warning(f"Server already exists in configuration: {target}")
        return False

    groups.append({
        "targets": [target],
        "labels": {"job": JOB_LABEL, "server_name": name or address},
    })
    _save(path, groups)
    logger.info(f"Added {name} ({target}) to {path}")
    return True


def remove_server(path: Path, address: str, port: int = WINDOWS_EXPORTER_PORT) -> bool:
    """Remove a server target. Returns False when it was not configured."""
    path = Path(path)
    address = validate_host(address)
    target = format_target(address, port)

    groups = _load(path)
    kept = []
    removed = False
    for group in groups:
        targets = [t for t in group.get("targets", []) if not _matches(t, address, port)]
        if len(targets) != len(group.get("targets", [])):
            removed = True
        if targets:
            kept.append({**group, "targets": targets})

    if removed:
        _save(path, kept)
        logger.info(f"Removed {target} from {path}")
    return removed
