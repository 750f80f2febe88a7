"""
Change Guard — Decides which outbound Graph requests may change the tenant.
Mutating requests must match a known admin action; they are only sent in
apply mode, otherwise they are recorded as planned changes (dry run).
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any, Optional

logger = logging.getLogger("m365_admin.safety")

# ─── HTTP Methods ────────────────────────────────────────────────────────────

READ_METHODS = {"GET", "HEAD", "OPTIONS"}
WRITE_METHODS = {"POST", "PUT", "PATCH", "DELETE"}

# Graph uses POST for some read-only queries
SAFE_POST_ENDPOINTS = [
    re.compile(r"/\$batch$"),
    re.compile(r"/microsoft\.graph\.getByIds$"),
]

_USER = r"/users/[^/?]+"

# (method, pattern, action name) for every change the toolkit is allowed to make
ALLOWED_ACTIONS = [
    ("PATCH", re.compile(rf"{_USER}$"), "update_user"),
    ("DELETE", re.compile(rf"{_USER}$"), "delete_user"),
    ("POST", re.compile(rf"{_USER}/assignLicense$", re.IGNORECASE), "assign_license"),
    ("POST", re.compile(rf"{_USER}/sendMail$", re.IGNORECASE), "send_mail"),
    ("POST", re.compile(rf"{_USER}/revokeSignInSessions$", re.IGNORECASE), "revoke_sessions"),
]

REDACTED_KEYS = {"password", "passwordProfile", "client_secret", "newPassword"}


class SafetyViolation(Exception):
    """Raised when a request is not allowed to leave the toolkit."""
    pass


def _redact(body: Any) -> Any:
    if isinstance(body, dict):
        return {
            k: ("***" if k in REDACTED_KEYS else _redact(v))
            for k, v in body.items()
        }
    if isinstance(body, list):
        return [_redact(v) for v in body]
    return body


class ChangeGuard:
    """
    Validates every outbound HTTP request.
    Keeps an audit log of planned changes, executed changes and violations.
    """

    def __init__(self, apply: bool = False, read_only: bool = False):
        self.apply = apply
        self.read_only = read_only
        self.violations: list[dict] = []
        self.changes: list[dict] = []
        self.checks_performed: int = 0
        self.started_at: str = datetime.utcnow().isoformat() + "Z"

    @property
    def mode(self) -> str:
        if self.read_only:
            return "READ-ONLY"
        return "APPLY" if self.apply else "DRY-RUN"

    def validate_request(self, method: str, url: str, body: Optional[dict] = None) -> bool:
        """
        Validate an outbound request.
        Returns True when the request should be sent, False when it is a
        planned change in dry-run mode, and raises SafetyViolation when it
        is not allowed at all.
        """
        self.checks_performed += 1
        method_upper = method.upper()
        path = url.split("?", 1)[0]

        if method_upper in READ_METHODS:
            return True

        if method_upper == "POST":
            for pattern in SAFE_POST_ENDPOINTS:
                if pattern.search(path):
                    return True

        if self.read_only:
            self._record_violation(method_upper, url, "Write blocked in read-only mode")
            raise SafetyViolation(
                f"SAFETY VIOLATION: Write blocked in read-only mode: {method_upper} {url}"
            )

        action = self.match_action(method_upper, path)
        if action is None:
            self._record_violation(method_upper, url, "Not an allowed admin action")
            raise SafetyViolation(
                f"SAFETY VIOLATION: Not an allowed admin action: {method_upper} {url}"
            )

        status = "executed" if self.apply else "planned"
        self.changes.append({
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "action": action,
            "method": method_upper,
            "url": url,
            "body": _redact(body) if body else None,
            "status": status,
        })
        if self.apply:
            logger.info(f"Executing {action}: {method_upper} {url}")
        else:
            logger.info(f"[dry-run] Would execute {action}: {method_upper} {url}")
        return self.apply

    @staticmethod
    def match_action(method: str, path: str) -> Optional[str]:
        """Return the admin action name for a write request, if allowed."""
        for allowed_method, pattern, action in ALLOWED_ACTIONS:
            if method == allowed_method and pattern.search(path):
                return action
        return None

    def _record_violation(self, method: str, url: str, reason: str):
        violation = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "method": method,
            "url": url,
            "reason": reason,
        }
        self.violations.append(violation)
        logger.critical(f"SAFETY VIOLATION: {reason} — {method} {url}")

    def get_audit_record(self) -> dict:
        """Return the full change audit record."""
        return {
            "change_guard": {
                "mode": self.mode,
                "started_at": self.started_at,
                "checks_performed": self.checks_performed,
                "planned_changes": sum(1 for c in self.changes if c["status"] == "planned"),
                "executed_changes": sum(1 for c in self.changes if c["status"] == "executed"),
                "changes": self.changes,
                "violations_detected": len(self.violations),
                "violations": self.violations,
            }
        }

    def print_banner(self):
        """Print the dry-run / apply banner."""
        print("=" * 75)
        if self.read_only:
            print("  READ-ONLY MODE -- no write request will leave this process")
        elif self.apply:
            print("  APPLY MODE -- allowed admin actions WILL CHANGE THE TENANT")
            print("  * Each change is journaled with its per-item outcome")
        else:
            print("  DRY-RUN MODE -- changes are planned and reported, not sent")
            print("  * Re-run with --apply to execute the planned changes")
        print("=" * 75)
