"""
Password Reset
Generates a strong random password per user and sets it through the
passwordProfile, optionally forcing a change at next sign-in and revoking
existing sessions.
"""

from __future__ import annotations

import logging
import secrets
import string
from typing import Optional

from .base import ACTION_DONE, ACTION_FAILED, ACTION_PLANNED, BaseTask, TaskResult, user_path

logger = logging.getLogger("m365_admin.tasks.passwords")

MIN_PASSWORD_LENGTH = 12

# Look-alike characters are left out so passwords can be read over the phone
_AMBIGUOUS = set("Il1O0o")
UPPER = "".join(c for c in string.ascii_uppercase if c not in _AMBIGUOUS)
LOWER = "".join(c for c in string.ascii_lowercase if c not in _AMBIGUOUS)
DIGITS = "".join(c for c in string.digits if c not in _AMBIGUOUS)
SYMBOLS = "!@#$%^&*-_=+?"


def generate_password(length: int = 16) -> str:
    """Random password with at least one upper, lower, digit and symbol."""
    length = max(length, MIN_PASSWORD_LENGTH)
    pools = [UPPER, LOWER, DIGITS, SYMBOLS]
    chars = [secrets.choice(pool) for pool in pools]
    alphabet = "".join(pools)
    chars.extend(secrets.choice(alphabet) for _ in range(length - len(chars)))
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)


class PasswordReset(BaseTask):
    name = "password_reset"
    description = "Reset user passwords"
    mutating = True

    def __init__(self, *args, users: Optional[list[str]] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.target_users = users or []

    async def run(self, result: TaskResult):
        if not self.target_users:
            result.add_error("No users given for password reset")
            return

        for upn in self.target_users:
            user = await self.safe_get(
                user_path(upn),
                result,
                params={"$select": "id,userPrincipalName,displayName,accountEnabled"},
            )
            if user.get("_not_found") or not user.get("id"):
                self.record(result, upn, "reset_password", ACTION_FAILED, "user not found")
                result.add_rows([{"userPrincipalName": upn, "status": ACTION_FAILED}])
                continue

            password = generate_password(self.config.password_length)
            body = {
                "passwordProfile": {
                    "password": password,
                    "forceChangePasswordNextSignIn": self.config.force_change_password,
                }
            }
            status = await self.apply_change(
                result,
                upn,
                "reset_password",
                lambda uid=user["id"], b=body: self.graph.patch(f"users/{uid}", b),
            )

            # Revoke follows the reset, planned or done
            if status in (ACTION_DONE, ACTION_PLANNED) and self.config.revoke_sessions:
                await self.apply_change(
                    result,
                    upn,
                    "revoke_sessions",
                    lambda uid=user["id"]: self.graph.post(f"users/{uid}/revokeSignInSessions"),
                )

            result.add_rows([{
                "userPrincipalName": user.get("userPrincipalName", upn),
                "displayName": user.get("displayName"),
                "accountEnabled": user.get("accountEnabled"),
                "forceChangePasswordNextSignIn": self.config.force_change_password,
                # Only a password that was actually set is worth handing out
                "temporaryPassword": password if status == ACTION_DONE else "",
                "status": status,
            }])

        result.add_data("summary", {
            "requested": len(self.target_users),
            **result.action_counts(),
        })
