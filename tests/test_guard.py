import pytest

from m365_admin.safety.guardian import ChangeGuard, SafetyViolation

BASE = "https://graph.microsoft.com/v1.0"


@pytest.mark.parametrize("method,path,action", [
    ("PATCH", "/users/abc", "update_user"),
    ("DELETE", "/users/abc", "delete_user"),
    ("POST", "/users/abc/assignLicense", "assign_license"),
    ("POST", "/users/it@contoso.com/sendMail", "send_mail"),
    ("POST", "/users/abc/revokeSignInSessions", "revoke_sessions"),
])
def test_allowed_actions(method, path, action):
    assert ChangeGuard.match_action(method, f"{BASE}{path}") == action


@pytest.mark.parametrize("method,path", [
    ("DELETE", "/groups/abc"),
    ("POST", "/users"),
    ("PATCH", "/identity/conditionalAccess/policies/p1"),
    ("DELETE", "/users/abc/manager/$ref"),
])
def test_other_writes_are_not_actions(method, path):
    assert ChangeGuard.match_action(method, f"{BASE}{path}") is None


def test_reads_always_pass():
    guard = ChangeGuard(read_only=True)
    assert guard.validate_request("GET", f"{BASE}/users") is True
    assert guard.validate_request("POST", f"{BASE}/$batch") is True


def test_dry_run_plans_and_redacts():
    guard = ChangeGuard()
    body = {"passwordProfile": {"password": "S3cret!", "forceChangePasswordNextSignIn": True}}
    assert guard.validate_request("PATCH", f"{BASE}/users/abc", body) is False
    change = guard.changes[0]
    assert change["status"] == "planned"
    assert change["body"] == {"passwordProfile": "***"}
    assert guard.mode == "DRY-RUN"


def test_apply_mode_executes():
    guard = ChangeGuard(apply=True)
    assert guard.validate_request("DELETE", f"{BASE}/users/abc") is True
    assert guard.get_audit_record()["change_guard"]["executed_changes"] == 1
    assert guard.mode == "APPLY"


def test_read_only_blocks_allowed_actions_too():
    guard = ChangeGuard(apply=True, read_only=True)
    with pytest.raises(SafetyViolation):
        guard.validate_request("DELETE", f"{BASE}/users/abc")
    assert guard.get_audit_record()["change_guard"]["violations_detected"] == 1


def test_unknown_write_raises_in_apply_mode():
    guard = ChangeGuard(apply=True)
    with pytest.raises(SafetyViolation):
        guard.validate_request("PUT", f"{BASE}/users/abc/photo/$value")
    assert guard.violations[0]["reason"] == "Not an allowed admin action"
