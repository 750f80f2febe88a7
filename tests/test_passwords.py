import string

from conftest import NOW

from m365_admin.tasks import PasswordReset
from m365_admin.tasks.passwords import MIN_PASSWORD_LENGTH, SYMBOLS, generate_password


def test_generated_password_mixes_character_classes():
    for _ in range(20):
        pw = generate_password(16)
        assert len(pw) == 16
        assert any(c in string.ascii_uppercase for c in pw)
        assert any(c in string.ascii_lowercase for c in pw)
        assert any(c in string.digits for c in pw)
        assert any(c in SYMBOLS for c in pw)
        assert not set(pw) & set("Il1O0o")


def test_short_length_is_raised_to_minimum():
    assert len(generate_password(4)) == MIN_PASSWORD_LENGTH


def _alice(graph_stub):
    graph_stub.add("GET", "/v1.0/users/alice@contoso.com", {
        "id": "alice-id", "userPrincipalName": "alice@contoso.com",
        "displayName": "Alice", "accountEnabled": True,
    })


def test_dry_run_plans_reset_without_password(graph_stub, run_graph, task_config):
    _alice(graph_stub)

    result, guard = run_graph(lambda g: PasswordReset(
        g, task_config, now=NOW, users=["alice@contoso.com"]
    ).execute())

    assert result.rows[0]["status"] == "planned"
    assert result.rows[0]["temporaryPassword"] == ""
    assert guard.changes[0]["body"] == {"passwordProfile": "***"}
    assert graph_stub.calls("PATCH") == []


def test_applied_reset_sends_profile_and_revokes(graph_stub, run_graph, task_config):
    _alice(graph_stub)
    graph_stub.add("PATCH", "/v1.0/users/alice-id", status=204)
    graph_stub.add("POST", "/v1.0/users/alice-id/revokeSignInSessions", {"value": True})
    task_config.revoke_sessions = True

    result, _ = run_graph(lambda g: PasswordReset(
        g, task_config, now=NOW, users=["alice@contoso.com", "ghost@contoso.com"]
    ).execute(), apply=True)

    patch = graph_stub.body(graph_stub.calls("PATCH")[0])
    row = result.rows[0]
    assert row["status"] == "done"
    assert patch["passwordProfile"]["password"] == row["temporaryPassword"]
    assert patch["passwordProfile"]["forceChangePasswordNextSignIn"] is True
    assert len(graph_stub.calls("POST")) == 1
    assert result.rows[1] == {"userPrincipalName": "ghost@contoso.com", "status": "failed"}
    assert result.summary["done"] == 2
    assert result.summary["failed"] == 1


def test_no_users_is_an_error(graph_stub, run_graph, task_config):
    result, _ = run_graph(lambda g: PasswordReset(g, task_config, now=NOW).execute())
    assert not result.ok


def test_dry_run_plans_session_revoke(graph_stub, run_graph, task_config):
    _alice(graph_stub)
    task_config.revoke_sessions = True

    result, guard = run_graph(lambda g: PasswordReset(
        g, task_config, now=NOW, users=["alice@contoso.com"]
    ).execute())

    assert [c["url"].rsplit("/v1.0/", 1)[1] for c in guard.changes] == [
        "users/alice-id",
        "users/alice-id/revokeSignInSessions",
    ]
    assert [a["action"] for a in result.actions] == ["reset_password", "revoke_sessions"]
    assert graph_stub.calls("POST") == []


def test_guest_upn_is_escaped_in_lookup(graph_stub, run_graph, task_config):
    upn = "ann_fabrikam.com#EXT#@contoso.onmicrosoft.com"
    graph_stub.add("GET", f"/v1.0/users/{upn}", {
        "id": "ann-id", "userPrincipalName": upn, "displayName": "Ann", "accountEnabled": True,
    })

    result, _ = run_graph(lambda g: PasswordReset(g, task_config, now=NOW, users=[upn]).execute())

    lookup = graph_stub.calls("GET")[0]
    assert b"%23EXT%23@contoso.onmicrosoft.com" in lookup.url.raw_path
    assert result.rows[0]["status"] == "planned"
