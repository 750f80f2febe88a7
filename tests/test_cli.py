import json

import pytest

from m365_admin import __main__ as cli
from m365_admin import profiles
from m365_admin.config import ConfigError
from m365_admin.graph.client import GraphClient
from m365_admin.tasks import GuestCleanup, HEALTH_TASKS

TENANT = "72f988bf-86f1-41af-91ab-2d7cd011db47"
CLIENT = "0f1e2d3c-4b5a-4978-8695-a4b3c2d1e0f9"
ENV_KEYS = ["AZURE_TENANT_ID", "AZURE_CLIENT_ID", "AZURE_CLIENT_SECRET", "M365_CERT_PATH", "PORT"]


@pytest.fixture(autouse=True)
def isolated(monkeypatch, tmp_path):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr(profiles, "CONFIG_DIR", tmp_path / "profiles")
    monkeypatch.chdir(tmp_path)


def config_for(*argv):
    return cli.build_config(cli.build_parser().parse_args(list(argv)))


def test_flags_build_secret_config():
    config = config_for(
        "guest-cleanup", "--tenant-id", "t", "--client-id", "c", "--secret",
        "--days", "45", "--exclude-domain", "partner.com", "--exclude-domain", "vendor.com",
    )
    assert config.auth.mode == "secret"
    assert config.auth.secret.tenant_id == "t"
    assert config.apply is False
    assert config.tasks.guest_inactive_days == 45
    assert config.tasks.inactive_days == 90
    assert config.tasks.guest_excluded_domains == ["partner.com", "vendor.com"]


def test_default_profile_is_used():
    store = profiles.ProfileStore.load()
    store.add(profiles.TenantProfile("contoso", TENANT, CLIENT, auth_mode="delegated"))

    config = config_for("mfa-report", "--apply")

    assert config.auth.mode == "delegated"
    assert config.auth.delegated.tenant_id == TENANT
    assert config.apply is True


def test_unknown_profile_is_an_error():
    with pytest.raises(ConfigError):
        config_for("mfa-report", "--profile", "missing")


def test_missing_credentials_exit_code(capsys):
    assert cli.main(["ca-report"]) == 1
    assert "No tenant credentials" in capsys.readouterr().out


def test_health_score_never_deletes_guests():
    args = cli.build_parser().parse_args(["health-score"])
    tasks = cli.task_factory(args)({
        "graph": None, "config": None, "journal": None, "run_id": "r", "shared": {},
    })
    assert [type(t) for t in tasks] == list(HEALTH_TASKS)
    guests = next(t for t in tasks if isinstance(t, GuestCleanup))
    assert guests.delete is False


def test_profile_commands(capsys):
    assert cli.main([
        "profile", "add", "contoso", "--tenant-id", TENANT, "--client-id", CLIENT, "--auth-mode", "secret",
    ]) == 0
    assert cli.main(["profile", "list"]) == 0
    out = capsys.readouterr().out
    assert "contoso" in out
    assert "✓" in out
    assert cli.main(["profile", "set-default", "nope"]) == 1
    assert cli.main(["profile", "remove", "contoso"]) == 0


def test_invalid_profile_is_refused(capsys):
    code = cli.main(["profile", "add", "contoso", "--tenant-id", TENANT, "--client-id", "c"])

    assert code == 1
    assert "client ID 'c' is not a GUID" in capsys.readouterr().out
    assert not (profiles.CONFIG_DIR / "profiles.json").exists()


def test_targets_commands(tmp_path, capsys):
    path = str(tmp_path / "windows.json")
    assert cli.main(["targets", "--file", path, "add", "10.0.0.5", "srv01"]) == 0
    assert cli.main(["targets", "--file", path, "list"]) == 0
    assert "srv01" in capsys.readouterr().out
    assert cli.main(["targets", "--file", path, "add", "bad host", "x"]) == 1
    assert cli.main(["targets", "--file", path, "remove", "10.0.0.9"]) == 1


class FakeAuthenticator:
    def __init__(self, config):
        self.config = config

    async def acquire_token(self):
        return "cli-token"


def test_license_report_end_to_end(monkeypatch, tmp_path, graph_stub):
    graph_stub.add("GET", "/v1.0/subscribedSkus", {"value": [
        {"skuId": "s1", "skuPartNumber": "SPE_E3", "consumedUnits": 8, "prepaidUnits": {"enabled": 10}},
    ]})
    monkeypatch.setattr(cli, "Authenticator", FakeAuthenticator)
    monkeypatch.setattr(
        cli, "GraphClient",
        lambda access_token, guardian: GraphClient(access_token, guardian, transport=graph_stub.transport()),
    )

    code = cli.main([
        "license-report", "--tenant-id", "t", "--client-id", "c",
        "--output-dir", str(tmp_path / "out"), "--formats", "json",
    ])

    assert code == 0
    assert graph_stub.calls()[0].headers["Authorization"] == "Bearer cli-token"
    [report] = (tmp_path / "out").glob("m365_admin_*.json")
    payload = json.loads(report.read_text(encoding="utf-8"))
    assert payload["metadata"]["mode"] == "DRY-RUN"
    assert payload["results"]["licenses"]["rows"][0]["friendlyName"] == "Microsoft 365 E3"
