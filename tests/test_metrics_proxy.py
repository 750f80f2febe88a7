from fastapi.testclient import TestClient

from m365_admin.auth.authenticator import AuthenticationError
from m365_admin.config import AuthConfig, SecretAuth, ToolkitConfig
from m365_admin.graph.client import GraphAPIError
from m365_admin.monitoring import METRICS, GraphMetricSource
from m365_admin.monitoring.metrics import latest_report_value
from m365_admin.monitoring.proxy import create_app

SKUS = {"value": [
    {"skuPartNumber": "SPE_E3", "consumedUnits": 40, "prepaidUnits": {"enabled": 50}},
    {"skuPartNumber": "FLOW_FREE", "consumedUnits": 12, "prepaidUnits": {"enabled": 10}},
]}


def query(run_graph, *targets):
    async def _q(graph):
        return await GraphMetricSource(graph).query([{"target": t} for t in targets])

    result, _ = run_graph(_q)
    return {r["target"]: r["datapoints"] for r in result}


def value(datapoints):
    assert len(datapoints) == 1
    return datapoints[0][0]


def test_count_metrics(graph_stub, run_graph):
    graph_stub.add("GET", "/v1.0/users/$count", text="250")
    graph_stub.add("GET", "/v1.0/users", {"@odata.count": 180, "value": [{"id": "u"}]})
    graph_stub.add("GET", "/v1.0/groups/$count", text="12")

    out = query(run_graph, "users.count", "users.active", "teams.count")

    assert value(out["users.count"]) == 250
    assert value(out["users.active"]) == 180
    assert value(out["teams.count"]) == 12
    active_call = graph_stub.calls("GET", "/v1.0/users")[0]
    assert active_call.url.params["$filter"].startswith("signInActivity/lastSignInDateTime ge ")
    teams_call = graph_stub.calls("GET", "/v1.0/groups/$count")[0]
    assert "Team" in teams_call.url.params["$filter"]


def test_report_metrics_use_latest_row(graph_stub, run_graph):
    graph_stub.add(
        "GET", "/v1.0/reports/getSharePointSiteUsageSiteCounts(period='D7')",
        text="Report Refresh Date,Total,Active,Report Date\n"
             "2026-03-01,40,10,2026-02-28\n2026-03-01,42,11,2026-03-01\n",
    )
    graph_stub.add(
        "GET", "/v1.0/reports/getMailboxUsageMailboxCounts(period='D7')",
        text="Report Refresh Date,Total,Active,Report Date\n2026-03-01,300,280,2026-03-01\n",
    )
    graph_stub.add(
        "GET", "/v1.0/reports/getOneDriveUsageStorage(period='D7')",
        text="Report Refresh Date,Site Type,Storage Used (Byte),Report Date\n"
             "2026-03-01,OneDrive,1048576,2026-03-01\n",
    )
    graph_stub.add(
        "GET", "/v1.0/reports/getTeamsUserActivityUserDetail(period='D30')",
        text="Report Refresh Date,User Principal Name\n2026-03-01,a@contoso.com\n2026-03-01,b@contoso.com\n",
    )

    out = query(run_graph, "sharepoint.sites", "exchange.mailboxes", "onedrive.usage", "teams.activeUsers")

    assert value(out["sharepoint.sites"]) == 42
    assert value(out["exchange.mailboxes"]) == 300
    assert value(out["onedrive.usage"]) == 1048576
    assert value(out["teams.activeUsers"]) == 2


def test_license_metrics(graph_stub, run_graph):
    graph_stub.add("GET", "/v1.0/subscribedSkus", SKUS)
    out = query(run_graph, "licenses.assigned", "licenses.available")
    assert value(out["licenses.assigned"]) == 52
    # Overallocated SKUs do not go negative
    assert value(out["licenses.available"]) == 10


def test_failing_metric_reports_zero(graph_stub, run_graph):
    graph_stub.add("GET", "/v1.0/users/$count", {"error": {"message": "denied"}}, status=403)
    out = query(run_graph, "users.count")
    assert value(out["users.count"]) == 0


def test_unknown_target_has_no_datapoints(run_graph):
    out = query(run_graph, "printers.count")
    assert out["printers.count"] == []


def test_passthrough_maps_markers(graph_stub, run_graph):
    graph_stub.add("GET", "/v1.0/organization", {"value": [{"id": "org"}]})
    graph_stub.add("GET", "/v1.0/auditLogs/signIns", {"error": {"message": "no"}}, status=403)

    async def _relay(graph):
        source = GraphMetricSource(graph)
        ok = await source.passthrough("organization", {"$select": "id"})
        errors = []
        for path in ("auditLogs/signIns", "missing/thing"):
            try:
                await source.passthrough(path)
            except GraphAPIError as e:
                errors.append(e.status_code)
        return ok, errors

    (ok, errors), _ = run_graph(_relay, read_only=True)
    assert ok["value"][0]["id"] == "org"
    assert errors == [403, 404]


def test_latest_report_value_without_dates():
    assert latest_report_value([{"Total": "5"}], "Total") == 0


# ─── HTTP surface ────────────────────────────────────────────────────────────

class FakeSource:
    def __init__(self, fail_auth=False):
        self.fail_auth = fail_auth
        self.queried = []

    def list_metrics(self):
        return list(METRICS)

    async def query(self, targets):
        if self.fail_auth:
            raise AuthenticationError("token expired")
        self.queried.extend(targets)
        return [{"target": t["target"], "datapoints": [[1, 0]]} for t in targets]

    async def passthrough(self, path, params=None):
        if path == "users/forbidden":
            raise GraphAPIError(403, "Insufficient privileges", path)
        return {"path": path, "params": params}


def test_health_and_root():
    with TestClient(create_app(source=FakeSource())) as client:
        health = client.get("/health")
        assert health.status_code == 200
        assert health.json()["status"] == "healthy"
        assert "timestamp" in health.json()
        assert client.get("/").json() == {"message": "Microsoft Graph API Proxy is running"}


def test_search_and_query():
    source = FakeSource()
    with TestClient(create_app(source=source)) as client:
        assert client.post("/search", json={"target": ""}).json() == METRICS
        resp = client.post("/query", json={"targets": [{"target": "users.count"}]})
        assert resp.json() == [{"target": "users.count", "datapoints": [[1, 0]]}]
        assert source.queried == [{"target": "users.count"}]


def test_query_auth_failure_is_500():
    with TestClient(create_app(source=FakeSource(fail_auth=True))) as client:
        resp = client.post("/query", json={"targets": [{"target": "users.count"}]})
        assert resp.status_code == 500
        assert "token expired" in resp.json()["error"]


def test_graph_relay():
    with TestClient(create_app(source=FakeSource())) as client:
        ok = client.get("/api/graph/users/123", params={"$select": "id"})
        assert ok.json() == {"path": "users/123", "params": {"$select": "id"}}

        denied = client.get("/api/graph/users/forbidden")
        assert denied.status_code == 403
        assert denied.json() == {"error": "Insufficient privileges"}


def test_proxy_starts_without_credentials(monkeypatch):
    monkeypatch.delenv("AZURE_CLIENT_SECRET", raising=False)
    config = ToolkitConfig(auth=AuthConfig(mode="secret", secret=SecretAuth("tenant-1", "client-1", "")))

    with TestClient(create_app(config)) as client:
        assert client.get("/health").status_code == 200

        resp = client.post("/query", json={"targets": [{"target": "users.count"}]})
        assert resp.status_code == 500
        assert "No client secret configured" in resp.json()["error"]

        relay = client.get("/api/graph/users")
        assert relay.status_code == 500
        assert "No client secret configured" in relay.json()["error"]


def test_cross_origin_requests_are_allowed():
    with TestClient(create_app(source=FakeSource())) as client:
        resp = client.get("/health", headers={"Origin": "http://grafana.local:3000"})
        assert resp.headers["access-control-allow-origin"] == "*"

        preflight = client.options("/query", headers={
            "Origin": "http://grafana.local:3000",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "content-type",
        })
        assert preflight.status_code == 200
        assert preflight.headers["access-control-allow-origin"] == "*"
