import pytest

from m365_admin.graph.client import GraphAPIError
from m365_admin.safety.guardian import SafetyViolation


def test_get_all_pages_follows_next_link(graph_stub, run_graph):
    graph_stub.add("GET", "/v1.0/users", {
        "value": [{"id": "1"}, {"id": "2"}],
        "@odata.nextLink": "https://graph.microsoft.com/v1.0/users/page2?$skiptoken=abc",
    })
    graph_stub.add("GET", "/v1.0/users/page2", {"value": [{"id": "3"}]})

    items, _ = run_graph(lambda g: g.get_all_pages("users", params={"$select": "id"}))

    assert [i["id"] for i in items] == ["1", "2", "3"]
    first = graph_stub.calls("GET", "/v1.0/users")[0]
    assert first.url.params["$top"] == "999"
    assert first.url.params["$select"] == "id"
    assert first.headers["Authorization"] == "Bearer test-token"


def test_skip_top_leaves_top_out(graph_stub, run_graph):
    graph_stub.add("GET", "/v1.0/subscribedSkus", {"value": []})
    run_graph(lambda g: g.get_all_pages("subscribedSkus", skip_top=True))
    assert "$top" not in graph_stub.calls()[0].url.params


def test_get_all_pages_raises_on_forbidden(graph_stub, run_graph):
    graph_stub.add("GET", "/v1.0/identity/conditionalAccess/policies",
                   {"error": {"message": "Insufficient privileges"}}, status=403)
    with pytest.raises(GraphAPIError) as exc:
        run_graph(lambda g: g.get_all_pages("identity/conditionalAccess/policies"))
    assert exc.value.status_code == 403
    assert "Insufficient privileges" in exc.value.message


def test_throttling_retries_with_retry_after(graph_stub, run_graph, no_backoff):
    graph_stub.add("GET", "/v1.0/organization", {}, status=429, headers={"Retry-After": "7"})
    graph_stub.add("GET", "/v1.0/organization", {"value": [{"id": "org"}]})

    data, _ = run_graph(lambda g: g.get("organization"))

    assert data["value"][0]["id"] == "org"
    assert len(graph_stub.calls()) == 2
    assert no_backoff == [7.0]


def test_throttling_gives_up_after_max_retries(graph_stub, run_graph):
    graph_stub.add("GET", "/v1.0/organization", {}, status=503)
    data, _ = run_graph(lambda g: g.get("organization"))
    assert data["_max_retries_exceeded"] is True
    assert len(graph_stub.calls()) == 6


def test_not_found_is_marked(graph_stub, run_graph):
    data, _ = run_graph(lambda g: g.get("users/nobody@contoso.com"))
    assert data["_not_found"] is True


def test_server_error_raises(graph_stub, run_graph):
    graph_stub.add("GET", "/v1.0/users", {"error": {"message": "boom"}}, status=500)
    with pytest.raises(GraphAPIError) as exc:
        run_graph(lambda g: g.get("users"))
    assert exc.value.status_code == 500


def test_get_count_parses_plain_text(graph_stub, run_graph):
    graph_stub.add("GET", "/v1.0/users/$count", text="\ufeff42")
    count, _ = run_graph(lambda g: g.get_count("users"))
    assert count == 42
    assert graph_stub.calls()[0].headers["ConsistencyLevel"] == "eventual"


def test_get_filtered_count_reads_odata_count(graph_stub, run_graph):
    graph_stub.add("GET", "/v1.0/users", {"@odata.count": 17, "value": [{"id": "x"}]})
    count, _ = run_graph(
        lambda g: g.get_filtered_count("users", "accountEnabled eq true")
    )
    assert count == 17
    params = graph_stub.calls()[0].url.params
    assert params["$count"] == "true"
    assert params["$filter"] == "accountEnabled eq true"


def test_get_report_parses_csv(graph_stub, run_graph):
    csv_text = "\ufeffReport Refresh Date,Total,Report Date\n2026-03-01,12,2026-03-01\n,,\n"
    graph_stub.add(
        "GET", "/v1.0/reports/getSharePointSiteUsageSiteCounts(period='D7')", text=csv_text
    )
    rows, _ = run_graph(
        lambda g: g.get_report("reports/getSharePointSiteUsageSiteCounts(period='D7')")
    )
    assert rows == [{"Report Refresh Date": "2026-03-01", "Total": "12", "Report Date": "2026-03-01"}]


def test_batch_get_orders_responses_by_id(graph_stub, run_graph):
    graph_stub.add("POST", "/v1.0/$batch", {"responses": [
        {"id": "1", "status": 200, "body": {"id": "b"}},
        {"id": "0", "status": 200, "body": {"id": "a"}},
        {"id": "2", "status": 403, "body": {"error": {"message": "denied"}}},
    ]})
    results, guard = run_graph(lambda g: g.batch_get(["users/a", "users/b", "users/c"]))
    assert [r.get("id") for r in results[:2]] == ["a", "b"]
    assert results[2]["_error"] is True and results[2]["status"] == 403
    assert guard.changes == []


def test_dry_run_write_is_not_sent(graph_stub, run_graph):
    result, guard = run_graph(lambda g: g.delete("users/guest-1"))
    assert result == {"_dry_run": True}
    assert graph_stub.calls() == []
    assert guard.changes[0]["status"] == "planned"
    assert guard.changes[0]["action"] == "delete_user"


def test_applied_write_is_sent(graph_stub, run_graph):
    graph_stub.add("DELETE", "/v1.0/users/guest-1", status=204)
    result, guard = run_graph(lambda g: g.delete("users/guest-1"), apply=True)
    assert result == {}
    assert len(graph_stub.calls("DELETE")) == 1
    assert guard.get_audit_record()["change_guard"]["executed_changes"] == 1


def test_applied_write_not_found_raises(graph_stub, run_graph):
    with pytest.raises(GraphAPIError) as exc:
        run_graph(lambda g: g.delete("users/missing"), apply=True)
    assert exc.value.status_code == 404


def test_unknown_write_is_blocked_before_sending(graph_stub, run_graph):
    with pytest.raises(SafetyViolation):
        run_graph(lambda g: g.post("groups", {"displayName": "x"}), apply=True)
    assert graph_stub.calls() == []
