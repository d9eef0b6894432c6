import json

import azure.functions as func
import pytest

import Score_Query_API as query_api
import Score_Upload_API as upload_api
from utils.aggregation import WriteConflictError


def upload_request(body, method="POST"):
    raw = body if isinstance(body, bytes) else json.dumps(body).encode("utf-8")
    return func.HttpRequest(method=method, url="/api/scores/upload", headers={}, params={}, body=raw)


def query_request(route, method="GET"):
    return func.HttpRequest(
        method=method, url=f"/api/scores/{route}", headers={}, params={}, route_params={"route": route}, body=b""
    )


def body_of(resp):
    return json.loads(resp.get_body())


@pytest.fixture(autouse=True)
def wired(monkeypatch, aggregation):
    monkeypatch.setattr(upload_api, "_aggregation_store", lambda: aggregation)
    monkeypatch.setattr(query_api, "_aggregation_store", lambda: aggregation)
    return aggregation


VALID = {
    "deviceId": "phone-1",
    "userName": "alice",
    "yearMonth": "2024-06",
    "dailyScores": {"2024-06-01": 30, "2024-06-02": 50},
}


def test_upload_stores_record(aggregation):
    resp = upload_api.main(upload_request(VALID))

    assert resp.status_code == 200
    assert body_of(resp) == {"success": True, "monthlyTotal": 80, "userIndex": 1}
    rec = aggregation.load_month("2024-06").entries["phone-1_alice"]
    assert rec.exceed_days == 1
    assert rec.upload_count == 1


def test_upload_without_device_uses_auto_id(aggregation):
    payload = {k: v for k, v in VALID.items() if k != "deviceId"}
    upload_api.main(upload_request(payload))
    assert "auto_alice" in aggregation.load_month("2024-06").entries


@pytest.mark.parametrize(
    "patch",
    [
        {"userName": None},
        {"userName": "  "},
        {"yearMonth": None},
        {"yearMonth": "2024-6"},
        {"dailyScores": None},
        {"dailyScores": ["2024-06-01"]},
        {"dailyScores": {"2024-06-01": "30"}},
        {"dailyScores": {"2024-06-01": 1.5}},
        {"dailyScores": {"2024-06-01": True}},
        {"dailyScores": {"2024-07-01": 3}},
        {"dailyScores": {"yesterday": 3}},
    ],
)
def test_upload_rejects_bad_payload(patch, aggregation):
    payload = {**VALID, **patch}
    payload = {k: v for k, v in payload.items() if v is not None}

    resp = upload_api.main(upload_request(payload))

    assert resp.status_code == 400
    assert "error" in body_of(resp)
    assert aggregation.list_months() == []


def test_upload_rejects_invalid_json():
    assert upload_api.main(upload_request(b"{not json")).status_code == 400


def test_upload_conflict_is_409(monkeypatch):
    class Losing:
        def upsert_from_upload(self, *args, **kwargs):
            raise WriteConflictError("gave up")

    monkeypatch.setattr(upload_api, "_aggregation_store", lambda: Losing())
    assert upload_api.main(upload_request(VALID)).status_code == 409


def test_upload_unexpected_failure_is_500(monkeypatch):
    class Broken:
        def upsert_from_upload(self, *args, **kwargs):
            raise OSError("disk full")

    monkeypatch.setattr(upload_api, "_aggregation_store", lambda: Broken())
    assert upload_api.main(upload_request(VALID)).status_code == 500


def test_upload_preflight():
    resp = upload_api.main(upload_request(b"", method="OPTIONS"))
    assert resp.status_code == 204
    assert "Access-Control-Allow-Origin" in resp.headers


def test_query_month(aggregation):
    aggregation.merge_daily_result("2024-06-01", {"bob": 50, "alice": 3})

    resp = query_api.main(query_request("data/2024-06"))

    assert resp.status_code == 200
    data = body_of(resp)
    assert data["yearMonth"] == "2024-06"
    assert data["dailyLimit"] == 45
    assert data["totalUsers"] == 2
    assert [u["userName"] for u in data["users"]] == ["bob", "alice"]
    assert data["users"][0]["exceedDays"] == [{"date": "2024-06-01", "score": 50, "limit": 45}]


def test_query_missing_month_is_empty():
    data = body_of(query_api.main(query_request("data/2023-01")))
    assert data["users"] == []
    assert data["totalUsers"] == 0


def test_query_unreadable_month_is_empty(store):
    store.put_text("data/2024-06.json", "[1, 2, 3]")
    data = body_of(query_api.main(query_request("data/2024-06")))
    assert data["users"] == []


def test_query_months_newest_first(aggregation):
    aggregation.merge_daily_result("2024-05-02", {"a": 1})
    aggregation.merge_daily_result("2024-06-02", {"a": 1})

    assert body_of(query_api.main(query_request("months"))) == {"months": ["2024-06", "2024-05"]}


def test_query_bad_routes():
    assert query_api.main(query_request("data/June")).status_code == 400
    assert query_api.main(query_request("nope")).status_code == 404
    assert query_api.main(query_request("months", method="OPTIONS")).status_code == 204


def test_wildcard_origin_never_allows_credentials(monkeypatch):
    monkeypatch.delenv("ALLOWED_ORIGIN", raising=False)
    headers = upload_api.main(upload_request(b"", method="OPTIONS")).headers
    assert headers["Access-Control-Allow-Origin"] == "*"
    assert "Access-Control-Allow-Credentials" not in headers


def test_configured_origin_allows_credentials(monkeypatch):
    monkeypatch.setenv("ALLOWED_ORIGIN", "https://app.example.test")
    headers = query_api.main(query_request("months", method="OPTIONS")).headers
    assert headers["Access-Control-Allow-Origin"] == "https://app.example.test"
    assert headers["Access-Control-Allow-Credentials"] == "true"
