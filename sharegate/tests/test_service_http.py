# sharegate/tests/test_service_http.py
import json

from fastapi.testclient import TestClient

from sharegate.config import Settings
from sharegate.ledger import LedgerError
from sharegate.service_http import create_app

ON_CHAIN = Settings(validate_on_chain=True, web3_provider="http://ledger.test")


def _client(settings=None, fetcher=None):
    return TestClient(create_app(settings or Settings(), fetcher=fetcher))


def test_healthz():
    r = _client().get("/healthz")
    assert r.status_code == 200
    assert r.json()["ok"] is True
    assert r.headers["x-sharegate-config-hash"] == Settings().config_hash()


def test_readyz_and_version():
    client = _client()
    assert client.get("/readyz").json()["ready"] is True
    assert client.get("/version").json()["attestation_hash_field"] == "dataHash"


def test_receive_accepted(make_claim):
    r = _client().post("/api/receive", json=make_claim(2))
    assert r.status_code == 200
    assert r.json() == {"success": True, "token": "share-token-1"}


def test_receive_accepted_on_chain(make_claim, attested_logs, fake_fetcher):
    claim = make_claim(2)
    r = _client(ON_CHAIN, fake_fetcher(attested_logs(claim))).post("/api/receive", json=claim)
    assert r.status_code == 200


def test_receive_format_errors():
    r = _client().post("/api/receive", json={"subject": "0xabc"})
    assert r.status_code == 400
    assert [e["key"] for e in r.json()["errors"]] == ["token", "data", "packedData", "signature"]


def test_receive_rejected_claim(make_claim):
    claim = make_claim()
    claim["token"] = "swapped"
    r = _client().post("/api/receive", json=claim)
    assert r.status_code == 400
    errors = r.json()["errors"]
    assert [e["key"] for e in errors] == ["packedData"]
    assert "message" in errors[0]


def test_receive_invalid_json():
    r = _client().post(
        "/api/receive",
        content=b"{not json",
        headers={"content-type": "application/json"},
    )
    assert r.status_code == 400
    assert r.json()["errors"][0]["key"] == "body"


def test_receive_ledger_failure_is_502(make_claim, fake_fetcher):
    claim = make_claim()
    fetcher = fake_fetcher(failures={claim["data"][0]["tx"]: LedgerError("transaction not found")})
    r = _client(ON_CHAIN, fetcher).post("/api/receive", json=claim)
    assert r.status_code == 502
    body = r.json()
    assert body["error"] == "verification_incomplete"
    assert "errors" not in body


def test_body_too_large(make_claim):
    r = _client(Settings(max_body_bytes=64)).post("/api/receive", json=make_claim())
    assert r.status_code == 413


def test_request_id_propagated():
    r = _client().get("/healthz", headers={"X-Request-Id": "req-123"})
    assert r.headers["x-request-id"] == "req-123"
    assert _client().get("/healthz").headers.get("x-request-id")


def test_metrics_count_verdicts(make_claim):
    client = _client()
    client.post("/api/receive", json=make_claim())
    client.post("/api/receive", json={})
    text = client.get("/metrics").text
    assert 'sharegate_verdicts_total{outcome="accepted",stage="none"} 1.0' in text
    assert 'sharegate_verdicts_total{outcome="rejected",stage="format"} 1.0' in text
    assert 'sharegate_validation_errors_total{stage="format",key="token"} 1.0' in text
    assert 'sharegate_requests_total{route="/api/receive",status="200"} 1.0' in text


def test_docs_disabled_by_default():
    assert _client().get("/docs").status_code == 404


def test_receive_non_finite_number_is_body_error(make_claim):
    text = json.dumps(make_claim()).replace('"type": "email"', '"type": NaN', 1)
    assert "NaN" in text
    r = _client().post("/api/receive", content=text, headers={"content-type": "application/json"})
    assert r.status_code == 400
    assert [e["key"] for e in r.json()["errors"]] == ["body"]

    r = _client().post(
        "/api/receive",
        content=b'{"token": -Infinity}',
        headers={"content-type": "application/json"},
    )
    assert r.status_code == 400
    assert r.json()["errors"][0]["key"] == "body"


def test_receive_lone_surrogate_in_data(make_claim, make_node):
    node = make_node(0)
    node["type"] = "\ud800"
    claim = make_claim(nodes=[node])
    # ensure_ascii writes the surrogate as a \ud800 escape, which decodes back to it
    text = json.dumps(claim)
    assert "\\ud800" in text
    r = _client().post("/api/receive", content=text, headers={"content-type": "application/json"})
    assert r.status_code == 200
    assert r.json()["success"] is True


def test_receive_invalid_utf8_is_body_error():
    r = _client().post(
        "/api/receive",
        content=b'{"token": "\xff\xfe"}',
        headers={"content-type": "application/json"},
    )
    assert r.status_code == 400
    assert r.json()["errors"][0]["key"] == "body"
