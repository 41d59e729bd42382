from __future__ import annotations

from typing import Any

import pytest

from api.schemas.api_responses import fail, ok


def _assert_envelope(payload: Any) -> None:
    assert isinstance(payload, dict)
    assert set(payload.keys()) == {"ok", "data", "error", "meta"}

    assert isinstance(payload["ok"], bool)

    meta = payload["meta"]
    assert isinstance(meta, dict)
    assert "request_id" in meta

    # ok -> error must be null, fail -> error must be object
    if payload["ok"] is True:
        assert payload["error"] is None
    else:
        assert isinstance(payload["error"], dict)
        assert "code" in payload["error"]
        assert "message" in payload["error"]


def test_ok_list_sets_count():
    payload = ok([1, 2, 3])
    _assert_envelope(payload)
    assert payload["meta"]["count"] == 3


def test_ok_dict_has_no_count():
    payload = ok({"a": 1})
    _assert_envelope(payload)
    assert payload["meta"]["count"] is None


def test_fail_envelope():
    payload = fail("nope", code="not_found", details={"mbs": "1"})
    _assert_envelope(payload)
    assert payload["data"] is None
    assert payload["error"] == {"code": "not_found", "message": "nope", "details": {"mbs": "1"}}


@pytest.mark.parametrize(
    "method, path",
    [
        ("get", "/health"),
        ("get", "/api/v1/admin/jobs"),
        ("get", "/api/v1/sudreg/sync"),
        ("get", "/api/v1/sudreg/companies"),
        ("get", "/api/v1/sudreg/nkd"),
        ("get", "/api/v1/sudreg/companies/missing"),
        ("post", "/api/v1/sudreg/import"),
        ("get", "/no/such/route"),
    ],
)
def test_every_json_route_uses_envelope(client, method: str, path: str):
    res = getattr(client, method)(path)
    assert res.mimetype == "application/json"
    _assert_envelope(res.get_json())


def test_request_id_is_echoed(client):
    res = client.get("/health", headers={"X-Request-ID": "abc-123"})
    assert res.headers["X-Request-ID"] == "abc-123"
    assert res.get_json()["meta"]["request_id"] == "abc-123"


def test_request_id_is_generated_when_missing(client):
    res = client.get("/api/v1/sudreg/nkd")
    rid = res.get_json()["meta"]["request_id"]
    assert rid
    assert res.headers["X-Request-ID"] == rid


def test_method_not_allowed_is_json(client):
    res = client.delete("/api/v1/sudreg/sync")
    assert res.status_code == 405
    assert res.get_json()["error"]["code"] == "method_not_allowed"


def test_envelope_outside_request_has_no_request_id():
    assert ok([])["meta"]["request_id"] is None
