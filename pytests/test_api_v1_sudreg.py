from __future__ import annotations

import pytest

import api.api_v1.sudreg as sudreg_routes
from api.jobs.manager import SudregSyncJob
from pytests.common import FakeSudregApi, detail_document, list_record
from settings import SETTINGS
from utils import registry_store
from utils.nkd_extract import extract_classifications
from utils.sudreg_mapping import map_to_canonical


def _seed(session, doc):
    registry_store.save_company(session, map_to_canonical(doc), doc, extract_classifications(doc))


@pytest.fixture()
def credentials(monkeypatch):
    monkeypatch.setitem(SETTINGS, "SUDREG_CLIENT_ID", "client")
    monkeypatch.setitem(SETTINGS, "SUDREG_CLIENT_SECRET", "secret")


@pytest.fixture()
def fake_job(monkeypatch):
    api = FakeSudregApi(pages=[[list_record("1", "Alfa")]], details={"1": detail_document("1", "Alfa d.o.o.")})
    job = SudregSyncJob(api_factory=lambda: api)
    monkeypatch.setattr(sudreg_routes, "sudreg_sync_job", job)
    return job


class _BusyJob:
    def start(self):
        return None

    def get_state(self):
        return {"running": True, "processed_companies": 7}


def test_start_sync_without_credentials_returns_503(client, fake_job):
    resp = client.post("/api/v1/sudreg/sync")
    assert resp.status_code == 503
    assert resp.get_json()["error"]["code"] == "not_configured"
    assert fake_job.get_state()["started_at"] is None


def test_start_sync_returns_202_and_snapshot(client, credentials, fake_job):
    resp = client.post("/api/v1/sudreg/sync")
    assert resp.status_code == 202

    body = resp.get_json()
    assert body["ok"] is True
    assert body["data"]["running"] is True

    assert fake_job.join(timeout=10)
    status = client.get("/api/v1/sudreg/sync").get_json()["data"]
    assert status["running"] is False
    assert status["imported_companies"] == 1
    assert status["cached_companies"] == 1


def test_start_sync_conflict_returns_409(client, credentials, monkeypatch):
    monkeypatch.setattr(sudreg_routes, "sudreg_sync_job", _BusyJob())

    resp = client.post("/api/v1/sudreg/sync")
    assert resp.status_code == 409

    body = resp.get_json()
    assert body["ok"] is False
    assert body["error"]["code"] == "sync_running"
    assert body["error"]["details"]["state"]["processed_companies"] == 7


def test_search_companies_route(client, db_session):
    _seed(db_session, detail_document("1", "Alfa d.o.o.", primary="47.11", secondary=()))
    _seed(db_session, detail_document("2", "Beta d.o.o.", primary="62.01", secondary=("47.11",)))

    resp = client.get("/api/v1/sudreg/companies?nkd=47,11&nkd_mode=primary")
    assert resp.status_code == 200
    body = resp.get_json()
    assert [c["mbs"] for c in body["data"]] == ["1"]
    assert body["meta"]["count"] == 1

    body = client.get("/api/v1/sudreg/companies?nkd=47.11&nkd=62.01&limit=1").get_json()
    assert len(body["data"]) == 1


def test_list_nkd_route(client, db_session):
    registry_store.upsert_nkd_code(db_session, "47.11", "", None)

    body = client.get("/api/v1/sudreg/nkd").get_json()
    assert body["ok"] is True
    assert body["data"] == [{"code": "47.11", "name": "NKD 47.11"}]


def test_company_detail_route(client, db_session):
    _seed(db_session, detail_document("1", "Alfa d.o.o."))

    body = client.get("/api/v1/sudreg/companies/1").get_json()
    assert body["ok"] is True
    assert body["data"]["refreshed"] is False
    assert body["data"]["company"]["mbs"] == "1"
    assert body["data"]["structured"]["company_names"]["full"] == "Alfa d.o.o."


def test_company_detail_route_serves_stub_when_credentials_missing(client, db_session):
    stub = list_record("5", "Stub d.o.o.")
    registry_store.save_company(db_session, map_to_canonical(stub), stub, [])

    body = client.get("/api/v1/sudreg/companies/5").get_json()
    assert body["ok"] is True
    assert body["data"]["refreshed"] is False
    assert body["data"]["company"]["name"] == "Stub d.o.o."


def test_company_detail_route_404(client):
    resp = client.get("/api/v1/sudreg/companies/does-not-exist")
    assert resp.status_code == 404
    body = resp.get_json()
    assert body["ok"] is False
    assert body["error"]["code"] == "not_found"


def test_import_route(client, db_session):
    _seed(db_session, detail_document("1", "Alfa d.o.o."))

    resp = client.post("/api/v1/sudreg/import", json={"mbs": "1"})
    assert resp.status_code == 200
    data = resp.get_json()["data"]
    assert data["created"] is True
    assert isinstance(data["company_id"], int)
    assert isinstance(data["lead_id"], int)


@pytest.mark.parametrize("payload", [{}, {"name": ""}, ["not", "an", "object"]])
def test_import_route_rejects_bad_input(client, payload):
    resp = client.post("/api/v1/sudreg/import", json=payload)
    assert resp.status_code == 400
    body = resp.get_json()
    assert body["ok"] is False
    assert body["error"]["code"] == "invalid_request"


def test_admin_jobs_lists_sync_state(client, fake_job, monkeypatch):
    import api.api_v1.admin as admin_routes

    monkeypatch.setattr(admin_routes, "sudreg_sync_job", fake_job)

    body = client.get("/api/v1/admin/jobs").get_json()
    assert body["ok"] is True
    state = body["data"]["sudreg_sync"]
    assert state["running"] is False
    assert {"processed_companies", "cached_companies", "last_error"} <= set(state)


def test_import_route_reports_validation_errors(client):
    resp = client.post("/api/v1/sudreg/import", json={"name": ["not", "text"]})
    assert resp.status_code == 400
    errors = resp.get_json()["error"]["details"]["errors"]
    assert errors[0]["loc"] == ["name"]


def test_import_route_accepts_numeric_mbs(client, db_session):
    _seed(db_session, detail_document("80000001", "Alfa d.o.o."))

    resp = client.post("/api/v1/sudreg/import", json={"mbs": 80000001})
    assert resp.status_code == 200
    assert resp.get_json()["data"]["created"] is True


def test_upstream_errors_map_to_502(client, monkeypatch):
    from api.services import registry_service
    from utils.sudreg_api import ConfigurationError, UpstreamRequestError

    def _boom(*_a, **_kw):
        raise UpstreamRequestError("down", status=503, endpoint="/subjekti")

    monkeypatch.setattr(registry_service, "search_companies", _boom)
    resp = client.get("/api/v1/sudreg/companies")
    assert resp.status_code == 502
    body = resp.get_json()
    assert body["error"]["code"] == "upstream_error"
    assert body["error"]["details"] == {"status": 503, "endpoint": "/subjekti"}

    def _unconfigured(*_a, **_kw):
        raise ConfigurationError("no credentials")

    monkeypatch.setattr(registry_service, "search_companies", _unconfigured)
    resp = client.get("/api/v1/sudreg/companies")
    assert resp.status_code == 503
    assert resp.get_json()["error"]["code"] == "not_configured"
