from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from api.services import registry_service as svc
from models.crm import CrmCompany, CrmLead
from models.sudreg_companies import SudregCompany
from models.sudreg_nkd import SudregCompanyNkd
from pytests.common import FakeSudregApi, detail_document, list_record
from utils import registry_store
from utils.nkd_extract import extract_classifications
from utils.sudreg_mapping import map_to_canonical


def _seed(session, doc, *, age_minutes: int = 0):
    canonical = map_to_canonical(doc)
    registry_store.save_company(session, canonical, doc, extract_classifications(doc))
    row = session.get(SudregCompany, canonical["mbs"])
    row.updated_at = datetime(2026, 1, 1, 12, 0) - timedelta(minutes=age_minutes)
    session.commit()
    return canonical["mbs"]


@pytest.fixture()
def seeded(db_session):
    _seed(db_session, detail_document("1", "Alfa d.o.o.", oib="11111111111", primary="47.11", secondary=("62.01",)), age_minutes=0)
    _seed(db_session, detail_document("2", "Beta d.o.o.", oib="22222222222", city="Split", county="Splitsko-dalmatinska", primary="62.01", secondary=("47.11",)), age_minutes=1)
    _seed(db_session, detail_document("3", "Gama d.d.", oib="33333333333", city="Rijeka", primary="01.11", secondary=()), age_minutes=2)
    return db_session


def _mbs(results):
    return [r["mbs"] for r in results]


def test_search_without_filters_is_newest_first(seeded):
    results = svc.search_companies(seeded)
    assert _mbs(results) == ["1", "2", "3"]
    assert set(results[0]) >= {"mbs", "oib", "name", "city", "updated_at"}


def test_search_by_name_oib_and_mbs(seeded):
    assert _mbs(svc.search_companies(seeded, q="beta")) == ["2"]
    assert _mbs(svc.search_companies(seeded, q="3333")) == ["3"]
    assert _mbs(svc.search_companies(seeded, q="d.o.o.")) == ["1", "2"]


def test_search_nkd_any_mode(seeded):
    assert _mbs(svc.search_companies(seeded, nkd_codes=["47,11"])) == ["1", "2"]


def test_search_nkd_primary_mode_excludes_secondary(seeded):
    results = svc.search_companies(seeded, nkd_codes=["47.11"], nkd_mode="primary")
    assert _mbs(results) == ["1"]


def test_search_nkd_secondary_mode(seeded):
    results = svc.search_companies(seeded, nkd_codes=["47.11"], nkd_mode="secondary")
    assert _mbs(results) == ["2"]


def test_search_multiple_codes_returns_each_company_once(seeded):
    results = svc.search_companies(seeded, nkd_codes=["47.11;62.01", "01.11"])
    assert _mbs(results) == ["1", "2", "3"]


def test_search_city_and_region(seeded):
    assert _mbs(svc.search_companies(seeded, city="spl")) == ["2"]
    # County only appears in the raw document.
    assert _mbs(svc.search_companies(seeded, region="Splitsko")) == ["2"]


def test_search_treats_like_wildcards_literally(seeded):
    _seed(seeded, detail_document("4", "100% Zdravo d.o.o.", oib="44444444444", primary="10.11", secondary=()), age_minutes=3)

    assert _mbs(svc.search_companies(seeded, q="_")) == []
    assert _mbs(svc.search_companies(seeded, q="\\")) == []
    assert _mbs(svc.search_companies(seeded, q="%")) == ["4"]
    assert _mbs(svc.search_companies(seeded, q="0% zdravo")) == ["4"]
    assert _mbs(svc.search_companies(seeded, city="%")) == []


def test_search_unknown_nkd_mode_matches_any_relation(seeded):
    results = svc.search_companies(seeded, nkd_codes=["47.11"], nkd_mode="bogus")
    assert _mbs(results) == ["1", "2"]


def test_search_limit_is_clamped(seeded):
    assert len(svc.search_companies(seeded, limit=2)) == 2
    assert len(svc.search_companies(seeded, limit=0)) == 1
    assert len(svc.search_companies(seeded, limit="junk")) == 3
    assert len(svc.search_companies(seeded, limit=10_000)) == 3


def test_normalize_nkd_codes():
    assert svc.normalize_nkd_codes(["47,11; 62.01", "47.11", ""]) == ["47.11", "62.01"]
    assert svc.normalize_nkd_codes(None) == []


def test_list_classifications_uses_fallback_name(db_session):
    registry_store.upsert_nkd_code(db_session, "47.11", "47.11", None)
    registry_store.upsert_nkd_code(db_session, "62.01", "Računalno programiranje", None)

    assert svc.list_classifications(db_session) == [
        {"code": "47.11", "name": "NKD 47.11"},
        {"code": "62.01", "name": "Računalno programiranje"},
    ]
    assert svc.list_classifications(db_session, q="programiranje") == [
        {"code": "62.01", "name": "Računalno programiranje"}
    ]
    assert len(svc.list_classifications(db_session, limit=1)) == 1


def test_has_expanded_detail():
    doc = detail_document("1", "Alfa d.o.o.")
    assert svc.has_expanded_detail(doc)
    assert svc.has_expanded_detail({"subjekt": doc})

    activities = doc.pop("evidencijske_djelatnosti")
    assert not svc.has_expanded_detail(doc)
    doc["evidencijske_djelatnosti"] = activities
    assert svc.has_expanded_detail(doc)

    assert not svc.has_expanded_detail(detail_document("1", "Alfa", primary=None))
    assert not svc.has_expanded_detail(list_record("1", "Alfa"))
    assert not svc.has_expanded_detail(None)


def test_build_structured_shape_is_fixed():
    empty = svc.build_structured(None)
    assert set(empty) == {
        "identifiers",
        "status",
        "courts",
        "company_names",
        "seat",
        "legal_form",
        "primary_activity",
        "dates",
        "flags",
        "activities",
        "classifications",
        "capital_history",
        "status_procedures",
        "financial_reports",
        "change_history",
    }
    assert empty["seat"] is None
    assert empty["activities"] == []

    full = svc.build_structured(detail_document("1", "Alfa d.o.o.", county="Grad Zagreb"))
    assert full["identifiers"]["mbs"] == "1"
    assert full["identifiers"]["full_mbs"] == "000000001"
    assert full["company_names"] == {"full": "Alfa d.o.o.", "short": ["Alfa"], "foreign": []}
    assert full["seat"]["county"] == "Grad Zagreb"
    assert full["legal_form"]["code"] == "4"
    assert full["primary_activity"] == {"code": "47.11", "name": "Djelatnost 47.11"}
    assert full["status"] == {"code": "1", "name": "Aktivan"}
    assert len(full["financial_reports"]) == 1


def test_get_company_detail_not_found(db_session):
    with pytest.raises(svc.NotFoundError):
        svc.get_company_detail(db_session, "404", api=FakeSudregApi())


def test_get_company_detail_serves_expanded_document_without_refetch(seeded):
    api = FakeSudregApi()
    data = svc.get_company_detail(seeded, "1", api=api)

    assert api.detail_calls == []
    assert data["refreshed"] is False
    assert data["company"]["name"] == "Alfa d.o.o."
    assert data["company"]["raw"]["tvrtka"] == {"ime": "Alfa d.o.o."}
    assert data["structured"]["primary_activity"]["code"] == "47.11"


def test_empty_seat_still_counts_as_expanded(db_session):
    doc = detail_document("9", "Prazno d.o.o.")
    doc["sjediste"] = {}
    assert svc.has_expanded_detail(doc)

    registry_store.save_company(db_session, map_to_canonical(doc), doc, extract_classifications(doc))
    api = FakeSudregApi()
    data = svc.get_company_detail(db_session, "9", api=api)

    assert api.detail_calls == []
    assert data["refreshed"] is False
    assert data["company"]["raw"]["sjediste"] == {}


def test_get_company_detail_refreshes_thin_document(db_session):
    stub = list_record("9", "Stub d.o.o.")
    registry_store.save_company(db_session, map_to_canonical(stub), stub, [])
    api = FakeSudregApi(details={"9": detail_document("9", "Full d.o.o.", primary="62.01", secondary=())})

    data = svc.get_company_detail(db_session, "9", api=api)

    assert api.detail_calls == ["9"]
    assert data["refreshed"] is True
    assert data["company"]["name"] == "Full d.o.o."
    assert data["structured"]["primary_activity"]["code"] == "62.01"
    rows = db_session.query(SudregCompanyNkd).filter(SudregCompanyNkd.mbs == "9").all()
    assert [(r.code, r.relation_type) for r in rows] == [("62.01", "primary")]


def test_get_company_detail_refresh_failure_serves_cached(db_session):
    stub = list_record("9", "Stub d.o.o.")
    registry_store.save_company(db_session, map_to_canonical(stub), stub, [])
    api = FakeSudregApi(failing_details={"9"})

    data = svc.get_company_detail(db_session, "9", api=api)

    assert data["refreshed"] is False
    assert data["company"]["name"] == "Stub d.o.o."
    assert data["company"]["raw"] == stub
    assert data["structured"]["seat"] is None
    assert data["structured"]["classifications"] == []


def test_import_company_from_registry_mbs(seeded):
    first = svc.import_company(seeded, name=None, mbs="2")
    assert first["created"] is True

    company = seeded.get(CrmCompany, first["company_id"])
    assert company.name == "Beta d.o.o."
    assert company.oib == "22222222222"
    assert company.mbs == "2"
    assert company.registry_source == "sudreg"

    lead = seeded.get(CrmLead, first["lead_id"])
    assert lead.company_id == company.id
    assert lead.status == "New"

    again = svc.import_company(seeded, name=None, oib="22222222222")
    assert again == {"company_id": first["company_id"], "lead_id": first["lead_id"], "created": False}
    assert seeded.query(CrmLead).count() == 1


def test_import_company_by_name_without_registry_row(db_session):
    out = svc.import_company(db_session, name="Nova Tvrtka", website="https://nova.hr")
    company = db_session.get(CrmCompany, out["company_id"])
    assert company.website == "https://nova.hr"
    assert company.mbs is None

    assert svc.import_company(db_session, name="Nova Tvrtka")["created"] is False


def test_import_company_requires_a_name(db_session):
    with pytest.raises(ValueError):
        svc.import_company(db_session, name="  ", mbs="unknown")
