from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import and_, exists, or_
from sqlalchemy.orm import Session

from jobs.sudreg_sync import enrich_company
from logging_utils import get_logger
from models.crm import CrmCompany, CrmLead
from models.sudreg_companies import SudregCompany
from models.sudreg_nkd import SudregCompanyNkd, SudregNkdCode
from utils.nkd_extract import (
    extract_classifications,
    fallback_nkd_name,
    looks_like_code,
    normalize_code,
)
from utils.registry_store import load_raw
from utils.sudreg_api import SudregApiError, extract_detail
from utils.sudreg_mapping import FIELD_PATHS, as_text, first_text, get_path
from utils.time_utils import isoformat_or_none

logger = get_logger(__name__)

SEARCH_DEFAULT_LIMIT = 25
SEARCH_MAX_LIMIT = 100
NKD_DEFAULT_LIMIT = 50
NKD_MAX_LIMIT = 500

NKD_MODES = ("any", "primary", "secondary")

REGISTRY_SOURCE = "sudreg"


class NotFoundError(LookupError):
    pass


def _clamp(value: Any, *, default: int, maximum: int) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError):
        n = default
    return max(1, min(n, maximum))


LIKE_ESCAPE = "\\"


def _like(text: str) -> str:
    """Substring pattern for ``text`` with LIKE wildcards taken literally."""

    for ch in (LIKE_ESCAPE, "%", "_"):
        text = text.replace(ch, LIKE_ESCAPE + ch)
    return f"%{text}%"


def normalize_nkd_codes(codes: Optional[Iterable[str]]) -> List[str]:
    """Split ";"-separated inputs, normalize, drop empties, keep order.

    Commas are not separators: "47,11" is a valid spelling of 47.11.
    """

    out: List[str] = []
    for raw in codes or ():
        for part in str(raw).split(";"):
            code = normalize_code(part)
            if code and code not in out:
                out.append(code)
    return out


def serialize_company_summary(row: SudregCompany) -> Dict[str, Any]:
    return {
        "mbs": row.mbs,
        "oib": row.oib,
        "name": row.name,
        "court": row.court,
        "status": row.status,
        "city": row.city,
        "address": row.address,
        "website": row.website,
        "updated_at": isoformat_or_none(row.updated_at),
    }


def search_companies(
    session: Session,
    *,
    q: str | None = None,
    nkd_codes: Optional[Sequence[str]] = None,
    nkd_mode: str | None = "any",
    city: str | None = None,
    region: str | None = None,
    limit: Any = SEARCH_DEFAULT_LIMIT,
) -> List[Dict[str, Any]]:
    """Filtered search over the cached registry rows, newest first.

    - ``q``: substring of name, OIB or MBS
    - ``nkd_codes``: company has an association to any of them; with
      ``nkd_mode`` primary/secondary the association must also be of that type
    - ``city``: substring of the city
    - ``region``: substring of city, court, address or the raw document
    """

    qry = session.query(SudregCompany)
    filters = []

    q = (q or "").strip()
    if q:
        filters.append(
            or_(
                SudregCompany.name.ilike(_like(q), escape=LIKE_ESCAPE),
                SudregCompany.oib.like(_like(q), escape=LIKE_ESCAPE),
                SudregCompany.mbs.like(_like(q), escape=LIKE_ESCAPE),
            )
        )

    codes = normalize_nkd_codes(nkd_codes)
    if codes:
        mode = (nkd_mode or "any").strip().lower()
        if mode not in NKD_MODES:
            mode = "any"
        assoc = [
            SudregCompanyNkd.mbs == SudregCompany.mbs,
            SudregCompanyNkd.code.in_(codes),
        ]
        if mode != "any":
            assoc.append(SudregCompanyNkd.relation_type == mode)
        # EXISTS keeps one row per company however many codes match.
        filters.append(exists().where(and_(*assoc)))

    city = (city or "").strip()
    if city:
        filters.append(SudregCompany.city.ilike(_like(city), escape=LIKE_ESCAPE))

    region = (region or "").strip()
    if region:
        needle = _like(region)
        filters.append(
            or_(
                SudregCompany.city.ilike(needle, escape=LIKE_ESCAPE),
                SudregCompany.court.ilike(needle, escape=LIKE_ESCAPE),
                SudregCompany.address.ilike(needle, escape=LIKE_ESCAPE),
                SudregCompany.raw_json.ilike(needle, escape=LIKE_ESCAPE),
            )
        )

    if filters:
        qry = qry.filter(and_(*filters))

    rows = (
        qry.order_by(SudregCompany.updated_at.desc(), SudregCompany.mbs.asc())
        .limit(_clamp(limit, default=SEARCH_DEFAULT_LIMIT, maximum=SEARCH_MAX_LIMIT))
        .all()
    )
    return [serialize_company_summary(r) for r in rows]


def list_classifications(
    session: Session, *, q: str | None = None, limit: Any = NKD_DEFAULT_LIMIT
) -> List[Dict[str, Any]]:
    qry = session.query(SudregNkdCode)
    q = (q or "").strip()
    if q:
        qry = qry.filter(
            or_(
                SudregNkdCode.code.like(_like(q), escape=LIKE_ESCAPE),
                SudregNkdCode.name.ilike(_like(q), escape=LIKE_ESCAPE),
            )
        )

    rows = (
        qry.order_by(SudregNkdCode.code.asc())
        .limit(_clamp(limit, default=NKD_DEFAULT_LIMIT, maximum=NKD_MAX_LIMIT))
        .all()
    )
    return [
        {
            "code": r.code,
            "name": fallback_nkd_name(r.code) if looks_like_code(r.name, r.code) else r.name,
        }
        for r in rows
    ]


# --- detail -----------------------------------------------------------------

_SEAT_KEYS = ("sjediste", "sjedista", "adresa_sjedista", "seat")
_PRIMARY_ACTIVITY_KEYS = ("pretezita_djelatnost", "primarna_djelatnost", "glavna_djelatnost")
_ACTIVITY_LIST_KEYS = ("evidencijske_djelatnosti", "predmeti_poslovanja", "djelatnosti", "activities")
_FINANCIAL_LIST_KEYS = ("gfi", "financijska_izvjesca", "financijski_izvjestaji", "financial_reports")
_CAPITAL_LIST_KEYS = ("temeljni_kapitali", "temeljni_kapital", "kapitali")
_PROCEDURE_LIST_KEYS = ("postupci", "statusni_postupci", "stecajni_postupci")
_CHANGE_LIST_KEYS = ("promjene", "upisi", "povijest_promjena")


def _first_present(doc: Dict[str, Any], keys: Sequence[str]) -> Any:
    for key in keys:
        if doc.get(key) is not None:
            return doc[key]
    return None


def _first_list(doc: Dict[str, Any], keys: Sequence[str]) -> Optional[list]:
    for key in keys:
        value = doc.get(key)
        if isinstance(value, list):
            return value
    return None


def _primary_activity(doc: Dict[str, Any]) -> Optional[Dict[str, str]]:
    node = _first_present(doc, _PRIMARY_ACTIVITY_KEYS)
    if isinstance(node, list):
        node = node[0] if node else None
    if not isinstance(node, dict):
        return None

    candidates = [node] + [v for v in node.values() if isinstance(v, dict)]
    for cand in candidates:
        code = normalize_code(first_text(cand, ("sifra", "code", "oznaka", "nkd_sifra", "nkd")))
        name = first_text(cand, ("puni_naziv", "naziv", "name", "kratki_naziv", "opis"))
        if code or name:
            return {"code": code or None, "name": name or None}
    return None


def has_expanded_detail(document: Any) -> bool:
    """Is ``document`` an expanded detail document rather than a list stub?

    Requires identity (MBS plus name or OIB), a seat substructure, a primary
    activity code or name, an activities list and a financial report list.
    Only presence is checked: the seat and both lists may be empty.
    """

    doc = extract_detail(document)
    if not isinstance(doc, dict):
        return False

    has_identity = bool(first_text(doc, FIELD_PATHS["mbs"])) and bool(
        first_text(doc, FIELD_PATHS["name"]) or first_text(doc, FIELD_PATHS["oib"])
    )
    seat = _first_present(doc, _SEAT_KEYS)
    has_seat = isinstance(seat, (dict, list))

    return (
        has_identity
        and has_seat
        and _primary_activity(doc) is not None
        and _first_list(doc, _ACTIVITY_LIST_KEYS) is not None
        and _first_list(doc, _FINANCIAL_LIST_KEYS) is not None
    )


def _text_or_none(doc: Any, paths: Sequence[str]) -> Optional[str]:
    return first_text(doc, paths) or None


def _named(node: Any) -> Optional[Dict[str, Any]]:
    """``{code, name}`` view of a code/name sub-object; None when absent."""

    if isinstance(node, str):
        return {"code": None, "name": node.strip() or None}
    if not isinstance(node, dict):
        return None
    code = _text_or_none(node, ("sifra", "code", "oznaka", "kratica"))
    name = _text_or_none(node, ("naziv", "name", "puni_naziv", "ime"))
    if code is None and name is None:
        return None
    return {"code": code, "name": name}


def _flag(doc: Dict[str, Any], *keys: str) -> Optional[bool]:
    for key in keys:
        value = doc.get(key)
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)):
            return bool(value)
        text = as_text(value).lower()
        if text in {"1", "true", "da", "yes", "d"}:
            return True
        if text in {"0", "false", "ne", "no", "n"}:
            return False
    return None


def build_structured(document: Any) -> Dict[str, Any]:
    """Normalize an arbitrary detail (or stub) document into a fixed shape."""

    doc = extract_detail(document)
    if not isinstance(doc, dict):
        doc = {}

    seat_node = _first_present(doc, _SEAT_KEYS)
    if isinstance(seat_node, list):
        seat_node = seat_node[0] if seat_node else None
    seat = None
    if isinstance(seat_node, dict):
        seat = {
            "street": _text_or_none(seat_node, ("ulica",)),
            "house_number": _text_or_none(seat_node, ("kucni_broj",)),
            "settlement": _text_or_none(seat_node, ("naziv_naselja", "naselje")),
            "municipality": _text_or_none(seat_node, ("naziv_opcine", "opcina")),
            "county": _text_or_none(seat_node, ("naziv_zupanije", "zupanija")),
            "postal_code": _text_or_none(seat_node, ("postanski_broj",)),
        }

    legal_form_node = get_path(doc, "pravni_oblik.vrsta_pravnog_oblika") or doc.get("pravni_oblik")

    short_names = doc.get("skracene_tvrtke")
    if not isinstance(short_names, list):
        short_names = [doc["skracena_tvrtka"]] if isinstance(doc.get("skracena_tvrtka"), dict) else []
    foreign_names = doc.get("tvrtke_na_stranom_jeziku")
    if not isinstance(foreign_names, list):
        foreign_names = []

    status_node = doc.get("status")
    status = _named(status_node)
    if status is None and doc.get("status_naziv"):
        status = {"code": None, "name": as_text(doc.get("status_naziv")) or None}

    return {
        "identifiers": {
            "mbs": _text_or_none(doc, ("mbs",)),
            "full_mbs": _text_or_none(doc, ("potpuni_mbs",)),
            "oib": _text_or_none(doc, ("oib",)),
            "full_oib": _text_or_none(doc, ("potpuni_oib",)),
            "euid": _text_or_none(doc, ("euid",)),
        },
        "status": status,
        "courts": {
            "competent": _named(doc.get("sud_nadlezan")),
            "office": _named(doc.get("sud_sluzba")),
        },
        "company_names": {
            "full": _text_or_none(doc, ("tvrtka.ime", "tvrtka", "naziv", "ime")),
            "short": [n for n in (_text_or_none(s, ("ime", "naziv")) for s in short_names) if n],
            "foreign": [n for n in (_text_or_none(s, ("ime", "naziv")) for s in foreign_names) if n],
        },
        "seat": seat,
        "legal_form": _named(legal_form_node),
        "primary_activity": _primary_activity(doc),
        "dates": {
            "founded": _text_or_none(doc, ("datum_osnivanja",)),
            "deleted": _text_or_none(doc, ("datum_brisanja",)),
            "last_change": _text_or_none(doc, ("vrijeme_zadnje_izmjene", "datum_zadnje_promjene")),
        },
        "flags": {
            "in_bankruptcy": _flag(doc, "stecajna_masa", "u_stecaju"),
            "in_liquidation": _flag(doc, "likvidacijska_masa", "u_likvidaciji"),
            "deleted": _flag(doc, "brisan", "obrisan"),
        },
        "activities": _first_list(doc, _ACTIVITY_LIST_KEYS) or [],
        "classifications": extract_classifications(doc),
        "capital_history": _first_list(doc, _CAPITAL_LIST_KEYS) or [],
        "status_procedures": _first_list(doc, _PROCEDURE_LIST_KEYS) or [],
        "financial_reports": _first_list(doc, _FINANCIAL_LIST_KEYS) or [],
        "change_history": _first_list(doc, _CHANGE_LIST_KEYS) or [],
    }


def get_company_detail(session: Session, mbs: str, *, api: Any = None) -> Dict[str, Any]:
    """Serve a cached company, refreshing a thin cached document once.

    Refresh failures are logged and the cached document is served as is.
    ``api`` is only built when a refresh is actually needed.
    """

    mbs = (mbs or "").strip()
    row = session.get(SudregCompany, mbs) if mbs else None
    if row is None:
        raise NotFoundError(f"No cached registry company with mbs={mbs!r}")

    document = load_raw(row.raw_json)
    refreshed = False

    if not has_expanded_detail(document):
        try:
            if api is None:
                from utils.sudreg_api import SudregClient

                api = SudregClient()
            fallback = {k: getattr(row, k) for k in FIELD_PATHS}
            enrich_company(session, api, mbs, fallback=fallback)
            session.refresh(row)
            document = load_raw(row.raw_json)
            refreshed = True
        except SudregApiError as e:
            logger.warning("Detail refresh failed; serving cached document | mbs=%s err=%s", mbs, e)

    company = serialize_company_summary(row)
    company["raw"] = document
    return {
        "company": company,
        "structured": build_structured(document),
        "refreshed": refreshed,
    }


# --- CRM bridge ---------------------------------------------------------------


def _resolve_registry_row(
    session: Session, *, mbs: str, oib: str
) -> Optional[SudregCompany]:
    if mbs:
        row = session.get(SudregCompany, mbs)
        if row is not None:
            return row
    if oib:
        return (
            session.query(SudregCompany)
            .filter(SudregCompany.oib == oib)
            .order_by(SudregCompany.updated_at.desc())
            .first()
        )
    return None


def import_company(
    session: Session,
    *,
    name: str | None,
    oib: str | None = None,
    mbs: str | None = None,
    website: str | None = None,
) -> Dict[str, Any]:
    """Create or update the CRM company (and a lead) for a registry company.

    The CRM company is looked up by OIB first, then by name. Explicit
    arguments win over cached registry values.
    """

    name = (name or "").strip()
    oib = (oib or "").strip()
    mbs = (mbs or "").strip()
    website = (website or "").strip()

    registry = _resolve_registry_row(session, mbs=mbs, oib=oib)
    if registry is not None:
        name = name or (registry.name or "")
        oib = oib or (registry.oib or "")
        mbs = mbs or registry.mbs
        website = website or (registry.website or "")

    if not name:
        raise ValueError("Company name is required (or an mbs/oib present in the registry cache)")

    try:
        company = None
        if oib:
            company = session.query(CrmCompany).filter(CrmCompany.oib == oib).first()
        if company is None:
            company = session.query(CrmCompany).filter(CrmCompany.name == name).first()

        created = company is None
        if created:
            company = CrmCompany(name=name)
            session.add(company)

        if website:
            company.website = website
        if oib:
            company.oib = oib
        if mbs:
            company.mbs = mbs
        company.registry_source = REGISTRY_SOURCE
        session.flush()

        lead = (
            session.query(CrmLead)
            .filter(CrmLead.company_id == company.id)
            .order_by(CrmLead.id.asc())
            .first()
        )
        if lead is None:
            lead = CrmLead(
                name=company.name,
                company_id=company.id,
                company=company.name,
                status="New",
                website=company.website,
            )
            session.add(lead)
            session.flush()

        session.commit()
    except Exception:
        session.rollback()
        raise

    logger.info(
        "Registry company imported into CRM | company_id=%s lead_id=%s mbs=%s created=%s",
        company.id,
        lead.id,
        mbs or None,
        created,
    )
    return {"company_id": company.id, "lead_id": lead.id, "created": created}
