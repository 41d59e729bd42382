from __future__ import annotations

from flask import Blueprint, jsonify, request
from pydantic import ValidationError

import db
from api.jobs.manager import sudreg_sync_job
from api.schemas.api_responses import fail, ok
from api.schemas.registry_requests import ImportCompanyRequest
from api.services import registry_service as svc
from logging_utils import get_logger
from utils.sudreg_api import require_credentials

logger = get_logger(__name__)

sudreg_v1_bp = Blueprint("sudreg_v1", __name__, url_prefix="/sudreg")


def _arg(name: str) -> str | None:
    return (request.args.get(name) or "").strip() or None


@sudreg_v1_bp.post("/sync")
def start_sync():
    """Kick off a background registry sync.

    503 when credentials are missing, 409 while a run is active.
    """

    require_credentials()
    snapshot = sudreg_sync_job.start()
    if snapshot is None:
        logger.info("Sudreg sync requested while one is running; rejected")
        return (
            jsonify(
                fail(
                    "A Sudreg sync is already running.",
                    code="sync_running",
                    details={"state": sudreg_sync_job.get_state()},
                )
            ),
            409,
        )
    return jsonify(ok(snapshot)), 202


@sudreg_v1_bp.get("/sync")
def sync_status():
    return jsonify(ok(sudreg_sync_job.get_state()))


@sudreg_v1_bp.get("/companies")
def search_companies():
    """Search cached registry companies.

    Query params:
    - q: name / OIB / MBS substring
    - nkd: NKD code; repeat the param or separate codes with ';'
    - nkd_mode: any (default) | primary | secondary
    - city, region: substring filters
    - limit: default 25, max 100
    """

    session = db.SessionLocal()
    try:
        results = svc.search_companies(
            session,
            q=_arg("q"),
            nkd_codes=request.args.getlist("nkd"),
            nkd_mode=_arg("nkd_mode") or "any",
            city=_arg("city"),
            region=_arg("region"),
            limit=_arg("limit") or svc.SEARCH_DEFAULT_LIMIT,
        )
        return jsonify(ok(results))
    finally:
        session.close()


@sudreg_v1_bp.get("/nkd")
def list_nkd():
    session = db.SessionLocal()
    try:
        results = svc.list_classifications(
            session, q=_arg("q"), limit=_arg("limit") or svc.NKD_DEFAULT_LIMIT
        )
        return jsonify(ok(results))
    finally:
        session.close()


@sudreg_v1_bp.get("/companies/<mbs>")
def company_detail(mbs: str):
    session = db.SessionLocal()
    try:
        data = svc.get_company_detail(session, mbs)
        return jsonify(ok(data))
    except svc.NotFoundError as e:
        return jsonify(fail(str(e), code="not_found")), 404
    finally:
        session.close()


@sudreg_v1_bp.post("/import")
def import_company():
    """Materialize a CRM company + lead from the registry cache."""

    try:
        body = ImportCompanyRequest.model_validate(request.get_json(silent=True) or {})
    except ValidationError as e:
        return (
            jsonify(
                fail(
                    "Invalid import request",
                    code="invalid_request",
                    details={"errors": e.errors(include_url=False, include_context=False)},
                )
            ),
            400,
        )

    session = db.SessionLocal()
    try:
        data = svc.import_company(
            session,
            name=body.name,
            oib=body.oib,
            mbs=body.mbs,
            website=body.website,
        )
        return jsonify(ok(data))
    except ValueError as e:
        return jsonify(fail(str(e), code="invalid_request")), 400
    finally:
        session.close()
