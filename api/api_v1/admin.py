from __future__ import annotations

from flask import Blueprint, jsonify

import db
from api.jobs.manager import sudreg_sync_job
from api.schemas.api_responses import ok
from models import Base

admin_v1_bp = Blueprint("admin_v1", __name__, url_prefix="/admin")


@admin_v1_bp.get("/jobs")
def get_jobs():
    """Return current background job state."""

    data = {
        "sudreg_sync": sudreg_sync_job.get_state(),
    }
    return jsonify(ok(data))


@admin_v1_bp.post("/init-db")
def init_db():
    """Create missing tables on demand."""

    Base.metadata.create_all(bind=db.engine)
    return jsonify(ok({"initialized": True}))
