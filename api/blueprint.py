from flask import Blueprint, jsonify

from api.api_v1.blueprint import create_api_v1_blueprint
from api.schemas.api_responses import ok


def create_api_blueprint(
    *, enable_admin: bool = True, enable_sudreg: bool = True
) -> Blueprint:
    """Create the main API blueprint and register the versioned API.

    Keep this as the single registration point to avoid double-registering routes.
    """
    api_bp = Blueprint("api", __name__)

    @api_bp.get("/health")
    def health():
        return jsonify(ok({"status": "ok"}))

    api_bp.register_blueprint(
        create_api_v1_blueprint(enable_admin=enable_admin, enable_sudreg=enable_sudreg)
    )

    return api_bp
