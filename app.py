import os
import time

from flask import Flask, jsonify, request

import db
from api.blueprint import create_api_blueprint
from api.schemas.api_responses import REQUEST_ID_HEADER, current_request_id, fail
from config import Config, configure_logging, env_bool
from logging_utils import configure_app_logging, get_logger
from models import Base
from utils.sudreg_api import ConfigurationError, SudregApiError


def init_db() -> None:
    """Create any missing tables.

    Not part of the default startup path; see INIT_DB_ON_STARTUP.
    """

    Base.metadata.create_all(bind=db.engine)


def _register_error_handlers(app: Flask, logger) -> None:
    @app.errorhandler(404)
    def not_found(_err):
        return jsonify(fail("Not found", code="not_found")), 404

    @app.errorhandler(405)
    def method_not_allowed(_err):
        return jsonify(fail("Method not allowed", code="method_not_allowed")), 405

    @app.errorhandler(ConfigurationError)
    def registry_not_configured(err):
        logger.warning("Sudreg not configured | path=%s err=%s", request.path, err)
        return jsonify(fail(str(err), code="not_configured")), 503

    @app.errorhandler(SudregApiError)
    def registry_upstream_error(err):
        details = {
            "status": getattr(err, "status", None),
            "endpoint": getattr(err, "endpoint", None),
        }
        logger.warning("Sudreg upstream error | path=%s err=%s", request.path, err)
        return jsonify(fail(str(err), code="upstream_error", details=details)), 502

    @app.errorhandler(500)
    def server_error(_err):
        logger.exception("Unhandled server error")
        return jsonify(fail("Internal server error", code="server_error")), 500


def create_app() -> Flask:
    app = Flask(__name__)

    app.config.from_object(Config)
    app.config.from_pyfile("settings.py")

    # Unified app logging (UTC timestamps, per-file logs, daily rotation)
    configure_app_logging(app.config.get("LOG_LEVEL", "INFO"))
    logger = get_logger(__name__)
    configure_logging(app.logger, app.config.get("LOG_LEVEL", "INFO"))

    # Presence only; the values are secrets.
    sudreg = app.config.get("SETTINGS") or {}
    has_credentials = bool(sudreg.get("SUDREG_CLIENT_ID") and sudreg.get("SUDREG_CLIENT_SECRET"))
    logger.info(
        "App starting | sudreg_credentials=%s sudreg_base_url=%s",
        "configured" if has_credentials else "missing",
        sudreg.get("SUDREG_API_BASE_URL"),
    )

    # Slow request logging; SLOW_REQUEST_MS=0 disables.
    slow_ms = int(os.getenv("SLOW_REQUEST_MS", "250") or "250")

    @app.before_request
    def _start_request():
        current_request_id()
        if slow_ms > 0:
            request.environ["_req_start_ns"] = time.perf_counter_ns()

    @app.after_request
    def _finish_request(resp):
        resp.headers[REQUEST_ID_HEADER] = current_request_id() or ""
        if slow_ms <= 0:
            return resp

        start_ns = request.environ.get("_req_start_ns")
        if not start_ns:
            return resp

        elapsed_ms = (time.perf_counter_ns() - int(start_ns)) / 1_000_000.0
        if elapsed_ms >= slow_ms:
            logger.warning(
                "SLOW_REQUEST ms=%.1f status=%s method=%s path=%s query=%s request_id=%s",
                elapsed_ms,
                getattr(resp, "status_code", "?"),
                request.method,
                request.path,
                request.query_string.decode("utf-8", errors="replace"),
                current_request_id(),
            )
        return resp

    app.register_blueprint(
        create_api_blueprint(
            enable_admin=app.config.get("ENABLE_ADMIN", True),
            enable_sudreg=app.config.get("ENABLE_SUDREG", True),
        )
    )
    _register_error_handlers(app, logger)

    if env_bool("INIT_DB_ON_STARTUP", False):
        logger.info("INIT_DB_ON_STARTUP=1; initializing database schema")
        init_db()

    if app.config.get("ENABLE_SUDREG", True) and env_bool("SUDREG_SYNC_ON_STARTUP", False):
        from api.jobs.manager import sudreg_sync_job

        if not has_credentials:
            logger.warning("SUDREG_SYNC_ON_STARTUP=1 but Sudreg credentials are missing; not starting")
        elif sudreg_sync_job.start() is None:
            logger.info("SUDREG_SYNC_ON_STARTUP=1; a sync is already running")
        else:
            logger.info("SUDREG_SYNC_ON_STARTUP=1; background sync started")

    return app


# NOTE: Do not instantiate the Flask app at import time.
# Tests patch the DB engine/sessionmaker before calling create_app().
app: Flask | None = None


if __name__ == "__main__":
    app = create_app()
    get_logger(__name__).info("Starting Flask app")
    app.run(debug=True, use_reloader=False)
