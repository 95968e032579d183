import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, jsonify, request, session

from app.eventpass.config import load_config
from app.eventpass.db import init_db, teardown_db_session
from app.eventpass.routes import bp as routes_bp
from app.eventpass.auth import bp as auth_bp, load_current_user
from app.eventpass.admin import bp as admin_bp
from app.eventpass.modules.events.admin import bp as events_bp
from app.eventpass.modules.passes.admin import bp as passes_bp
from app.eventpass.modules.passes.signing import SigningConfigError, SigningKeys

logger = logging.getLogger(__name__)


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    # CSRF protection (minimal)
    from app.eventpass.security import ensure_csrf_token, validate_csrf

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(("/health", "/healthz")):
            return None
        session.permanent = True
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            # Allow safe auth endpoints to pass through (login/logout)
            if (request.endpoint or "").startswith("auth."):
                return None
            if not validate_csrf(request):
                return jsonify({"error": "Bad Request", "message": "CSRF token missing or invalid."}), 400
        ensure_csrf_token()

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")
        if not app.config.get("PASS_SIGNING_SECRET"):
            raise RuntimeError("PASS_SIGNING_SECRET must be set in production.")

    init_db(app)

    keys = SigningKeys.from_config(app.config)
    app.extensions["pass_signing_keys"] = keys
    if not keys.system_secret:
        app.logger.warning(
            "PASS_SIGNING_SECRET is not set; pass issuance and scanning fail for partners without PASS_PARTNER_<id>_SECRET."
        )

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(admin_bp, url_prefix="/admin")
    app.register_blueprint(events_bp, url_prefix="/api")
    app.register_blueprint(passes_bp, url_prefix="/api")

    def _load_user_wrapper():
        if request.path.startswith(("/health", "/healthz")):
            g.current_user = None
            return None
        return load_current_user()

    app.before_request(_load_user_wrapper)
    app.teardown_appcontext(teardown_db_session)

    @app.errorhandler(SigningConfigError)
    def _err_signing_config(e):  # type: ignore[no-redef]
        app.logger.error("Signing configuration error (request_id=%s): %s", getattr(g, "request_id", None), e)
        return jsonify({"error": "Internal Server Error", "message": "Pass signing is not configured."}), 500

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return jsonify({"error": "Internal Server Error"}), 500

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return jsonify({"error": "Not Found"}), 404

    @app.errorhandler(405)
    def _err_405(e):  # type: ignore[no-redef]
        return jsonify({"error": "Method Not Allowed"}), 405

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        return jsonify({"error": "Payload Too Large", "message": "Request body exceeds 2MB."}), 413

    logger.info("create_app() complete; app ready to serve")

    return app
