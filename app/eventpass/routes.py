from flask import Blueprint, current_app
from sqlalchemy import text

from app.eventpass.db import db_session

bp = Blueprint("routes", __name__)


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON, including DB connectivity."""
    db_ok = True
    try:
        db_session().execute(text("SELECT 1"))
    except Exception as e:
        current_app.logger.error("Health check DB error: %s", e)
        db_ok = False
    return {"ok": db_ok, "service": "eventpass", "checks": {"database": db_ok}}, (200 if db_ok else 503)


@bp.get("/healthz")
def healthz():
    """
    Fast health check for k8s/DO probes. No DB access, minimal overhead.
    """
    return "ok", 200
