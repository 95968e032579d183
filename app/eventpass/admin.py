import re
from datetime import date, datetime, time, timedelta

from flask import Blueprint, abort, jsonify, request
from werkzeug.security import generate_password_hash

from app.eventpass.audit import record_event
from app.eventpass.constants import ROLE_OWNER, ROLES
from app.eventpass.db import db_session
from app.eventpass.models import AuditEvent, Role, User
from app.eventpass.modules.events.models import Partner
from app.eventpass.modules.events.service import (
    create_partner,
    update_partner_webhook,
    validate_partner_payload,
    validate_webhook_payload,
)
from app.eventpass.modules.webhooks.service import send_test_webhook
from app.eventpass.rbac import actor_role, current_user, is_owner, require_permission
from app.eventpass.utils import parse_int

bp = Blueprint("admin", __name__)


def _parse_date(s: str) -> date | None:
    s = (s or "").strip()
    if not s:
        return None
    try:
        return date.fromisoformat(s)
    except ValueError:
        return None


def _is_valid_email(email: str) -> bool:
    pattern = r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$"
    return bool(re.match(pattern, email))


@bp.get("/me")
@require_permission("events.view")
def me():
    user = current_user()
    perm_keys = sorted({p.key for r in (user.roles or []) for p in (r.permissions or [])})
    return jsonify({"user": user.to_dict(), "role": actor_role(user), "permissions": perm_keys})


@bp.get("/audit")
@require_permission("audit.view")
def audit_list():
    """
    Audit trail (last 200 events) with simple filters:
    - action (contains)
    - actor_email (contains)
    - date range (YYYY-MM-DD, inclusive)
    """
    s = db_session()
    action = (request.args.get("action") or "").strip()
    actor_email = (request.args.get("actor_email") or "").strip()
    date_from = _parse_date(request.args.get("date_from") or "")
    date_to = _parse_date(request.args.get("date_to") or "")

    errors = []
    if (request.args.get("date_from") or "").strip() and not date_from:
        errors.append("date_from must be YYYY-MM-DD")
    if (request.args.get("date_to") or "").strip() and not date_to:
        errors.append("date_to must be YYYY-MM-DD")
    if errors:
        return jsonify({"error": "Validation Error", "messages": errors}), 400

    q = s.query(AuditEvent)
    if action:
        q = q.filter(AuditEvent.action.like(f"%{action}%"))
    if actor_email:
        q = q.filter(AuditEvent.actor_user_email.like(f"%{actor_email.lower()}%"))
    if date_from:
        q = q.filter(AuditEvent.created_at >= datetime.combine(date_from, time.min))
    if date_to:
        # inclusive end-date (treat as whole day)
        q = q.filter(AuditEvent.created_at < datetime.combine(date_to + timedelta(days=1), time.min))

    events = q.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(200).all()
    return jsonify({"events": [e.to_dict() for e in events]})


# ---------- Accounts ----------
@bp.get("/accounts")
@require_permission("users.view")
def accounts_list():
    s = db_session()
    u = current_user()
    q = s.query(User)
    if not is_owner(u):
        q = q.filter(User.partner_id == u.partner_id)
    users = q.order_by(User.email.asc()).all()
    return jsonify({"accounts": [x.to_dict() for x in users]})


@bp.post("/accounts")
@require_permission("users.create")
def accounts_create():
    s = db_session()
    u = current_user()
    payload = request.get_json(silent=True) or {}

    email = (payload.get("email") or "").strip().lower()
    password = payload.get("password") or ""
    role_key = (payload.get("role") or "").strip()
    partner_id = parse_int(payload.get("partner_id"), 0) or None

    errors = []
    if not email:
        errors.append("Email is required.")
    elif not _is_valid_email(email):
        errors.append("Invalid email format.")
    elif s.query(User).filter(User.email == email).one_or_none():
        errors.append("An account with this email already exists.")

    if not password:
        errors.append("Password is required.")
    elif len(password) < 8:
        errors.append("Password must be at least 8 characters.")

    if role_key not in ROLES:
        errors.append(f"Invalid role. Must be one of: {', '.join(ROLES)}")
    elif role_key != ROLE_OWNER:
        if partner_id is None or s.get(Partner, partner_id) is None:
            errors.append("partner_id must reference an existing partner for non-owner roles.")

    if errors:
        return jsonify({"error": "Validation Error", "messages": errors}), 400

    role = s.query(Role).filter(Role.key == role_key).one_or_none()
    if role is None:
        return jsonify({"error": "Validation Error", "messages": [f"Role {role_key} is not seeded."]}), 400

    new_user = User(
        email=email,
        name=(payload.get("name") or "").strip() or None,
        password_hash=generate_password_hash(password),
        is_active=True,
        partner_id=None if role_key == ROLE_OWNER else partner_id,
    )
    new_user.roles.append(role)
    s.add(new_user)
    s.flush()

    record_event(
        s,
        actor=u,
        action="user.create",
        entity_type="User",
        entity_id=str(new_user.id),
        metadata={"email": email, "role": role_key, "partner_id": new_user.partner_id},
    )
    s.commit()
    return jsonify({"account": new_user.to_dict()}), 201


# ---------- Partners ----------
@bp.get("/partners")
@require_permission("partners.manage")
def partners_list():
    s = db_session()
    partners = s.query(Partner).order_by(Partner.name.asc()).all()
    return jsonify({"partners": [p.to_dict() for p in partners]})


@bp.post("/partners")
@require_permission("partners.manage")
def partners_create():
    s = db_session()
    u = current_user()
    payload = request.get_json(silent=True) or {}

    errors = validate_partner_payload(payload)
    name = (payload.get("name") or "").strip()
    if name and s.query(Partner).filter(Partner.name == name).one_or_none():
        errors.append("A partner with this name already exists.")
    if errors:
        return jsonify({"error": "Validation Error", "messages": errors}), 400

    partner = create_partner(s, payload, u)
    s.commit()
    return jsonify({"partner": partner.to_dict()}), 201


def _partner_or_404(s, partner_id: int) -> Partner:
    u = current_user()
    partner = s.get(Partner, partner_id)
    if partner is None or (not is_owner(u) and u.partner_id != partner.id):
        abort(404)
    return partner


@bp.put("/partners/<int:partner_id>/webhook")
@require_permission("partners.webhook")
def partner_webhook_update(partner_id: int):
    s = db_session()
    u = current_user()
    partner = _partner_or_404(s, partner_id)
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return jsonify({"error": "Validation Error", "messages": ["JSON object body is required."]}), 400

    errors = validate_webhook_payload(payload)
    if errors:
        return jsonify({"error": "Validation Error", "messages": errors}), 400

    update_partner_webhook(s, partner, payload, u)
    s.commit()
    return jsonify({"partner": partner.to_dict()})


@bp.post("/partners/<int:partner_id>/webhook/test")
@require_permission("partners.webhook")
def partner_webhook_test(partner_id: int):
    """
    Send one test delivery. Body fields webhook_url / webhook_secret override the
    stored settings so a URL can be checked before it is saved.
    """
    s = db_session()
    partner = _partner_or_404(s, partner_id)
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        payload = {}

    errors = validate_webhook_payload(payload)
    url = (payload.get("webhook_url") or partner.webhook_url or "").strip()
    if not url:
        errors.append("webhook_url is required.")
    if errors:
        return jsonify({"error": "Validation Error", "messages": errors}), 400

    secret = payload.get("webhook_secret") if "webhook_secret" in payload else partner.webhook_secret
    ok, status, message = send_test_webhook(url, secret, data={"partner_id": partner.id})
    return jsonify({"success": ok, "status_code": status, "message": message})
