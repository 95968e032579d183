from __future__ import annotations

from flask import Blueprint, abort, jsonify, request

from app.eventpass.db import db_session
from app.eventpass.modules.events.models import Event, Gate, Guest, Partner
from app.eventpass.modules.events.service import (
    EventNotFound,
    archive_event,
    create_event,
    create_gate,
    create_guest,
    delete_event,
    events_query,
    find_gate_by_code,
    get_event_for_user,
    import_guests,
    update_event,
    validate_event_payload,
    validate_gate_payload,
    validate_guest_import,
    validate_guest_payload,
)
from app.eventpass.rbac import current_user, is_owner, require_permission
from app.eventpass.utils import parse_int

bp = Blueprint("events", __name__)


def _event_or_404(s, event_id: int) -> Event:
    try:
        return get_event_for_user(s, event_id, current_user())
    except EventNotFound:
        abort(404)


def _validation_error(errors: list[str]):
    return jsonify({"error": "Validation Error", "messages": errors}), 400


# ---------- Events ----------
@bp.get("/events")
@require_permission("events.view")
def events_list():
    s = db_session()
    stmt = events_query(current_user())
    status = (request.args.get("status") or "").strip()
    if status:
        stmt = stmt.where(Event.status == status)
    events = s.execute(stmt.order_by(Event.starts_at.desc(), Event.id.desc())).scalars().unique().all()
    return jsonify({"events": [e.to_dict() for e in events]})


@bp.post("/events")
@require_permission("events.create")
def events_create():
    s = db_session()
    u = current_user()
    payload = request.get_json(silent=True) or {}

    errors = validate_event_payload(payload)
    if is_owner(u):
        partner_id = parse_int(payload.get("partner_id"), 0)
        if not partner_id or s.get(Partner, partner_id) is None:
            errors.append("partner_id must reference an existing partner.")
    else:
        partner_id = u.partner_id
        if not partner_id:
            return jsonify({"error": "Forbidden", "message": "User has no partner assigned."}), 403
    if errors:
        return _validation_error(errors)

    event = create_event(s, payload, u, partner_id=partner_id)
    s.commit()
    return jsonify({"event": event.to_dict()}), 201


@bp.get("/events/<int:event_id>")
@require_permission("events.view")
def event_detail(event_id: int):
    s = db_session()
    event = _event_or_404(s, event_id)
    return jsonify({"event": event.to_dict()})


@bp.patch("/events/<int:event_id>")
@require_permission("events.edit")
def event_update(event_id: int):
    s = db_session()
    u = current_user()
    event = _event_or_404(s, event_id)
    payload = request.get_json(silent=True) or {}

    errors = validate_event_payload(payload, partial=True)
    if errors:
        return _validation_error(errors)

    update_event(s, event, payload, u, reason=(payload.get("reason") or "").strip() or None)
    s.commit()
    return jsonify({"event": event.to_dict()})


@bp.post("/events/<int:event_id>/archive")
@require_permission("events.edit")
def event_archive(event_id: int):
    s = db_session()
    u = current_user()
    event = _event_or_404(s, event_id)
    payload = request.get_json(silent=True) or {}
    archive_event(s, event, u, reason=(payload.get("reason") or "").strip() or None)
    s.commit()
    return jsonify({"event": event.to_dict()})


@bp.delete("/events/<int:event_id>")
@require_permission("events.delete")
def event_delete(event_id: int):
    s = db_session()
    u = current_user()
    event = _event_or_404(s, event_id)
    if not is_owner(u):
        return jsonify({"error": "Forbidden", "message": "Events are archived; only an owner may delete."}), 403
    delete_event(s, event, u)
    s.commit()
    return jsonify({"ok": True})


# ---------- Guests ----------
@bp.get("/events/<int:event_id>/guests")
@require_permission("guests.view")
def guests_list(event_id: int):
    s = db_session()
    event = _event_or_404(s, event_id)
    q = s.query(Guest).filter(Guest.event_id == event.id)
    guest_type = (request.args.get("type") or "").strip()
    if guest_type:
        q = q.filter(Guest.guest_type == guest_type)
    guests = q.order_by(Guest.full_name.asc(), Guest.id.asc()).all()
    return jsonify({"guests": [g.to_dict() for g in guests]})


@bp.post("/events/<int:event_id>/guests")
@require_permission("guests.create")
def guests_create(event_id: int):
    s = db_session()
    u = current_user()
    event = _event_or_404(s, event_id)
    payload = request.get_json(silent=True) or {}

    errors = validate_guest_payload(payload)
    if errors:
        return _validation_error(errors)

    guest = create_guest(s, event, payload, u)
    s.commit()
    return jsonify({"guest": guest.to_dict()}), 201


@bp.post("/events/<int:event_id>/guests/import")
@require_permission("guests.create")
def guests_import(event_id: int):
    """Bulk import: {"guests": [{full_name, email?, phone?, type?, notes?}, ...]}. All rows or none."""
    s = db_session()
    u = current_user()
    event = _event_or_404(s, event_id)
    payload = request.get_json(silent=True)
    rows = payload.get("guests") if isinstance(payload, dict) else None

    errors = validate_guest_import(rows)
    if errors:
        return _validation_error(errors)

    guests = import_guests(s, event, rows, u)
    s.commit()
    return jsonify({"imported": len(guests), "guests": [g.to_dict() for g in guests]}), 201


# ---------- Gates ----------

@bp.get("/events/<int:event_id>/gates")
@require_permission("events.view")
def gates_list(event_id: int):
    s = db_session()
    event = _event_or_404(s, event_id)
    gates = s.query(Gate).filter(Gate.event_id == event.id).order_by(Gate.name.asc()).all()
    return jsonify({"gates": [g.to_dict(include_code=True) for g in gates]})


@bp.post("/events/<int:event_id>/gates")
@require_permission("gates.manage")
def gates_create(event_id: int):
    s = db_session()
    u = current_user()
    event = _event_or_404(s, event_id)
    payload = request.get_json(silent=True) or {}

    errors = validate_gate_payload(payload)
    if errors:
        return _validation_error(errors)

    gate = create_gate(s, event, payload, u)
    s.commit()
    return jsonify({"gate": gate.to_dict(include_code=True)}), 201


@bp.post("/gates/verify-code")
@require_permission("check-in.scan")
def gates_verify_code():
    """Attach a gate station to its event by access code (active events only)."""
    s = db_session()
    payload = request.get_json(silent=True) or {}
    code = (payload.get("access_code") or "").strip()
    if not code:
        return _validation_error(["access_code is required."])

    gate = find_gate_by_code(s, code)
    if gate is None:
        return jsonify({"error": "Not Found", "message": "Invalid or inactive access code."}), 404
    try:
        event = get_event_for_user(s, gate.event_id, current_user())
    except EventNotFound:
        return jsonify({"error": "Not Found", "message": "Invalid or inactive access code."}), 404
    return jsonify({"gate": gate.to_dict(), "event": event.to_dict()})
