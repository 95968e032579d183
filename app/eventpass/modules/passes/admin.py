from __future__ import annotations

import re

from flask import Blueprint, abort, current_app, jsonify, request

from app.eventpass.db import db_session
from app.eventpass.modules.events.models import Event, Guest
from app.eventpass.modules.events.service import EventNotFound, get_event_for_user
from app.eventpass.modules.passes.issuance import (
    PassAlreadyIssued,
    anonymous_pass_stats,
    issue_anonymous_passes,
    issue_pass,
    issue_passes_for_event,
)
from app.eventpass.modules.passes.models import Pass
from app.eventpass.modules.passes.scanning import check_pass, scan_pass
from app.eventpass.modules.passes.service import PassStateError, list_passes, list_scan_logs, revoke_pass
from app.eventpass.modules.passes.signing import signing_keys_from_app
from app.eventpass.modules.webhooks.service import notify_check_in, notify_pass_generated
from app.eventpass.rbac import current_user, is_owner, require_permission
from app.eventpass.utils import parse_datetime, parse_int

bp = Blueprint("passes", __name__)


def _event_or_404(s, event_id: int) -> Event:
    try:
        return get_event_for_user(s, event_id, current_user())
    except EventNotFound:
        abort(404)


def _validation_error(errors: list[str]):
    return jsonify({"error": "Validation Error", "messages": errors}), 400


def _parse_window(payload: dict, errors: list[str]):
    out = []
    for key in ("valid_from", "valid_to"):
        try:
            out.append(parse_datetime(payload.get(key)))
        except ValueError:
            errors.append(f"{key} must be an ISO-8601 timestamp.")
            out.append(None)
    valid_from, valid_to = out
    if valid_from and valid_to and valid_from > valid_to:
        errors.append("valid_from must be before valid_to.")
    return valid_from, valid_to


def _parse_zones(payload: dict, errors: list[str]) -> list[str] | None:
    zones = payload.get("allowed_zones")
    if zones is None:
        return None
    if not isinstance(zones, list) or not all(isinstance(z, str) and z.strip() for z in zones):
        errors.append("allowed_zones must be a list of zone names.")
        return None
    return [z.strip() for z in zones]


def _summarize_user_agent(ua: str) -> str:
    parts: list[str] = []
    if "Android" in ua:
        m = re.search(r"Android ([0-9.]+)", ua)
        parts.append(f"Android {m.group(1) if m else ''}".strip())
    elif "iPhone" in ua or "iPad" in ua:
        m = re.search(r"OS ([0-9_]+)", ua)
        parts.append(f"iOS {m.group(1).replace('_', '.') if m else ''}".strip())
    elif "Windows" in ua:
        parts.append("Windows")
    elif "Mac" in ua:
        parts.append("macOS")
    elif "Linux" in ua:
        parts.append("Linux")

    if "Chrome" in ua:
        parts.append("Chrome")
    elif "Safari" in ua:
        parts.append("Safari")
    elif "Firefox" in ua:
        parts.append("Firefox")
    return " / ".join(parts) or ua[:100]


def _device_info(payload: dict) -> dict:
    ua = request.headers.get("User-Agent") or "unknown"
    info = {"user_agent": ua[:255], "summary": _summarize_user_agent(ua)}
    client_info = payload.get("device_info")
    if isinstance(client_info, str) and client_info.strip():
        info["client"] = client_info.strip()[:255]
    elif isinstance(client_info, dict):
        info["client"] = {str(k)[:64]: str(v)[:255] for k, v in list(client_info.items())[:20]}
    return info


# ---------- Passes ----------
@bp.get("/events/<int:event_id>/passes")
@require_permission("invites.view")
def passes_list(event_id: int):
    s = db_session()
    event = _event_or_404(s, event_id)
    status = (request.args.get("status") or "").strip() or None
    guest_id = parse_int(request.args.get("guest_id"), 0) or None
    try:
        passes = list_passes(s, event.id, status=status, guest_id=guest_id)
    except ValueError as e:
        return _validation_error([str(e)])
    return jsonify({"passes": [p.to_dict() for p in passes]})


@bp.post("/events/<int:event_id>/passes")
@require_permission("invites.generate")
def passes_generate(event_id: int):
    """
    With `guest_id`: issue one pass (409 if the guest already has one).
    Otherwise: issue passes for every guest lacking one (optionally limited to `guest_ids`).
    """
    s = db_session()
    u = current_user()
    event = _event_or_404(s, event_id)
    payload = request.get_json(silent=True) or {}
    keys = signing_keys_from_app()

    errors: list[str] = []
    zones = _parse_zones(payload, errors)

    if payload.get("guest_id") is not None:
        valid_from, valid_to = _parse_window(payload, errors)
        guest = s.get(Guest, parse_int(payload.get("guest_id"), 0))
        if guest is None or guest.event_id != event.id:
            errors.append("guest_id must reference a guest of this event.")
        if errors:
            return _validation_error(errors)
        try:
            p = issue_pass(
                s,
                event=event,
                guest=guest,
                keys=keys,
                actor=u,
                valid_from=valid_from,
                valid_to=valid_to,
                allowed_zones=zones,
            )
        except PassAlreadyIssued as e:
            s.rollback()
            return jsonify({"error": "Conflict", "message": "Guest already has a pass.", "pass_id": e.pass_id}), 409
        s.commit()
        notify_pass_generated(event.partner, [{"id": p.id, "guest_id": p.guest_id}], event_id=event.id)
        return jsonify({"requested": 1, "generated": 1, "passes": [p.to_dict()], "errors": []}), 201

    guest_ids = payload.get("guest_ids")
    if guest_ids is not None:
        if not isinstance(guest_ids, list) or not all(isinstance(x, int) and not isinstance(x, bool) for x in guest_ids):
            errors.append("guest_ids must be a list of integers.")
    if errors:
        return _validation_error(errors)

    report = issue_passes_for_event(s, event=event, keys=keys, actor=u, guest_ids=guest_ids, allowed_zones=zones)
    s.commit()
    notify_pass_generated(
        event.partner,
        [{"id": p.id, "guest_id": p.guest_id} for p in report.passes],
        event_id=event.id,
    )
    return jsonify(report.to_dict()), 201


@bp.get("/events/<int:event_id>/anonymous-passes")
@require_permission("invites.view")
def anonymous_passes_list(event_id: int):
    s = db_session()
    event = _event_or_404(s, event_id)
    passes = list_passes(s, event.id, anonymous=True)
    return jsonify({"passes": [p.to_dict() for p in passes], "stats": anonymous_pass_stats(s, event.id)})


@bp.post("/events/<int:event_id>/anonymous-passes")
@require_permission("invites.generate")
def anonymous_passes_generate(event_id: int):
    s = db_session()
    u = current_user()
    event = _event_or_404(s, event_id)
    payload = request.get_json(silent=True) or {}

    errors: list[str] = []
    count = payload.get("count")
    if isinstance(count, bool) or not isinstance(count, int):
        errors.append("count must be an integer.")
    prefix = payload.get("prefix")
    if prefix is not None and not isinstance(prefix, str):
        errors.append("prefix must be a string.")
    valid_from, valid_to = _parse_window(payload, errors)
    if errors:
        return _validation_error(errors)

    try:
        report = issue_anonymous_passes(
            s,
            event=event,
            keys=signing_keys_from_app(),
            count=count,
            prefix=prefix,
            valid_from=valid_from,
            valid_to=valid_to,
            actor=u,
        )
    except ValueError as e:
        return _validation_error([str(e)])
    s.commit()
    notify_pass_generated(
        event.partner,
        [{"id": p.id, "guest_id": p.guest_id, "anonymous": True} for p in report.passes],
        event_id=event.id,
    )
    body = report.to_dict()
    body["guests"] = [{"id": p.guest_id, "full_name": p.guest.full_name} for p in report.passes]
    return jsonify(body), 201


@bp.post("/passes/<int:pass_id>/revoke")
@require_permission("invites.revoke")
def pass_revoke(pass_id: int):
    s = db_session()
    u = current_user()
    p = s.get(Pass, pass_id)
    if p is None:
        abort(404)
    _event_or_404(s, p.event_id)
    payload = request.get_json(silent=True) or {}
    try:
        revoke_pass(s, p, u, reason=(payload.get("reason") or "").strip() or None)
    except PassStateError as e:
        s.rollback()
        return jsonify({"error": "Conflict", "message": str(e)}), 409
    s.commit()
    return jsonify({"pass": p.to_dict()})


# ---------- Check-in ----------
@bp.post("/check-in")
@require_permission("check-in.scan")
def check_in():
    s = db_session()
    u = current_user()
    payload = request.get_json(silent=True) or {}

    raw = payload.get("qr_raw_value")
    event_id = parse_int(payload.get("event_id"), 0)
    if not isinstance(raw, str) or not raw.strip() or not event_id:
        return _validation_error(["qr_raw_value and event_id are required."])
    gate_id = parse_int(payload.get("gate_id"), 0) or None
    event = _event_or_404(s, event_id)

    outcome = scan_pass(
        s,
        raw=raw,
        event_id=event.id,
        keys=signing_keys_from_app(),
        gate_id=gate_id,
        scanner=u,
        device_info=_device_info(payload),
    )
    s.commit()
    current_app.logger.info(
        "check-in result=%s event_id=%s gate_id=%s scan_log_id=%s",
        outcome.result,
        event.id,
        gate_id,
        outcome.scan_log_id,
    )
    notify_check_in(event.partner, outcome.webhook_data())
    return jsonify(outcome.to_dict())


@bp.post("/passes/verify")
@require_permission("check-in.scan")
def passes_verify():
    """Report what a scan would answer for this payload; nothing is consumed or logged."""
    s = db_session()
    u = current_user()
    payload = request.get_json(silent=True) or {}

    raw = payload.get("qr_raw_value")
    if not isinstance(raw, str) or not raw.strip():
        return _validation_error(["qr_raw_value is required."])
    event_id = None
    if payload.get("event_id") is not None:
        event_id = parse_int(payload.get("event_id"), 0)
        if not event_id:
            return _validation_error(["event_id must be an integer."])
        event_id = _event_or_404(s, event_id).id

    partner_id = None
    if not is_owner(u):
        if u.partner_id is None:
            abort(404)
        partner_id = u.partner_id

    check = check_pass(s, raw=raw, keys=signing_keys_from_app(), event_id=event_id, partner_id=partner_id)
    current_app.logger.info("pass verify result=%s event_id=%s reason=%s", check.result, event_id, check.reason)
    return jsonify(check.to_dict())



@bp.get("/events/<int:event_id>/scan-logs")
@require_permission("statistics.view")
def scan_logs_list(event_id: int):
    s = db_session()
    event = _event_or_404(s, event_id)
    limit = parse_int(request.args.get("limit"), 50, lo=1, hi=500)
    offset = parse_int(request.args.get("offset"), 0, lo=0)
    gate_id = parse_int(request.args.get("gate_id"), 0) or None
    result = (request.args.get("result") or "").strip() or None
    try:
        logs, has_more = list_scan_logs(s, event.id, limit=limit, offset=offset, gate_id=gate_id, result=result)
    except ValueError as e:
        return _validation_error([str(e)])
    return jsonify({
        "logs": [x.to_dict() for x in logs],
        "pagination": {"limit": limit, "offset": offset, "has_more": has_more},
    })
