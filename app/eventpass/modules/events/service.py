from __future__ import annotations

import secrets
from typing import TYPE_CHECKING, Any

from sqlalchemy import false, select

from app.eventpass.audit import record_event
from app.eventpass.constants import EVENT_STATUSES, GUEST_TYPES, MAX_GUEST_IMPORT, WEBHOOK_EVENTS
from app.eventpass.rbac import is_owner
from app.eventpass.utils import parse_datetime, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.eventpass.models import User
    from app.eventpass.modules.events.models import Event, Gate, Guest, Partner


ACCESS_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
ACCESS_CODE_LENGTH = 8
MAX_ACCESS_CODE_ATTEMPTS = 10


class EventNotFound(LookupError):
    pass


# ---------- Validation ----------
def _validate_window(payload: dict, errors: list[str]) -> None:
    starts = ends = None
    try:
        starts = parse_datetime(payload.get("starts_at"))
    except ValueError:
        errors.append("starts_at must be an ISO-8601 timestamp.")
    try:
        ends = parse_datetime(payload.get("ends_at"))
    except ValueError:
        errors.append("ends_at must be an ISO-8601 timestamp.")
    if starts and ends and starts > ends:
        errors.append("starts_at must be before ends_at.")


def validate_event_payload(payload: dict, *, partial: bool = False) -> list[str]:
    """Validate event creation/update payload. Returns list of errors."""
    errors: list[str] = []
    name = (payload.get("name") or "").strip()
    if not name and not partial:
        errors.append("Name is required.")
    status = (payload.get("status") or "").strip()
    if status and status not in EVENT_STATUSES:
        errors.append(f"Invalid status. Must be one of: {', '.join(EVENT_STATUSES)}")
    _validate_window(payload, errors)
    return errors


def validate_guest_payload(payload: dict) -> list[str]:
    errors: list[str] = []
    for key in ("full_name", "email", "phone", "type", "notes"):
        if payload.get(key) is not None and not isinstance(payload[key], str):
            errors.append(f"{key} must be a string.")
    if errors:
        return errors
    if not (payload.get("full_name") or "").strip():
        errors.append("full_name is required.")
    guest_type = (payload.get("type") or "").strip()
    if guest_type and guest_type not in GUEST_TYPES:
        errors.append(f"Invalid type. Must be one of: {', '.join(GUEST_TYPES)}")
    return errors


def validate_gate_payload(payload: dict) -> list[str]:
    errors: list[str] = []
    if not (payload.get("name") or "").strip():
        errors.append("Name is required.")
    types = payload.get("allowed_guest_types")
    if types is not None:
        if not isinstance(types, list) or any(t not in GUEST_TYPES for t in types):
            errors.append(f"allowed_guest_types must be a list drawn from: {', '.join(GUEST_TYPES)}")
    return errors


def _validate_webhook_fields(payload: dict, errors: list[str]) -> None:
    url = (payload.get("webhook_url") or "").strip()
    if url and not url.startswith(("http://", "https://")):
        errors.append("webhook_url must be an http(s) URL.")
    events = payload.get("webhook_events")
    if events is not None:
        if not isinstance(events, list) or any(e not in WEBHOOK_EVENTS for e in events):
            errors.append(f"webhook_events must be a list drawn from: {', '.join(WEBHOOK_EVENTS)}")


def validate_partner_payload(payload: dict) -> list[str]:
    errors: list[str] = []
    if not (payload.get("name") or "").strip():
        errors.append("Name is required.")
    _validate_webhook_fields(payload, errors)
    return errors


def validate_webhook_payload(payload: dict) -> list[str]:
    errors: list[str] = []
    _validate_webhook_fields(payload, errors)
    secret = payload.get("webhook_secret")
    if secret is not None and not isinstance(secret, str):
        errors.append("webhook_secret must be a string.")
    return errors


def validate_guest_import(rows: Any) -> list[str]:
    """Validate a bulk guest list; messages are prefixed with the 1-based row number."""
    if not isinstance(rows, list) or not rows:
        return ["guests must be a non-empty list."]
    if len(rows) > MAX_GUEST_IMPORT:
        return [f"At most {MAX_GUEST_IMPORT} guests may be imported at once."]
    errors: list[str] = []
    for i, row in enumerate(rows, start=1):
        if not isinstance(row, dict):
            errors.append(f"Row {i}: must be an object.")
            continue
        errors.extend(f"Row {i}: {msg}" for msg in validate_guest_payload(row))
    return errors


# ---------- Tenant scoping ----------
def events_query(user: "User"):
    """Events the actor may see: everything for owners, the actor's partner otherwise."""
    from app.eventpass.modules.events.models import Event

    stmt = select(Event)
    if not is_owner(user):
        stmt = stmt.where(Event.partner_id == user.partner_id) if user.partner_id else stmt.where(false())
    return stmt


def get_event_for_user(s: "Session", event_id: int, user: "User") -> "Event":
    """Event by id, scoped to the actor's tenant. Raises EventNotFound otherwise."""
    from app.eventpass.modules.events.models import Event

    event = s.get(Event, event_id)
    if event is None:
        raise EventNotFound(event_id)
    if not is_owner(user) and (user.partner_id is None or event.partner_id != user.partner_id):
        raise EventNotFound(event_id)
    return event


# ---------- Partners ----------
def create_partner(s: "Session", payload: dict, user: "User | None") -> "Partner":
    from app.eventpass.modules.events.models import Partner

    partner = Partner(
        name=(payload.get("name") or "").strip(),
        webhook_url=(payload.get("webhook_url") or "").strip() or None,
        webhook_secret=(payload.get("webhook_secret") or "").strip() or None,
        webhook_events=list(payload.get("webhook_events") or []) or None,
    )
    s.add(partner)
    s.flush()
    record_event(
        s,
        actor=user,
        action="partner.create",
        entity_type="Partner",
        entity_id=str(partner.id),
        metadata={"name": partner.name, "webhook": bool(partner.webhook_url)},
    )
    return partner


def update_partner_webhook(s: "Session", partner: "Partner", payload: dict, user: "User") -> "Partner":
    """Replace the partner's webhook settings. An empty URL disables delivery."""
    partner.webhook_url = (payload.get("webhook_url") or "").strip() or None
    if "webhook_secret" in payload:
        partner.webhook_secret = (payload.get("webhook_secret") or "").strip() or None
    if "webhook_events" in payload:
        partner.webhook_events = list(payload.get("webhook_events") or []) or None
    s.flush()
    record_event(
        s,
        actor=user,
        action="partner.webhook_update",
        entity_type="Partner",
        entity_id=str(partner.id),
        metadata={
            "webhook_url": partner.webhook_url,
            "webhook_events": partner.webhook_events or [],
            "secret_changed": "webhook_secret" in payload,
        },
    )
    return partner


# ---------- Events ----------
def create_event(s: "Session", payload: dict, user: "User", *, partner_id: int) -> "Event":
    """Create a new event owned by `partner_id`."""
    from app.eventpass.modules.events.models import Event

    now = utcnow()
    event = Event(
        partner_id=partner_id,
        name=(payload.get("name") or "").strip(),
        description=(payload.get("description") or "").strip() or None,
        venue=(payload.get("venue") or "").strip() or None,
        starts_at=parse_datetime(payload.get("starts_at")),
        ends_at=parse_datetime(payload.get("ends_at")),
        status=(payload.get("status") or "draft").strip(),
        created_at=now,
        updated_at=now,
        created_by_user_id=user.id if user else None,
    )
    s.add(event)
    s.flush()

    record_event(
        s,
        actor=user,
        action="event.create",
        entity_type="Event",
        entity_id=str(event.id),
        metadata={"name": event.name, "partner_id": partner_id, "status": event.status},
    )
    return event


def update_event(s: "Session", event: "Event", payload: dict, user: "User", reason: str | None = None) -> "Event":
    """Apply the fields present in `payload`. Passes already issued keep their window."""
    changes = {}

    if "name" in payload:
        new_name = (payload.get("name") or "").strip()
        if new_name and new_name != event.name:
            changes["name"] = {"old": event.name, "new": new_name}
            event.name = new_name

    for key in ("description", "venue"):
        if key in payload:
            new_val = (payload.get(key) or "").strip() or None
            if new_val != getattr(event, key):
                changes[key] = {"old": getattr(event, key), "new": new_val}
                setattr(event, key, new_val)

    for key in ("starts_at", "ends_at"):
        if key in payload:
            new_dt = parse_datetime(payload.get(key))
            if new_dt != getattr(event, key):
                changes[key] = {"old": str(getattr(event, key)), "new": str(new_dt)}
                setattr(event, key, new_dt)

    if "status" in payload:
        new_status = (payload.get("status") or "").strip()
        if new_status and new_status != event.status:
            changes["status"] = {"old": event.status, "new": new_status}
            event.status = new_status

    event.updated_at = utcnow()
    record_event(
        s,
        actor=user,
        action="event.edit",
        entity_type="Event",
        entity_id=str(event.id),
        reason=reason,
        metadata={"name": event.name, "changes": changes},
    )
    return event


def archive_event(s: "Session", event: "Event", user: "User", reason: str | None = None) -> "Event":
    old = event.status
    event.status = "archived"
    event.updated_at = utcnow()
    record_event(
        s,
        actor=user,
        action="event.archive",
        entity_type="Event",
        entity_id=str(event.id),
        reason=reason,
        metadata={"old_status": old},
    )
    return event


def delete_event(s: "Session", event: "Event", user: "User", reason: str | None = None) -> None:
    """Hard delete (owner only). Scan log rows keep their data with the event link cleared."""
    if not is_owner(user):
        raise PermissionError("Only an owner may hard-delete an event.")
    record_event(
        s,
        actor=user,
        action="event.delete",
        entity_type="Event",
        entity_id=str(event.id),
        reason=reason,
        metadata={"name": event.name, "partner_id": event.partner_id},
    )
    s.delete(event)
    s.flush()


# ---------- Guests ----------
def _guest_from_payload(event: "Event", payload: dict) -> "Guest":
    from app.eventpass.modules.events.models import Guest

    return Guest(
        event_id=event.id,
        full_name=(payload.get("full_name") or "").strip(),
        email=(payload.get("email") or "").strip().lower() or None,
        phone=(payload.get("phone") or "").strip() or None,
        guest_type=(payload.get("type") or "Regular").strip(),
        notes=(payload.get("notes") or "").strip() or None,
        is_anonymous=False,
    )


def create_guest(s: "Session", event: "Event", payload: dict, user: "User") -> "Guest":
    guest = _guest_from_payload(event, payload)
    s.add(guest)
    s.flush()
    record_event(
        s,
        actor=user,
        action="guest.create",
        entity_type="Guest",
        entity_id=str(guest.id),
        metadata={"event_id": event.id, "type": guest.guest_type},
    )
    return guest


def import_guests(s: "Session", event: "Event", rows: list[dict], user: "User") -> list["Guest"]:
    """Bulk-create named guests from rows already checked by validate_guest_import."""
    guests = [_guest_from_payload(event, row) for row in rows]
    s.add_all(guests)
    s.flush()
    record_event(
        s,
        actor=user,
        action="guest.import",
        entity_type="Event",
        entity_id=str(event.id),
        metadata={"count": len(guests)},
    )
    return guests


# ---------- Gates ----------
def generate_access_code(length: int = ACCESS_CODE_LENGTH) -> str:
    """Random code from an alphabet without look-alike characters (no I, O, 0, 1)."""
    return "".join(secrets.choice(ACCESS_CODE_ALPHABET) for _ in range(length))


def unique_access_code(s: "Session") -> str:
    from app.eventpass.modules.events.models import Gate

    for _ in range(MAX_ACCESS_CODE_ATTEMPTS):
        code = generate_access_code()
        if s.execute(select(Gate.id).where(Gate.access_code == code)).first() is None:
            return code
    raise RuntimeError("Failed to generate a unique gate access code.")


def create_gate(s: "Session", event: "Event", payload: dict, user: "User") -> "Gate":
    from app.eventpass.modules.events.models import Gate

    gate = Gate(
        event_id=event.id,
        name=(payload.get("name") or "").strip(),
        zone=(payload.get("zone") or "").strip() or None,
        allowed_guest_types=list(payload.get("allowed_guest_types") or []) or None,
        access_code=unique_access_code(s),
    )
    s.add(gate)
    s.flush()
    record_event(
        s,
        actor=user,
        action="gate.create",
        entity_type="Gate",
        entity_id=str(gate.id),
        metadata={"event_id": event.id, "name": gate.name, "zone": gate.zone},
    )
    return gate


def find_gate_by_code(s: "Session", code: str) -> "Gate | None":
    """Gate for an access code, only while its event is active."""
    from app.eventpass.modules.events.models import Event, Gate

    code = (code or "").strip().upper()
    if not code:
        return None
    gate = s.execute(select(Gate).where(Gate.access_code == code)).scalars().first()
    if gate is None:
        return None
    event = s.get(Event, gate.event_id)
    if event is None or event.status != "active":
        return None
    return gate
