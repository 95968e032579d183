"""
Gate scan pipeline.

decode -> resolve pass -> verify signature -> event / gate membership -> status checks
-> conditional single-use transition. Every attempt writes one ScanLog row; the caller
owns the commit.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from app.eventpass.constants import (
    PASS_EXPIRED,
    PASS_REVOKED,
    PASS_UNUSED,
    PASS_USED,
    SCAN_ALREADY_USED,
    SCAN_EXPIRED,
    SCAN_INVALID,
    SCAN_NOT_ALLOWED_ZONE,
    SCAN_REVOKED,
    SCAN_VALID,
)
from app.eventpass.models import User
from app.eventpass.modules.events.models import Event, Gate, Guest
from app.eventpass.modules.passes.models import Pass, ScanLog
from app.eventpass.modules.passes.payload import Decoded, Malformed, decode
from app.eventpass.modules.passes.signing import SigningKeys, verify
from app.eventpass.modules.passes.tokens import is_token
from app.eventpass.utils import utcnow

logger = logging.getLogger(__name__)

MESSAGES = {
    SCAN_VALID: "Check-in successful",
    SCAN_ALREADY_USED: "Pass has already been used",
    SCAN_INVALID: "Invalid pass",
    SCAN_EXPIRED: "Pass has expired",
    SCAN_REVOKED: "Pass has been revoked",
    SCAN_NOT_ALLOWED_ZONE: "Pass is not valid at this gate",
}
NOT_YET_VALID_MESSAGE = "Pass is not yet valid"

_RAW_PAYLOAD_LIMIT = 4096


@dataclass(frozen=True)
class ScanOutcome:
    result: str
    message: str
    event_id: int | None = None
    pass_id: int | None = None
    gate_id: int | None = None
    guest: dict[str, Any] | None = None
    scan_log_id: int | None = None
    scanned_at: datetime | None = None
    # Internal reason; stored on the scan log, never returned to the client.
    reason: str | None = field(default=None, compare=False)

    @property
    def ok(self) -> bool:
        return self.result == SCAN_VALID

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "result": self.result,
            "message": self.message,
            "scanned_at": self.scanned_at.isoformat() if self.scanned_at else None,
        }
        if self.guest is not None:
            d["guest"] = self.guest
            d["pass_id"] = self.pass_id
        return d

    def webhook_data(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "pass_id": self.pass_id,
            "gate_id": self.gate_id,
            "guest": self.guest,
            "result": self.result,
            "scanned_at": self.scanned_at.isoformat() if self.scanned_at else None,
        }


def _guest_summary(guest: Guest | None) -> dict[str, Any] | None:
    if guest is None:
        return None
    return {"id": guest.id, "full_name": guest.full_name, "type": guest.guest_type}


_MAX_PASS_ID = 2**31 - 1


def _resolve_pass(s: Session, pid: str) -> Pass | None:
    """Look a pass up by numeric id or opaque token; anything else resolves to None."""
    if pid.isascii() and pid.isdigit() and len(pid) <= 10:
        pass_id = int(pid)
        return s.get(Pass, pass_id) if 0 < pass_id <= _MAX_PASS_ID else None
    if is_token(pid):
        return s.execute(select(Pass).where(Pass.token == pid)).scalars().first()
    return None


def _gate_admits(gate: Gate, p: Pass) -> str | None:
    """Reason the gate refuses this pass, or None. A gate without restrictions admits everyone."""
    allowed_types = gate.allowed_guest_types or []
    guest_type = p.guest.guest_type if p.guest else None
    if allowed_types and guest_type not in allowed_types:
        return f"guest type {guest_type} not allowed at gate {gate.name}"
    allowed_zones = p.allowed_zones or []
    if allowed_zones and gate.zone and gate.zone not in allowed_zones:
        return f"zone {gate.zone} not in pass zones {allowed_zones}"
    return None


def _expire_if_unused(s: Session, p: Pass) -> None:
    s.execute(
        update(Pass)
        .where(Pass.id == p.id, Pass.status == PASS_UNUSED)
        .values(status=PASS_EXPIRED)
        .execution_options(synchronize_session=False)
    )
    s.refresh(p)


def _classify_current(p: Pass) -> tuple[str, str]:
    if p.status == PASS_USED:
        return SCAN_ALREADY_USED, "pass was used by a concurrent scan"
    if p.status == PASS_REVOKED:
        return SCAN_REVOKED, "pass was revoked concurrently"
    if p.status == PASS_EXPIRED:
        return SCAN_EXPIRED, "pass expired concurrently"
    return SCAN_INVALID, f"conditional update missed with status {p.status}"


def _authenticate(s: Session, decoded: Decoded, keys: SigningKeys, event_id: int | None) -> tuple[Pass | None, str | None]:
    """The pass a decoded payload names, once its signature and event are confirmed; else (None, reason)."""
    claims = decoded.claims
    p = _resolve_pass(s, claims.pid)
    if p is None:
        return None, f"pass not found for pid {claims.pid!r}"
    secret = keys.resolve(p.event.partner_id)
    if not verify(claims.to_dict(), decoded.signature, secret):
        return None, f"signature mismatch for pass {p.id}"
    expected = event_id if event_id is not None else p.event_id
    if p.event_id != expected or claims.eid != str(expected):
        return None, f"pass belongs to event {p.event_id}, payload eid {claims.eid!r}"
    return p, None


def scan_pass(
    s: Session,
    *,
    raw: Any,
    event_id: int,
    keys: SigningKeys,
    gate_id: int | None = None,
    scanner: User | None = None,
    device_info: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> ScanOutcome:
    """
    Verify one scanned payload for `event_id` and admit the pass at most once.
    Raises SigningConfigError when no secret exists for the event's partner.
    """
    started = time.monotonic()
    now = now or utcnow()

    event = s.get(Event, event_id)
    gate = s.get(Gate, gate_id) if gate_id is not None else None
    p: Pass | None = None

    def finish(result: str, reason: str | None = None, *, message: str | None = None, show_guest: bool = True) -> ScanOutcome:
        entry = ScanLog(
            event_id=event.id if event else None,
            pass_id=p.id if p else None,
            guest_id=p.guest_id if p else None,
            gate_id=gate.id if gate else None,
            scanner_user_id=scanner.id if scanner else None,
            result=result,
            raw_payload=raw[:_RAW_PAYLOAD_LIMIT] if isinstance(raw, str) else None,
            device_info=device_info,
            error_message=reason[:512] if reason else None,
            processing_time_ms=int((time.monotonic() - started) * 1000),
            scanned_at=now,
        )
        s.add(entry)
        s.flush()
        if result != SCAN_VALID:
            logger.info("Scan rejected: result=%s event_id=%s pass_id=%s reason=%s", result, event_id, entry.pass_id, reason)
        return ScanOutcome(
            result=result,
            message=message or MESSAGES[result],
            event_id=entry.event_id,
            pass_id=entry.pass_id,
            gate_id=entry.gate_id,
            guest=_guest_summary(p.guest) if (p is not None and show_guest) else None,
            scan_log_id=entry.id,
            scanned_at=now,
            reason=reason,
        )

    decoded = decode(raw, now)
    if isinstance(decoded, Malformed):
        if decoded.expired:
            return finish(SCAN_EXPIRED, "payload exp is in the past")
        return finish(SCAN_INVALID, f"decode failed: {decoded.reason}")
    if event is None:
        return finish(SCAN_INVALID, f"unknown event {event_id}")

    p, reason = _authenticate(s, decoded, keys, event.id)
    if p is None:
        return finish(SCAN_INVALID, reason)
    if gate_id is not None and (gate is None or gate.event_id != event.id):
        return finish(SCAN_INVALID, f"gate {gate_id} does not belong to event {event.id}", show_guest=False)

    if p.status == PASS_REVOKED:
        return finish(SCAN_REVOKED, f"pass revoked at {p.revoked_at}")
    if p.status == PASS_EXPIRED or (p.valid_to is not None and p.valid_to < now):
        if p.status == PASS_UNUSED:
            _expire_if_unused(s, p)
            if p.status not in (PASS_EXPIRED, PASS_UNUSED):
                result, reason = _classify_current(p)
                return finish(result, reason)
        return finish(SCAN_EXPIRED, f"pass valid until {p.valid_to}")
    if p.valid_from is not None and p.valid_from > now:
        return finish(SCAN_INVALID, f"pass not valid before {p.valid_from}", message=NOT_YET_VALID_MESSAGE, show_guest=False)
    if p.status == PASS_USED:
        return finish(SCAN_ALREADY_USED, f"pass first scanned at {p.first_scanned_at}")
    if gate is not None:
        refused = _gate_admits(gate, p)
        if refused:
            return finish(SCAN_NOT_ALLOWED_ZONE, refused)

    res = s.execute(
        update(Pass)
        .where(Pass.id == p.id, Pass.status == PASS_UNUSED)
        .values(
            status=PASS_USED,
            first_scanned_at=func.coalesce(Pass.first_scanned_at, now),
            last_scanned_at=now,
            use_count=Pass.use_count + 1,
        )
        .execution_options(synchronize_session=False)
    )
    s.refresh(p)
    if res.rowcount == 1:
        if gate is not None:
            gate.last_seen_at = now
        return finish(SCAN_VALID)

    result, reason = _classify_current(p)
    return finish(result, reason)


@dataclass(frozen=True)
class PassCheck:
    """Read-only verdict on a payload; nothing is logged or consumed."""

    result: str
    message: str
    pass_: Pass | None = None
    reason: str | None = field(default=None, compare=False)

    @property
    def valid(self) -> bool:
        return self.result == SCAN_VALID

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"valid": self.valid, "result": self.result, "message": self.message}
        if self.pass_ is not None:
            p = self.pass_
            d["pass"] = {
                "id": p.id,
                "event_id": p.event_id,
                "status": p.status,
                "guest": _guest_summary(p.guest),
                "valid_from": p.valid_from.isoformat() if p.valid_from else None,
                "valid_to": p.valid_to.isoformat() if p.valid_to else None,
                "first_scanned_at": p.first_scanned_at.isoformat() if p.first_scanned_at else None,
            }
        return d


def check_pass(
    s: Session,
    *,
    raw: Any,
    keys: SigningKeys,
    event_id: int | None = None,
    partner_id: int | None = None,
    now: datetime | None = None,
) -> PassCheck:
    """
    Answer whether `raw` would be admitted right now, without admitting it.

    Same checks and order as scan_pass minus the gate rules; `partner_id` hides passes
    of other tenants as invalid.
    """
    now = now or utcnow()

    decoded = decode(raw, now)
    if isinstance(decoded, Malformed):
        if decoded.expired:
            return PassCheck(SCAN_EXPIRED, MESSAGES[SCAN_EXPIRED], reason="payload exp is in the past")
        return PassCheck(SCAN_INVALID, MESSAGES[SCAN_INVALID], reason=f"decode failed: {decoded.reason}")

    p, reason = _authenticate(s, decoded, keys, event_id)
    if p is None:
        return PassCheck(SCAN_INVALID, MESSAGES[SCAN_INVALID], reason=reason)
    if partner_id is not None and p.event.partner_id != partner_id:
        return PassCheck(SCAN_INVALID, MESSAGES[SCAN_INVALID], reason=f"pass {p.id} belongs to another partner")

    if p.status == PASS_REVOKED:
        return PassCheck(SCAN_REVOKED, MESSAGES[SCAN_REVOKED], p)
    if p.status == PASS_EXPIRED or (p.valid_to is not None and p.valid_to < now):
        return PassCheck(SCAN_EXPIRED, MESSAGES[SCAN_EXPIRED], p)
    if p.valid_from is not None and p.valid_from > now:
        return PassCheck(SCAN_INVALID, NOT_YET_VALID_MESSAGE, p)
    if p.status == PASS_USED:
        return PassCheck(SCAN_ALREADY_USED, MESSAGES[SCAN_ALREADY_USED], p)
    return PassCheck(SCAN_VALID, "Pass is valid", p)
