"""
Pass issuance.

A pass is written in two steps:

- reserve_pass: insert the row with a provisional payload (signed over an empty pass id)
  so the database assigns the id
- finalize_pass: re-sign with the real id and overwrite the payload

Batches isolate each item in a SAVEPOINT so one bad row does not discard the rest.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.eventpass.audit import record_event
from app.eventpass.constants import (
    ANONYMOUS_EMAIL_DOMAIN,
    MAX_ANONYMOUS_BATCH,
    MAX_ANONYMOUS_PREFIX,
    PASS_UNUSED,
)
from app.eventpass.models import User
from app.eventpass.modules.events.models import Event, Guest
from app.eventpass.modules.passes.models import Pass
from app.eventpass.modules.passes.payload import PassClaims, encode
from app.eventpass.modules.passes.signing import SigningKeys, sign
from app.eventpass.modules.passes.tokens import TokenGenerationError, generate_unique_token
from app.eventpass.utils import to_unix

logger = logging.getLogger(__name__)

_ANON_NUMBER_RE = re.compile(r"#(\d+)$")


class PassAlreadyIssued(RuntimeError):
    def __init__(self, guest_id: int, pass_id: int):
        super().__init__(f"Guest {guest_id} already has pass {pass_id}")
        self.guest_id = guest_id
        self.pass_id = pass_id


@dataclass
class IssuanceError:
    error: str
    guest_id: int | None = None
    guest_name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"guest_id": self.guest_id, "guest_name": self.guest_name, "error": self.error}


@dataclass
class IssuanceReport:
    requested: int
    passes: list[Pass] = field(default_factory=list)
    errors: list[IssuanceError] = field(default_factory=list)

    @property
    def generated(self) -> int:
        return len(self.passes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "requested": self.requested,
            "generated": self.generated,
            "passes": [p.to_dict() for p in self.passes],
            "errors": [e.to_dict() for e in self.errors],
        }


def pass_claims(p: Pass, *, pid: str) -> PassClaims:
    return PassClaims(
        eid=str(p.event_id),
        pid=pid,
        gid=str(p.guest_id) if p.guest_id is not None else None,
        exp=to_unix(p.valid_to) if p.valid_to else None,
    )


def signed_payload(claims: PassClaims, secret: str) -> str:
    return encode(claims, sign(claims.to_dict(), secret))


def _check_window(valid_from: datetime | None, valid_to: datetime | None) -> None:
    if valid_from and valid_to and valid_from > valid_to:
        raise ValueError("valid_from must be before valid_to.")


def reserve_pass(
    s: Session,
    *,
    event: Event,
    guest: Guest,
    secret: str,
    valid_from: datetime | None = None,
    valid_to: datetime | None = None,
    allowed_zones: list[str] | None = None,
) -> Pass:
    """Insert an unused pass with a provisional payload; flushes to obtain the id."""
    token = generate_unique_token(s)
    p = Pass(
        event=event,
        guest=guest,
        event_id=event.id,
        guest_id=guest.id,
        token=token,
        status=PASS_UNUSED,
        valid_from=valid_from if valid_from is not None else event.starts_at,
        valid_to=valid_to if valid_to is not None else event.ends_at,
        is_anonymous=bool(guest.is_anonymous),
        allowed_zones=list(allowed_zones) if allowed_zones else None,
        use_count=0,
    )
    p.qr_payload = signed_payload(pass_claims(p, pid=""), secret)
    s.add(p)
    s.flush()
    return p


def finalize_pass(s: Session, p: Pass, *, secret: str) -> Pass:
    if p.id is None:
        raise ValueError("Pass must be reserved (flushed) before it can be finalized.")
    p.qr_payload = signed_payload(pass_claims(p, pid=str(p.id)), secret)
    s.flush()
    return p


def existing_pass(s: Session, *, event_id: int, guest_id: int) -> Pass | None:
    return s.execute(select(Pass).where(Pass.event_id == event_id, Pass.guest_id == guest_id)).scalars().first()


def issue_pass(
    s: Session,
    *,
    event: Event,
    guest: Guest,
    keys: SigningKeys,
    actor: User | None = None,
    valid_from: datetime | None = None,
    valid_to: datetime | None = None,
    allowed_zones: list[str] | None = None,
) -> Pass:
    """Issue one pass. Raises PassAlreadyIssued, SigningConfigError or persistence errors."""
    if guest.event_id != event.id:
        raise ValueError("Guest does not belong to this event.")
    _check_window(valid_from, valid_to)
    prior = existing_pass(s, event_id=event.id, guest_id=guest.id)
    if prior is not None:
        raise PassAlreadyIssued(guest.id, prior.id)

    secret = keys.resolve(event.partner_id)
    p = reserve_pass(s, event=event, guest=guest, secret=secret, valid_from=valid_from, valid_to=valid_to, allowed_zones=allowed_zones)
    finalize_pass(s, p, secret=secret)
    record_event(
        s,
        actor=actor,
        action="pass.issue",
        entity_type="Pass",
        entity_id=str(p.id),
        metadata={"event_id": event.id, "guest_id": guest.id},
    )
    return p


def guests_without_pass(s: Session, event_id: int, *, guest_ids: list[int] | None = None) -> list[Guest]:
    """Event guests minus the guests that already hold a pass for the event."""
    has_pass = select(Pass.guest_id).where(Pass.event_id == event_id)
    stmt = select(Guest).where(Guest.event_id == event_id, Guest.id.not_in(has_pass))
    if guest_ids is not None:
        stmt = stmt.where(Guest.id.in_(guest_ids))
    return list(s.execute(stmt.order_by(Guest.id)).scalars().all())


def issue_passes_for_event(
    s: Session,
    *,
    event: Event,
    keys: SigningKeys,
    actor: User | None = None,
    guest_ids: list[int] | None = None,
    allowed_zones: list[str] | None = None,
) -> IssuanceReport:
    """
    Issue passes for every guest of the event that lacks one.
    A missing signing secret fails the whole batch; row-level failures are reported per guest.
    """
    secret = keys.resolve(event.partner_id)
    pending = guests_without_pass(s, event.id, guest_ids=guest_ids)
    report = IssuanceReport(requested=len(pending))

    for guest in pending:
        savepoint = s.begin_nested()
        try:
            p = reserve_pass(s, event=event, guest=guest, secret=secret, allowed_zones=allowed_zones)
            finalize_pass(s, p, secret=secret)
            savepoint.commit()
        except (SQLAlchemyError, TokenGenerationError) as e:
            savepoint.rollback()
            logger.warning("Pass issuance failed (event_id=%s guest_id=%s): %s", event.id, guest.id, e)
            report.errors.append(IssuanceError(error=str(e), guest_id=guest.id, guest_name=guest.full_name))
            continue
        report.passes.append(p)

    record_event(
        s,
        actor=actor,
        action="pass.issue_batch",
        entity_type="Event",
        entity_id=str(event.id),
        metadata={"requested": report.requested, "generated": report.generated, "failed": len(report.errors)},
    )
    return report


def next_anonymous_number(s: Session, event_id: int) -> int:
    """One past the highest `#N` suffix among the event's anonymous guests."""
    names = s.execute(
        select(Guest.full_name).where(Guest.event_id == event_id, Guest.is_anonymous.is_(True))
    ).scalars().all()
    highest = 0
    for name in names:
        m = _ANON_NUMBER_RE.search(name or "")
        if m:
            highest = max(highest, int(m.group(1)))
    return highest + 1


def issue_anonymous_passes(
    s: Session,
    *,
    event: Event,
    keys: SigningKeys,
    count: int,
    prefix: str | None = None,
    valid_from: datetime | None = None,
    valid_to: datetime | None = None,
    actor: User | None = None,
) -> IssuanceReport:
    """
    Create `count` placeholder guests ("<prefix> #<n>") each with a pass.
    A guest whose pass cannot be created is rolled back with its savepoint.
    """
    if isinstance(count, bool) or not isinstance(count, int) or count < 1 or count > MAX_ANONYMOUS_BATCH:
        raise ValueError(f"count must be between 1 and {MAX_ANONYMOUS_BATCH}.")
    prefix = (prefix or "").strip() or "Guest"
    if len(prefix) > MAX_ANONYMOUS_PREFIX:
        raise ValueError(f"prefix must be at most {MAX_ANONYMOUS_PREFIX} characters.")
    _check_window(valid_from, valid_to)

    secret = keys.resolve(event.partner_id)
    start = next_anonymous_number(s, event.id)
    report = IssuanceReport(requested=count)

    for n in range(start, start + count):
        name = f"{prefix} #{n}"
        savepoint = s.begin_nested()
        try:
            guest = Guest(
                event_id=event.id,
                full_name=name,
                email=f"anonymous_{n}_{event.id}@{ANONYMOUS_EMAIL_DOMAIN}",
                guest_type="Regular",
                is_anonymous=True,
            )
            s.add(guest)
            s.flush()
            p = reserve_pass(s, event=event, guest=guest, secret=secret, valid_from=valid_from, valid_to=valid_to)
            finalize_pass(s, p, secret=secret)
            savepoint.commit()
        except (SQLAlchemyError, TokenGenerationError) as e:
            savepoint.rollback()
            logger.warning("Anonymous pass failed (event_id=%s name=%s): %s", event.id, name, e)
            report.errors.append(IssuanceError(error=str(e), guest_name=name))
            continue
        report.passes.append(p)

    record_event(
        s,
        actor=actor,
        action="pass.issue_anonymous",
        entity_type="Event",
        entity_id=str(event.id),
        metadata={"requested": count, "generated": report.generated, "prefix": prefix, "start_number": start},
    )
    return report


def anonymous_pass_stats(s: Session, event_id: int) -> dict[str, int]:
    rows = s.execute(
        select(Pass.status, func.count(Pass.id))
        .where(Pass.event_id == event_id, Pass.is_anonymous.is_(True))
        .group_by(Pass.status)
    ).all()
    by_status = {status: n for status, n in rows}
    return {
        "total": sum(by_status.values()),
        "unused": by_status.get("unused", 0),
        "used": by_status.get("used", 0),
        "revoked": by_status.get("revoked", 0),
        "expired": by_status.get("expired", 0),
    }
