from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import select, update

from app.eventpass.audit import record_event
from app.eventpass.constants import PASS_REVOKED, PASS_STATUSES, PASS_UNUSED, PASS_USED, SCAN_RESULTS
from app.eventpass.modules.passes.models import Pass, ScanLog
from app.eventpass.utils import utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.eventpass.models import User


class PassStateError(RuntimeError):
    """The pass is not in a state that allows the requested transition."""


def revoke_pass(s: "Session", p: Pass, user: "User | None", reason: str | None = None) -> Pass:
    """
    Revoke an unused or used pass. Conditional on the current status, so a scan racing
    the revoke either lands first (pass stays revoked afterwards) or sees `revoked`.
    """
    now = utcnow()
    old_status = p.status
    res = s.execute(
        update(Pass)
        .where(Pass.id == p.id, Pass.status.in_((PASS_UNUSED, PASS_USED)))
        .values(status=PASS_REVOKED, revoked_at=now)
        .execution_options(synchronize_session=False)
    )
    s.refresh(p)
    if res.rowcount != 1:
        raise PassStateError(f"Pass {p.id} cannot be revoked from status {p.status}.")

    record_event(
        s,
        actor=user,
        action="pass.revoke",
        entity_type="Pass",
        entity_id=str(p.id),
        reason=reason,
        metadata={"event_id": p.event_id, "guest_id": p.guest_id, "old_status": old_status},
    )
    return p


def list_passes(
    s: "Session",
    event_id: int,
    *,
    status: str | None = None,
    guest_id: int | None = None,
    anonymous: bool | None = None,
) -> list[Pass]:
    stmt = select(Pass).where(Pass.event_id == event_id)
    if status:
        if status not in PASS_STATUSES:
            raise ValueError(f"Invalid status. Must be one of: {', '.join(PASS_STATUSES)}")
        stmt = stmt.where(Pass.status == status)
    if guest_id is not None:
        stmt = stmt.where(Pass.guest_id == guest_id)
    if anonymous is not None:
        stmt = stmt.where(Pass.is_anonymous.is_(anonymous))
    return list(s.execute(stmt.order_by(Pass.generated_at.desc(), Pass.id.desc())).scalars().unique().all())


def list_scan_logs(
    s: "Session",
    event_id: int,
    *,
    limit: int = 50,
    offset: int = 0,
    gate_id: int | None = None,
    result: str | None = None,
) -> tuple[list[ScanLog], bool]:
    """Newest first. Returns (rows, has_more)."""
    stmt = select(ScanLog).where(ScanLog.event_id == event_id)
    if gate_id is not None:
        stmt = stmt.where(ScanLog.gate_id == gate_id)
    if result:
        if result not in SCAN_RESULTS:
            raise ValueError(f"Invalid result. Must be one of: {', '.join(SCAN_RESULTS)}")
        stmt = stmt.where(ScanLog.result == result)
    stmt = stmt.order_by(ScanLog.scanned_at.desc(), ScanLog.id.desc()).offset(offset).limit(limit + 1)
    rows = list(s.execute(stmt).scalars().unique().all())
    return rows[:limit], len(rows) > limit
