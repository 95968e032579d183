from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, event
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.eventpass.models import Base
from app.eventpass.utils import isoformat_or_none, utcnow

if TYPE_CHECKING:
    from app.eventpass.modules.events.models import Event, Gate, Guest


class Pass(Base):
    """
    One admission credential per (event, guest).

    Status moves unused -> used, and from unused/used to revoked or expired. Only the
    scan pipeline and an administrative revoke write to this table after issuance.
    """

    __tablename__ = "passes"
    __table_args__ = (
        UniqueConstraint("event_id", "guest_id", name="uq_passes_event_guest"),
        Index("idx_passes_event_status", "event_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    event_id: Mapped[int] = mapped_column(ForeignKey("events.id", ondelete="CASCADE"), nullable=False)
    guest_id: Mapped[int] = mapped_column(ForeignKey("guests.id", ondelete="CASCADE"), nullable=False)

    token: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    qr_payload: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="unused")

    valid_from: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    valid_to: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    first_scanned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    last_scanned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    use_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    is_anonymous: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Zone names this pass admits; empty/None admits every zone.
    allowed_zones: Mapped[list | None] = mapped_column(JSON, nullable=True)

    generated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    event: Mapped["Event"] = relationship("Event", lazy="joined")
    guest: Mapped["Guest"] = relationship("Guest", back_populates="pass_", lazy="joined")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_id": self.event_id,
            "guest_id": self.guest_id,
            "guest_name": self.guest.full_name if self.guest else None,
            "token": self.token,
            "qr_payload": self.qr_payload,
            "status": self.status,
            "valid_from": isoformat_or_none(self.valid_from),
            "valid_to": isoformat_or_none(self.valid_to),
            "first_scanned_at": isoformat_or_none(self.first_scanned_at),
            "last_scanned_at": isoformat_or_none(self.last_scanned_at),
            "use_count": self.use_count,
            "is_anonymous": self.is_anonymous,
            "allowed_zones": self.allowed_zones or [],
            "generated_at": self.generated_at.isoformat(),
            "revoked_at": isoformat_or_none(self.revoked_at),
        }


class ScanLog(Base):
    """Immutable record of one verification attempt at a gate."""

    __tablename__ = "scan_logs"
    __table_args__ = (
        Index("idx_scan_logs_event_scanned", "event_id", "scanned_at"),
        Index("idx_scan_logs_pass", "pass_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    event_id: Mapped[int | None] = mapped_column(ForeignKey("events.id", ondelete="SET NULL"), nullable=True)
    pass_id: Mapped[int | None] = mapped_column(ForeignKey("passes.id", ondelete="SET NULL"), nullable=True)
    guest_id: Mapped[int | None] = mapped_column(ForeignKey("guests.id", ondelete="SET NULL"), nullable=True)
    gate_id: Mapped[int | None] = mapped_column(ForeignKey("gates.id", ondelete="SET NULL"), nullable=True)
    scanner_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    result: Mapped[str] = mapped_column(String(32), nullable=False)
    raw_payload: Mapped[str | None] = mapped_column(Text, nullable=True)
    device_info: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    error_message: Mapped[str | None] = mapped_column(String(512), nullable=True)  # internal only
    processing_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    scanned_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    gate: Mapped["Gate | None"] = relationship("Gate", lazy="joined")
    guest: Mapped["Guest | None"] = relationship("Guest", lazy="joined")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_id": self.event_id,
            "pass_id": self.pass_id,
            "guest_id": self.guest_id,
            "guest_name": self.guest.full_name if self.guest else None,
            "gate_id": self.gate_id,
            "gate_name": self.gate.name if self.gate else None,
            "scanner_user_id": self.scanner_user_id,
            "result": self.result,
            "error_message": self.error_message,
            "device_info": self.device_info,
            "processing_time_ms": self.processing_time_ms,
            "scanned_at": self.scanned_at.isoformat(),
        }


class ScanLogImmutableError(RuntimeError):
    pass


@event.listens_for(ScanLog, "before_update")
def _scan_log_no_update(mapper, connection, target) -> None:
    raise ScanLogImmutableError(f"scan_logs row {target.id} is append-only (update refused)")


@event.listens_for(ScanLog, "before_delete")
def _scan_log_no_delete(mapper, connection, target) -> None:
    raise ScanLogImmutableError(f"scan_logs row {target.id} is append-only (delete refused)")
