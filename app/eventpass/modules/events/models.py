from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.eventpass.models import Base
from app.eventpass.utils import isoformat_or_none, utcnow

if TYPE_CHECKING:
    from app.eventpass.modules.passes.models import Pass


class Partner(Base):
    """Tenant. Owns events, users and (optionally) a signing secret in the environment."""

    __tablename__ = "partners"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    webhook_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    webhook_secret: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # Enabled webhook event types; empty/None means all.
    webhook_events: Mapped[list | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    events: Mapped[list["Event"]] = relationship("Event", back_populates="partner", lazy="selectin")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "webhook_url": self.webhook_url,
            "webhook_events": self.webhook_events or [],
            "created_at": self.created_at.isoformat(),
        }


class Event(Base):
    __tablename__ = "events"
    __table_args__ = (
        Index("idx_events_partner", "partner_id"),
        Index("idx_events_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    partner_id: Mapped[int] = mapped_column(ForeignKey("partners.id", ondelete="RESTRICT"), nullable=False)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    venue: Mapped[str | None] = mapped_column(String(255), nullable=True)

    starts_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="draft")  # draft, active, archived

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    partner: Mapped[Partner] = relationship("Partner", back_populates="events", lazy="joined")
    guests: Mapped[list["Guest"]] = relationship(
        "Guest",
        back_populates="event",
        cascade="all, delete-orphan",
        lazy="select",
    )
    gates: Mapped[list["Gate"]] = relationship(
        "Gate",
        back_populates="event",
        cascade="all, delete-orphan",
        lazy="select",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "partner_id": self.partner_id,
            "name": self.name,
            "description": self.description,
            "venue": self.venue,
            "starts_at": isoformat_or_none(self.starts_at),
            "ends_at": isoformat_or_none(self.ends_at),
            "status": self.status,
            "created_at": self.created_at.isoformat(),
        }


class Guest(Base):
    __tablename__ = "guests"
    __table_args__ = (
        Index("idx_guests_event", "event_id"),
        Index("idx_guests_event_anonymous", "event_id", "is_anonymous"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    event_id: Mapped[int] = mapped_column(ForeignKey("events.id", ondelete="CASCADE"), nullable=False)

    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    guest_type: Mapped[str] = mapped_column(String(32), nullable=False, default="Regular")  # VIP, Regular, Staff, Media, Other
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_anonymous: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    event: Mapped[Event] = relationship("Event", back_populates="guests")
    pass_: Mapped["Pass | None"] = relationship(
        "Pass",
        back_populates="guest",
        uselist=False,
        cascade="all, delete-orphan",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_id": self.event_id,
            "full_name": self.full_name,
            "email": self.email,
            "phone": self.phone,
            "type": self.guest_type,
            "is_anonymous": self.is_anonymous,
        }


class Gate(Base):
    __tablename__ = "gates"
    __table_args__ = (
        Index("idx_gates_event", "event_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    event_id: Mapped[int] = mapped_column(ForeignKey("events.id", ondelete="CASCADE"), nullable=False)

    name: Mapped[str] = mapped_column(String(128), nullable=False)  # Main Gate, VIP Gate, ...
    zone: Mapped[str | None] = mapped_column(String(128), nullable=True)
    # Guest types admitted here; empty/None admits every type.
    allowed_guest_types: Mapped[list | None] = mapped_column(JSON, nullable=True)
    access_code: Mapped[str] = mapped_column(String(16), nullable=False, unique=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    event: Mapped[Event] = relationship("Event", back_populates="gates")

    def to_dict(self, *, include_code: bool = False) -> dict:
        d = {
            "id": self.id,
            "event_id": self.event_id,
            "name": self.name,
            "zone": self.zone,
            "allowed_guest_types": self.allowed_guest_types or [],
            "last_seen_at": isoformat_or_none(self.last_seen_at),
        }
        if include_code:
            d["access_code"] = self.access_code
        return d
