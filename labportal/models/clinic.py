"""Patient, catalog and scheduling models used by the agenda core.

A patient is a :class:`User` with the ``patient`` role, looked up by national
id. Slots carry the bookable capacity; appointments consume one unit of a
slot's ``remaining_capacity`` each. The partial unique index on appointments
backs the one-live-booking-per-slot rule at the persistence layer.
"""

from __future__ import annotations

import datetime as dt
import enum
from typing import List

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from . import Base


def _utcnow() -> dt.datetime:
    """Return the current UTC timestamp with timezone awareness."""

    return dt.datetime.now(dt.timezone.utc)


class UserRole(str, enum.Enum):
    patient = "patient"
    operator = "operator"
    admin = "admin"


class AppointmentStatus(str, enum.Enum):
    SCHEDULED = "SCHEDULED"
    CONFIRMED = "CONFIRMED"
    IN_PROGRESS = "IN_PROGRESS"
    CANCELLED = "CANCELLED"


CANCELLABLE_STATUSES = (AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED)


class User(Base):
    """Represents a portal account: patient, chat operator or administrator.

    Attributes:
        id: Integer primary key.
        national_id: Unique national identification number.
        first_name: Given name shown to operators and in chat.
        last_name: Family name.
        email: Optional contact e-mail.
        role: One of :class:`UserRole`.
        is_active: Inactive users cannot book or operate the chat.
    """

    __tablename__ = "users"
    __table_args__ = (
        Index("ix_users_national_id_unique", "national_id", unique=True),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    national_id: Mapped[str] = mapped_column(String(length=20), nullable=False)
    first_name: Mapped[str] = mapped_column(String(length=120), nullable=False)
    last_name: Mapped[str] = mapped_column(String(length=120), nullable=False, default="")
    email: Mapped[str | None] = mapped_column(String(length=320), nullable=True)
    role: Mapped[str] = mapped_column(
        String(length=32),
        nullable=False,
        default=UserRole.patient.value,
        server_default=text("'patient'"),
    )
    is_active: Mapped[bool] = mapped_column(
        nullable=False,
        default=True,
        server_default=text("true"),
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )

    appointments: Mapped[List["Appointment"]] = relationship(back_populates="patient")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Service(Base):
    """Laboratory service (exam family) a slot is offered for."""

    __tablename__ = "services"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(length=32), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(length=255), nullable=False)
    is_active: Mapped[bool] = mapped_column(nullable=False, default=True)


class Location(Base):
    """Physical branch where a slot takes place."""

    __tablename__ = "locations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(length=32), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(length=255), nullable=False)
    is_active: Mapped[bool] = mapped_column(nullable=False, default=True)


class Holiday(Base):
    """A closed day; no reservations are accepted on it while active."""

    __tablename__ = "holidays"
    __table_args__ = (Index("ix_holidays_date", "date"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    description: Mapped[str] = mapped_column(String(length=255), nullable=False)
    is_active: Mapped[bool] = mapped_column(nullable=False, default=True)


class Slot(Base):
    """A bookable time window with a bounded number of seats.

    ``remaining_capacity`` is only ever changed through conditional UPDATE
    statements; the CHECK constraints keep it inside ``[0, capacity]``.
    """

    __tablename__ = "slots"
    __table_args__ = (
        CheckConstraint("remaining_capacity >= 0", name="ck_slots_remaining_non_negative"),
        CheckConstraint(
            "remaining_capacity <= capacity", name="ck_slots_remaining_within_capacity"
        ),
        Index("ix_slots_date_start_time", "date", "start_time"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    start_time: Mapped[dt.time] = mapped_column(Time, nullable=False)
    end_time: Mapped[dt.time] = mapped_column(Time, nullable=False)
    capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    remaining_capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(nullable=False, default=True)
    service_id: Mapped[int | None] = mapped_column(
        ForeignKey("services.id", ondelete="SET NULL"), nullable=True
    )
    location_id: Mapped[int | None] = mapped_column(
        ForeignKey("locations.id", ondelete="SET NULL"), nullable=True
    )

    service: Mapped[Service | None] = relationship(lazy="joined")
    location: Mapped[Location | None] = relationship(lazy="joined")


class Appointment(Base):
    """A patient's booking (cita) against one slot."""

    __tablename__ = "appointments"
    __table_args__ = (
        Index(
            "ux_appointments_patient_slot_live",
            "patient_id",
            "slot_id",
            unique=True,
            sqlite_where=text("status <> 'CANCELLED'"),
            postgresql_where=text("status <> 'CANCELLED'"),
        ),
        Index("ix_appointments_patient_id", "patient_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    patient_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    slot_id: Mapped[int] = mapped_column(
        ForeignKey("slots.id", ondelete="RESTRICT"), nullable=False
    )
    status: Mapped[AppointmentStatus] = mapped_column(
        Enum(AppointmentStatus, native_enum=False, length=16),
        nullable=False,
        default=AppointmentStatus.SCHEDULED,
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
    )
    cancelled_at: Mapped[dt.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    patient: Mapped[User] = relationship(back_populates="appointments")
    slot: Mapped[Slot] = relationship(lazy="joined")


__all__ = [
    "Appointment",
    "AppointmentStatus",
    "CANCELLABLE_STATUSES",
    "Holiday",
    "Location",
    "Service",
    "Slot",
    "User",
    "UserRole",
]
