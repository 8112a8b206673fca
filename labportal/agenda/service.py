"""Service layer for slot reservation, availability and cancellation."""

from __future__ import annotations

import datetime as dt
import logging
import re
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Callable

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..core.errors import (
    AppointmentNotCancellable,
    AppointmentNotFound,
    DuplicateBooking,
    InternalError,
    InvalidDate,
    InvalidTime,
    PastDate,
    PatientNotFound,
    SlotNoLongerAvailable,
)
from ..core.metrics import reservation_outcomes
from ..core.settings import Settings, get_settings
from ..models import (
    Appointment,
    AppointmentStatus,
    Holiday,
    Location,
    Service,
    Slot,
    User,
    UserRole,
)
from ..models.clinic import CANCELLABLE_STATUSES
from ..models.session import is_unique_violation
from . import schemas

logger = logging.getLogger(__name__)

DEFAULT_SERVICE_NAME = "General Service"
DEFAULT_LOCATION_NAME = "Main Location"

_DATE_RE = re.compile(r"\d{4}-\d{2}-\d{2}")
_TIME_RE = re.compile(r"\d{2}:\d{2}")


def parse_date(value: str) -> dt.date:
    """Parse an ISO ``YYYY-MM-DD`` date or raise :class:`InvalidDate`."""

    if not isinstance(value, str) or not _DATE_RE.fullmatch(value.strip()):
        raise InvalidDate()
    try:
        return dt.date.fromisoformat(value.strip())
    except ValueError as exc:
        raise InvalidDate() from exc


def parse_time(value: str) -> dt.time:
    """Parse a 24-hour ``HH:MM`` time or raise :class:`InvalidTime`."""

    if not isinstance(value, str) or not _TIME_RE.fullmatch(value.strip()):
        raise InvalidTime()
    try:
        return dt.datetime.strptime(value.strip(), "%H:%M").time()
    except ValueError as exc:
        raise InvalidTime() from exc


def _fmt_time(value: dt.time) -> str:
    return value.strftime("%H:%M")


def _minutes(value: dt.time) -> int:
    return value.hour * 60 + value.minute


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class ReservationService:
    """Books appointments against slots with a race-safe capacity decrement.

    Each public operation opens its own short-lived sessions from
    ``session_factory``; the capacity decrement and the appointment insert
    share one transaction so no partial booking is ever observable.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        settings: Settings | None = None,
        today: Callable[[], dt.date] = dt.date.today,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._today = today

    @contextmanager
    def _read_session(self, operation: str) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
        except SQLAlchemyError as exc:
            logger.exception("Database error during %s", operation)
            raise InternalError() from exc
        finally:
            session.close()

    def _validate_date(self, desired_date: str) -> dt.date:
        day = parse_date(desired_date)
        if day < self._today():
            raise PastDate()
        return day

    @staticmethod
    def _find_patient(session: Session, national_id: str) -> User:
        patient = session.scalar(
            select(User).where(
                User.national_id == national_id.strip(),
                User.is_active.is_(True),
                User.role == UserRole.patient.value,
            )
        )
        if patient is None:
            raise PatientNotFound()
        return patient

    @staticmethod
    def _find_holiday(session: Session, day: dt.date) -> Holiday | None:
        return session.scalar(
            select(Holiday).where(Holiday.date == day, Holiday.is_active.is_(True)).limit(1)
        )

    @staticmethod
    def _candidate_slots(
        session: Session,
        day: dt.date,
        service_code: str | None,
        location_code: str | None,
    ) -> list[Slot]:
        stmt = select(Slot).where(
            Slot.date == day,
            Slot.is_active.is_(True),
            Slot.remaining_capacity > 0,
        )
        if service_code:
            stmt = stmt.join(Slot.service).where(Service.code == service_code)
        if location_code:
            stmt = stmt.join(Slot.location).where(Location.code == location_code)
        stmt = stmt.order_by(Slot.start_time, Slot.id)
        return list(session.scalars(stmt).unique())

    @staticmethod
    def _holiday_message(day: dt.date, holiday: Holiday) -> str:
        return (
            f"{day.isoformat()} is {holiday.description} and the laboratory is "
            "closed. Please choose another date."
        )

    @staticmethod
    def _names(slot: Slot) -> tuple[str, str]:
        service = slot.service.name if slot.service else DEFAULT_SERVICE_NAME
        location = slot.location.name if slot.location else DEFAULT_LOCATION_NAME
        return service, location

    def reserve_slot(
        self,
        patient_national_id: str,
        desired_date: str,
        desired_time: str,
        service_code: str | None = None,
        location_code: str | None = None,
        notes: str | None = None,
    ) -> schemas.ReservationResponse:
        """Reserve one seat of a slot for a patient.

        Returns the ``booked`` shape on success and the ``no_availability``
        shape for holidays or empty days. Raises a :class:`LabPortalError`
        subclass for every other outcome; nothing is retried.
        """

        try:
            response = self._reserve(
                patient_national_id,
                desired_date,
                desired_time,
                service_code,
                location_code,
                notes,
            )
        except Exception as exc:
            reservation_outcomes.labels(outcome=getattr(exc, "code", "InternalError")).inc()
            raise
        reservation_outcomes.labels(outcome=response.outcome).inc()
        return response

    def _reserve(
        self,
        patient_national_id: str,
        desired_date: str,
        desired_time: str,
        service_code: str | None,
        location_code: str | None,
        notes: str | None,
    ) -> schemas.ReservationResponse:
        day = parse_date(desired_date)
        wanted = parse_time(desired_time)
        if day < self._today():
            raise PastDate()

        with self._read_session("reservation lookup") as session:
            patient = self._find_patient(session, patient_national_id)

            holiday = self._find_holiday(session, day)
            if holiday is not None:
                return schemas.ReservationResponse(
                    outcome="no_availability",
                    message=self._holiday_message(day, holiday),
                )

            candidates = self._candidate_slots(session, day, service_code, location_code)
            if not candidates:
                return schemas.ReservationResponse(
                    outcome="no_availability",
                    message=(
                        f"There are no available slots on {day.isoformat()}. "
                        "Please try another date."
                    ),
                )

            slot = next((c for c in candidates if c.start_time == wanted), None)
            substituted = False
            if slot is None:
                if not self._settings.allow_time_fallback:
                    nearest = min(
                        candidates,
                        key=lambda c: (abs(_minutes(c.start_time) - _minutes(wanted)), c.start_time),
                    )
                    return schemas.ReservationResponse(
                        outcome="no_availability",
                        message=(
                            f"There is no opening at {_fmt_time(wanted)} on "
                            f"{day.isoformat()}. The nearest available time is "
                            f"{_fmt_time(nearest.start_time)}."
                        ),
                        nearest_time=_fmt_time(nearest.start_time),
                    )
                slot = candidates[0]
                substituted = True

            duplicate = session.scalar(
                select(Appointment.id).where(
                    Appointment.patient_id == patient.id,
                    Appointment.slot_id == slot.id,
                    Appointment.status != AppointmentStatus.CANCELLED,
                )
            )
            if duplicate is not None:
                raise DuplicateBooking()

            patient_id = patient.id
            slot_id = slot.id
            slot_time = slot.start_time
            service_name, location_name = self._names(slot)

        appointment = self.commit_reservation(slot_id, patient_id, notes)
        logger.info(
            "Booked appointment %s on slot %s (substituted=%s)",
            appointment.id,
            slot_id,
            substituted,
        )

        confirmation = schemas.AppointmentConfirmation(
            appointment_id=appointment.id,
            date=day,
            time=_fmt_time(slot_time),
            service=service_name,
            location=location_name,
            status=appointment.status.value,
            requested_time=_fmt_time(wanted),
            time_substituted=substituted,
        )
        message = (
            f"Appointment #{appointment.id} booked for {day.isoformat()} at "
            f"{confirmation.time} ({service_name}, {location_name})."
        )
        if substituted:
            message = (
                f"There was no opening at {_fmt_time(wanted)}; the earliest "
                f"available time was booked instead. {message}"
            )
        return schemas.ReservationResponse(
            outcome="booked", message=message, appointment=confirmation
        )

    def commit_reservation(
        self, slot_id: int, patient_id: int, notes: str | None = None
    ) -> Appointment:
        """Decrement the slot and insert the appointment in one transaction.

        The decrement only applies while ``remaining_capacity > 0``; when it
        touches no row the seat was lost to a concurrent booking.
        """

        try:
            with self._session_factory.begin() as session:
                result = session.execute(
                    update(Slot)
                    .where(
                        Slot.id == slot_id,
                        Slot.remaining_capacity > 0,
                        Slot.is_active.is_(True),
                    )
                    .values(remaining_capacity=Slot.remaining_capacity - 1)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise SlotNoLongerAvailable()
                appointment = Appointment(
                    patient_id=patient_id,
                    slot_id=slot_id,
                    status=AppointmentStatus.SCHEDULED,
                    notes=notes,
                )
                session.add(appointment)
                session.flush()
        except SlotNoLongerAvailable:
            logger.info("Slot %s ran out of capacity before commit", slot_id)
            raise
        except IntegrityError as exc:
            if is_unique_violation(
                exc, "ux_appointments_patient_slot_live", "appointments", ("patient_id", "slot_id")
            ):
                logger.info("Duplicate booking rejected for slot %s", slot_id)
                raise DuplicateBooking() from exc
            logger.error(
                "Integrity error committing reservation for slot %s patient %s: %s",
                slot_id,
                patient_id,
                exc.orig,
            )
            raise InternalError() from exc
        except SQLAlchemyError as exc:
            logger.exception("Failed to commit reservation for slot %s", slot_id)
            raise InternalError() from exc
        return appointment

    def check_availability(
        self,
        desired_date: str,
        service_code: str | None = None,
        location_code: str | None = None,
    ) -> schemas.AvailabilityResponse:
        """List open slots on a date, honoring holidays."""

        day = self._validate_date(desired_date)
        with self._read_session("availability lookup") as session:
            holiday = self._find_holiday(session, day)
            if holiday is not None:
                return schemas.AvailabilityResponse(
                    date=day, message=self._holiday_message(day, holiday)
                )
            candidates = self._candidate_slots(session, day, service_code, location_code)
            slots = []
            for slot in candidates:
                service_name, location_name = self._names(slot)
                slots.append(
                    schemas.AvailableSlot(
                        slot_id=slot.id,
                        time=_fmt_time(slot.start_time),
                        end_time=_fmt_time(slot.end_time),
                        remaining_capacity=slot.remaining_capacity,
                        service=service_name,
                        location=location_name,
                    )
                )

        if not slots:
            message = (
                f"There are no available slots on {day.isoformat()}. "
                "Please try another date."
            )
        else:
            message = f"{len(slots)} time(s) available on {day.isoformat()}."
        return schemas.AvailabilityResponse(date=day, message=message, slots=slots)

    def cancel_appointment(
        self,
        appointment_id: int,
        patient_national_id: str,
        reason: str | None = None,
    ) -> schemas.CancelResponse:
        """Cancel a scheduled or confirmed appointment owned by the patient.

        When capacity restoration is enabled the slot regains one seat in the
        same transaction, never exceeding its configured capacity.
        """

        cancelled_at = _utcnow()
        capacity_restored = False
        try:
            with self._session_factory.begin() as session:
                appointment = session.scalar(
                    select(Appointment)
                    .join(Appointment.patient)
                    .where(
                        Appointment.id == appointment_id,
                        User.national_id == patient_national_id.strip(),
                    )
                )
                if appointment is None:
                    raise AppointmentNotFound()
                slot_id = appointment.slot_id

                result = session.execute(
                    update(Appointment)
                    .where(
                        Appointment.id == appointment_id,
                        Appointment.status.in_(CANCELLABLE_STATUSES),
                    )
                    .values(
                        status=AppointmentStatus.CANCELLED,
                        cancelled_at=cancelled_at,
                        cancellation_reason=reason,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise AppointmentNotCancellable()

                if self._settings.restore_capacity_on_cancel:
                    restored = session.execute(
                        update(Slot)
                        .where(Slot.id == slot_id, Slot.remaining_capacity < Slot.capacity)
                        .values(remaining_capacity=Slot.remaining_capacity + 1)
                        .execution_options(synchronize_session=False)
                    )
                    capacity_restored = restored.rowcount == 1
        except (AppointmentNotFound, AppointmentNotCancellable):
            raise
        except SQLAlchemyError as exc:
            logger.exception("Failed to cancel appointment %s", appointment_id)
            raise InternalError() from exc

        logger.info(
            "Cancelled appointment %s (capacity_restored=%s)",
            appointment_id,
            capacity_restored,
        )
        return schemas.CancelResponse(
            appointment_id=appointment_id,
            status=AppointmentStatus.CANCELLED.value,
            cancelled_at=cancelled_at,
            capacity_restored=capacity_restored,
            message=f"Appointment #{appointment_id} has been cancelled.",
        )

    def list_patient_appointments(
        self, patient_national_id: str, limit: int = 5
    ) -> schemas.PatientAppointmentList:
        """Return the patient's upcoming, non-cancelled appointments."""

        with self._read_session("appointment listing") as session:
            patient = self._find_patient(session, patient_national_id)
            rows = session.scalars(
                select(Appointment)
                .join(Appointment.slot)
                .where(
                    Appointment.patient_id == patient.id,
                    Appointment.status != AppointmentStatus.CANCELLED,
                    Slot.date >= self._today(),
                )
                .order_by(Slot.date, Slot.start_time)
                .limit(limit)
            ).unique()
            items = []
            for appointment in rows:
                service_name, location_name = self._names(appointment.slot)
                items.append(
                    schemas.PatientAppointment(
                        appointment_id=appointment.id,
                        date=appointment.slot.date,
                        time=_fmt_time(appointment.slot.start_time),
                        service=service_name,
                        location=location_name,
                        status=appointment.status.value,
                    )
                )
        return schemas.PatientAppointmentList(items=items, total=len(items))


__all__ = ["ReservationService", "parse_date", "parse_time"]
