"""Appointment booking API routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from starlette.concurrency import run_in_threadpool

from ..agenda import schemas
from ..agenda.service import ReservationService
from ..core.errors import NotAuthorized
from ..core.rate_limit import limiter
from ..core.settings import get_settings
from ..dependencies import get_reservation_service
from ..models import User
from ..security.auth import get_current_user, has_role

router = APIRouter(prefix="/api/agenda", tags=["agenda"])


def _reservation_limit() -> str:
    return get_settings().reservation_rate_limit


@router.post("/reservations", response_model=schemas.ReservationResponse)
@limiter.limit(_reservation_limit)
async def create_reservation(
    request: Request,
    payload: schemas.ReservationRequest,
    service: ReservationService = Depends(get_reservation_service),
) -> schemas.ReservationResponse:
    """Book the requested time, or the earliest open slot that day.

    A holiday or a fully booked day yields ``outcome="no_availability"``
    with HTTP 200; every other failure uses the error envelope.
    """
    return await run_in_threadpool(
        service.reserve_slot,
        payload.patient_national_id,
        payload.date,
        payload.time,
        payload.service_code,
        payload.location_code,
        payload.notes,
    )


@router.get("/availability", response_model=schemas.AvailabilityResponse)
def get_availability(
    date: str = Query(..., description="Date in YYYY-MM-DD format"),
    service_code: str | None = None,
    location_code: str | None = None,
    service: ReservationService = Depends(get_reservation_service),
) -> schemas.AvailabilityResponse:
    """List open slots for a date."""
    return service.check_availability(date, service_code, location_code)


def _ensure_patient_access(user: User, national_id: str) -> None:
    if has_role(user, "operator"):
        return
    if user.national_id != national_id.strip():
        raise NotAuthorized("You can only manage your own appointments.")


@router.get(
    "/patients/{national_id}/appointments",
    response_model=schemas.PatientAppointmentList,
)
def list_patient_appointments(
    national_id: str,
    limit: int = Query(5, ge=1, le=50),
    user: User = Depends(get_current_user),
    service: ReservationService = Depends(get_reservation_service),
) -> schemas.PatientAppointmentList:
    """Upcoming appointments of a patient; patients only see their own."""
    _ensure_patient_access(user, national_id)
    return service.list_patient_appointments(national_id, limit)


@router.post(
    "/appointments/{appointment_id}/cancel", response_model=schemas.CancelResponse
)
def cancel_appointment(
    appointment_id: int,
    payload: schemas.CancelRequest,
    user: User = Depends(get_current_user),
    service: ReservationService = Depends(get_reservation_service),
) -> schemas.CancelResponse:
    """Cancel an appointment on behalf of its patient."""
    _ensure_patient_access(user, payload.patient_national_id)
    return service.cancel_appointment(
        appointment_id, payload.patient_national_id, payload.reason
    )
