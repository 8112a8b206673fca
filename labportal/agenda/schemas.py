"""Pydantic schemas for the agenda (slot reservation) APIs."""

from __future__ import annotations

import datetime as dt
from typing import Literal

from pydantic import BaseModel, Field


class ReservationRequest(BaseModel):
    """Request to book an appointment for a patient."""

    patient_national_id: str = Field(min_length=1, max_length=20)
    date: str  # YYYY-MM-DD, validated by the service
    time: str  # HH:MM, 24-hour
    service_code: str | None = None
    location_code: str | None = None
    notes: str | None = Field(default=None, max_length=1000)


class AppointmentConfirmation(BaseModel):
    """A booked appointment as returned to the caller."""

    appointment_id: int
    date: dt.date
    time: str
    service: str
    location: str
    status: str
    requested_time: str | None = None
    time_substituted: bool = False


class ReservationResponse(BaseModel):
    """Either a confirmed booking or the zero-result shape.

    ``outcome == "no_availability"`` is not an error: the caller should offer
    the patient another date. ``nearest_time`` is set when the slot list was
    not empty but the requested time could not be honored.
    """

    success: bool = True
    outcome: Literal["booked", "no_availability"]
    message: str
    appointment: AppointmentConfirmation | None = None
    nearest_time: str | None = None


class AvailableSlot(BaseModel):
    slot_id: int
    time: str
    end_time: str
    remaining_capacity: int
    service: str
    location: str


class AvailabilityResponse(BaseModel):
    success: bool = True
    date: dt.date
    message: str
    slots: list[AvailableSlot] = Field(default_factory=list)


class CancelRequest(BaseModel):
    """Request to cancel an appointment owned by a patient."""

    patient_national_id: str = Field(min_length=1, max_length=20)
    reason: str | None = Field(default=None, max_length=500)


class CancelResponse(BaseModel):
    success: bool = True
    appointment_id: int
    status: str
    cancelled_at: dt.datetime
    capacity_restored: bool
    message: str


class PatientAppointment(BaseModel):
    appointment_id: int
    date: dt.date
    time: str
    service: str
    location: str
    status: str


class PatientAppointmentList(BaseModel):
    success: bool = True
    items: list[PatientAppointment]
    total: int
