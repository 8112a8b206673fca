def _reserve(client, lab_db, day, time="08:00", who="patient", **extra):
    payload = {
        "patient_national_id": lab_db.national_ids[who],
        "date": day.isoformat() if hasattr(day, "isoformat") else day,
        "time": time,
    }
    payload.update(extra)
    return client.post("/api/agenda/reservations", json=payload)


def test_reservation_books_requested_time(client, lab_db):
    day = lab_db.day(2)
    slot_id = lab_db.add_slot(day, "08:00", capacity=2)

    res = _reserve(client, lab_db, day, notes="fasting")

    assert res.status_code == 200
    body = res.json()
    assert body["success"] is True
    assert body["outcome"] == "booked"
    assert body["appointment"]["time"] == "08:00"
    assert body["appointment"]["date"] == day.isoformat()
    assert body["appointment"]["service"] == "Clinical Laboratory"
    assert body["appointment"]["time_substituted"] is False
    assert lab_db.remaining(slot_id) == 1
    assert "X-Request-Id" in res.headers


def test_reservation_reports_substituted_time(client, lab_db):
    day = lab_db.day(3)
    lab_db.add_slot(day, "09:30")

    body = _reserve(client, lab_db, day, time="07:00").json()

    assert body["outcome"] == "booked"
    assert body["appointment"]["time"] == "09:30"
    assert body["appointment"]["requested_time"] == "07:00"
    assert body["appointment"]["time_substituted"] is True


def test_full_day_is_not_an_error(client, lab_db):
    day = lab_db.day(4)
    lab_db.add_slot(day, "08:00", remaining=0)

    res = _reserve(client, lab_db, day)

    assert res.status_code == 200
    assert res.json()["outcome"] == "no_availability"
    assert res.json()["appointment"] is None


def test_holiday_is_not_an_error(client, lab_db):
    day = lab_db.day(5)
    lab_db.add_slot(day, "08:00")
    lab_db.add_holiday(day, "Founders Day")

    body = _reserve(client, lab_db, day).json()

    assert body["outcome"] == "no_availability"
    assert "Founders Day" in body["message"]


def test_error_envelopes(client, lab_db):
    day = lab_db.day(1)
    lab_db.add_slot(day, "08:00", capacity=3)

    invalid_date = _reserve(client, lab_db, "2024-13-01")
    invalid_time = _reserve(client, lab_db, day, time="8am")
    past = _reserve(client, lab_db, lab_db.day(-1))
    unknown = client.post(
        "/api/agenda/reservations",
        json={"patient_national_id": "0000000000", "date": day.isoformat(), "time": "08:00"},
    )
    _reserve(client, lab_db, day)
    duplicate = _reserve(client, lab_db, day)

    assert (invalid_date.status_code, invalid_date.json()["error_code"]) == (422, "InvalidDate")
    assert (invalid_time.status_code, invalid_time.json()["error_code"]) == (422, "InvalidTime")
    assert (past.status_code, past.json()["error_code"]) == (422, "PastDate")
    assert (unknown.status_code, unknown.json()["error_code"]) == (404, "PatientNotFound")
    assert (duplicate.status_code, duplicate.json()["error_code"]) == (409, "DuplicateBooking")
    for response in (invalid_date, invalid_time, past, unknown, duplicate):
        assert response.json()["success"] is False
        assert response.json()["message"]


def test_reservation_body_validation(client):
    res = client.post("/api/agenda/reservations", json={"date": "2030-01-01"})

    assert res.status_code == 422
    assert res.json()["success"] is False
    assert res.json()["error_code"] == "InvalidRequest"
    assert "patient_national_id" in res.json()["message"]


def test_availability_lists_open_slots(client, lab_db):
    day = lab_db.day(2)
    lab_db.add_slot(day, "10:00", capacity=4)
    lab_db.add_slot(day, "08:00", capacity=2)
    lab_db.add_slot(day, "09:00", remaining=0)
    lab_db.add_slot(day, "11:00", service="IMG")

    res = client.get("/api/agenda/availability", params={"date": day.isoformat()})
    filtered = client.get(
        "/api/agenda/availability",
        params={"date": day.isoformat(), "service_code": "IMG"},
    )

    assert res.status_code == 200
    assert [slot["time"] for slot in res.json()["slots"]] == ["08:00", "10:00", "11:00"]
    assert [slot["service"] for slot in filtered.json()["slots"]] == ["Imaging"]


def test_availability_rejects_bad_date(client):
    res = client.get("/api/agenda/availability", params={"date": "tomorrow"})

    assert res.status_code == 422
    assert res.json()["error_code"] == "InvalidDate"


def test_patient_appointments_and_cancel(client, lab_db):
    day = lab_db.day(6)
    slot_id = lab_db.add_slot(day, "08:00")
    appointment_id = _reserve(client, lab_db, day).json()["appointment"]["appointment_id"]

    listing = client.get(
        f"/api/agenda/patients/{lab_db.national_ids['patient']}/appointments",
        headers=lab_db.header("patient"),
    )
    foreign = client.post(
        f"/api/agenda/appointments/{appointment_id}/cancel",
        json={"patient_national_id": lab_db.national_ids["patient2"]},
        headers=lab_db.header("patient2"),
    )
    cancelled = client.post(
        f"/api/agenda/appointments/{appointment_id}/cancel",
        json={"patient_national_id": lab_db.national_ids["patient"], "reason": "travel"},
        headers=lab_db.header("patient"),
    )
    again = client.post(
        f"/api/agenda/appointments/{appointment_id}/cancel",
        json={"patient_national_id": lab_db.national_ids["patient"]},
        headers=lab_db.header("patient"),
    )

    assert listing.json()["total"] == 1
    assert listing.json()["items"][0]["appointment_id"] == appointment_id
    assert foreign.status_code == 404
    assert foreign.json()["error_code"] == "AppointmentNotFound"
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "CANCELLED"
    assert cancelled.json()["capacity_restored"] is True
    assert lab_db.remaining(slot_id) == 1
    assert again.status_code == 409
    assert again.json()["error_code"] == "AppointmentNotCancellable"


def test_unknown_patient_listing(client, lab_db):
    res = client.get(
        "/api/agenda/patients/999/appointments", headers=lab_db.header("operator")
    )

    assert res.status_code == 404
    assert res.json() == {
        "success": False,
        "error_code": "PatientNotFound",
        "message": res.json()["message"],
    }


def test_reservations_are_rate_limited(client, lab_db, monkeypatch):
    from labportal.core.settings import reset_settings_cache

    monkeypatch.setenv("RESERVATION_RATE_LIMIT", "2/minute")
    reset_settings_cache()
    day = lab_db.day(2)
    headers = {"X-Forwarded-For": "10.9.8.7"}
    payload = {"patient_national_id": "0000000000", "date": day.isoformat(), "time": "08:00"}

    responses = [
        client.post("/api/agenda/reservations", json=payload, headers=headers)
        for _ in range(3)
    ]

    assert [r.status_code for r in responses] == [404, 404, 429]
    assert responses[-1].json()["success"] is False
    assert responses[-1].json()["error_code"] == "RateLimited"


def test_patient_endpoints_require_matching_patient_or_staff(client, lab_db):
    day = lab_db.day(6)
    lab_db.add_slot(day, "08:00")
    appointment_id = _reserve(client, lab_db, day).json()["appointment"]["appointment_id"]
    path = f"/api/agenda/patients/{lab_db.national_ids['patient']}/appointments"

    anonymous = client.get(path)
    other_patient = client.get(path, headers=lab_db.header("patient2"))
    anonymous_cancel = client.post(
        f"/api/agenda/appointments/{appointment_id}/cancel",
        json={"patient_national_id": lab_db.national_ids["patient"]},
    )
    foreign_cancel = client.post(
        f"/api/agenda/appointments/{appointment_id}/cancel",
        json={"patient_national_id": lab_db.national_ids["patient"]},
        headers=lab_db.header("patient2"),
    )
    operator = client.get(path, headers=lab_db.header("operator"))

    assert anonymous.status_code == 401
    assert anonymous.json()["error_code"] == "NotAuthenticated"
    assert other_patient.status_code == 403
    assert other_patient.json()["error_code"] == "NotAuthorized"
    assert operator.status_code == 200
    assert operator.json()["total"] == 1
    assert anonymous_cancel.status_code == 401
    assert foreign_cancel.status_code == 403


def test_operator_may_cancel_on_behalf_of_patient(client, lab_db):
    day = lab_db.day(6)
    slot_id = lab_db.add_slot(day, "08:00")
    appointment_id = _reserve(client, lab_db, day).json()["appointment"]["appointment_id"]

    res = client.post(
        f"/api/agenda/appointments/{appointment_id}/cancel",
        json={"patient_national_id": lab_db.national_ids["patient"]},
        headers=lab_db.header("admin"),
    )

    assert res.status_code == 200
    assert res.json()["status"] == "CANCELLED"
    assert lab_db.remaining(slot_id) == 1
