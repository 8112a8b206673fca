import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from labportal.core import errors


@pytest.mark.parametrize(
    ("error_cls", "status_code"),
    [
        (errors.PatientNotFound, 404),
        (errors.InvalidDate, 422),
        (errors.InvalidTime, 422),
        (errors.PastDate, 422),
        (errors.DuplicateBooking, 409),
        (errors.SlotNoLongerAvailable, 409),
        (errors.AppointmentNotFound, 404),
        (errors.AppointmentNotCancellable, 409),
        (errors.ConversationNotFound, 404),
        (errors.ConversationClosed, 409),
        (errors.AlreadyAssigned, 409),
        (errors.NotAuthorized, 403),
        (errors.NotAuthenticated, 401),
        (errors.InvalidRequest, 422),
        (errors.RateLimited, 429),
        (errors.InternalError, 500),
    ],
)
def test_errors_render_failure_envelope(error_cls, status_code):
    app = FastAPI()
    errors.register_exception_handlers(app)

    @app.get("/boom")
    async def boom():
        raise error_cls()

    res = TestClient(app).get("/boom")

    assert res.status_code == status_code
    assert res.json() == {
        "success": False,
        "error_code": error_cls.__name__,
        "message": error_cls.default_message,
    }


def test_custom_message_overrides_default():
    error = errors.NotAuthorized("This conversation is not assigned to you.")

    assert error.code == "NotAuthorized"
    assert error.to_payload()["message"] == "This conversation is not assigned to you."
    assert str(error) == "This conversation is not assigned to you."


def test_request_validation_uses_failure_envelope():
    app = FastAPI()
    errors.register_exception_handlers(app)

    @app.get("/slots")
    async def slots(limit: int):
        return {"limit": limit}

    res = TestClient(app).get("/slots", params={"limit": "many"})

    body = res.json()
    assert res.status_code == 422
    assert body["success"] is False
    assert body["error_code"] == "InvalidRequest"
    assert body["message"].startswith("Invalid request. query.limit:")
