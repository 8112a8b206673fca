import pytest


def _handoff(client, session_id, **extra):
    res = client.post("/api/livechat/handoff", json={"session_id": session_id, **extra})
    assert res.status_code == 200
    return res.json()


def test_handoff_is_public_and_queued(client):
    first = _handoff(client, "rest-1", user_name="Marta")
    second = _handoff(client, "rest-2", reason="Prices")

    assert first["success"] is True
    assert first["state"] == "WAITING_FOR_OPERATOR"
    assert (first["queue_position"], second["queue_position"]) == (1, 2)


@pytest.mark.parametrize(
    "path",
    [
        "/api/livechat/pending",
        "/api/livechat/stats",
        "/api/livechat/conversations/mine",
    ],
)
def test_operator_endpoints_require_token(client, lab_db, path):
    missing = client.get(path)
    invalid = client.get(path, headers={"Authorization": "Bearer invalid"})
    patient = client.get(path, headers=lab_db.header("patient"))
    operator = client.get(path, headers=lab_db.header("operator"))

    assert missing.status_code == 401
    assert missing.json() == {
        "success": False,
        "error_code": "NotAuthenticated",
        "message": "Authorization header missing.",
    }
    assert invalid.status_code == 401
    assert invalid.json()["error_code"] == "NotAuthenticated"
    assert patient.status_code == 403
    assert patient.json()["error_code"] == "NotAuthorized"
    assert patient.json()["success"] is False
    assert operator.status_code == 200


def test_inactive_user_token_is_rejected(client, lab_db):
    res = client.get("/api/livechat/pending", headers=lab_db.header("inactive"))

    assert res.status_code == 401
    assert res.json()["error_code"] == "NotAuthenticated"


def test_pending_list_and_claim(client, lab_db):
    handoff = _handoff(client, "rest-claim", user_name="Marta")
    conversation_id = handoff["conversation_id"]

    pending = client.get("/api/livechat/pending", headers=lab_db.header("operator")).json()
    claim = client.post(
        f"/api/livechat/conversations/{conversation_id}/claim",
        headers=lab_db.header("operator"),
    )
    second = client.post(
        f"/api/livechat/conversations/{conversation_id}/claim",
        headers=lab_db.header("operator2"),
    )
    mine = client.get(
        "/api/livechat/conversations/mine", headers=lab_db.header("operator")
    ).json()

    assert pending["total"] == 1
    assert pending["items"][0]["user_name"] == "Marta"
    assert claim.status_code == 200
    assert claim.json()["conversation"]["state"] == "ASSIGNED"
    assert claim.json()["operator_name"] == "Olga Vera"
    assert second.status_code == 409
    assert second.json()["error_code"] == "AlreadyAssigned"
    assert [c["id"] for c in mine["items"]] == [conversation_id]


def test_claim_unknown_conversation(client, lab_db):
    res = client.post(
        "/api/livechat/conversations/9999/claim", headers=lab_db.header("operator")
    )

    assert res.status_code == 404
    assert res.json()["error_code"] == "ConversationNotFound"


def test_messages_and_close(client, lab_db):
    conversation_id = _handoff(client, "rest-msg")["conversation_id"]
    client.post(
        f"/api/livechat/conversations/{conversation_id}/claim",
        headers=lab_db.header("operator"),
    )

    posted = client.post(
        f"/api/livechat/conversations/{conversation_id}/messages",
        json={"content": "  How can I help?  "},
        headers=lab_db.header("operator"),
    )
    foreign = client.post(
        f"/api/livechat/conversations/{conversation_id}/messages",
        json={"content": "hello"},
        headers=lab_db.header("operator2"),
    )
    blank = client.post(
        f"/api/livechat/conversations/{conversation_id}/messages",
        json={"content": "   "},
        headers=lab_db.header("operator"),
    )
    history = client.get(
        f"/api/livechat/conversations/{conversation_id}/messages",
        headers=lab_db.header("operator"),
    ).json()
    closed = client.post(
        f"/api/livechat/conversations/{conversation_id}/close",
        headers=lab_db.header("operator"),
    )
    closed_again = client.post(
        f"/api/livechat/conversations/{conversation_id}/close",
        headers=lab_db.header("operator"),
    )

    assert posted.status_code == 200
    assert posted.json()["message"]["content"] == "How can I help?"
    assert posted.json()["message"]["sender_name"] == "Olga Vera"
    assert foreign.status_code == 403
    assert foreign.json()["error_code"] == "NotAuthorized"
    assert blank.status_code == 422
    assert blank.json()["error_code"] == "InvalidRequest"
    assert [m["sender_role"] for m in history["items"]] == ["SYSTEM", "SYSTEM", "OPERATOR"]
    assert closed.status_code == 200
    assert closed.json()["state"] == "CLOSED"
    assert closed_again.status_code == 409
    assert closed_again.json()["error_code"] == "ConversationClosed"


def test_stats_reflect_queue(client, lab_db):
    _handoff(client, "rest-s1")
    claimed = _handoff(client, "rest-s2")["conversation_id"]
    client.post(
        f"/api/livechat/conversations/{claimed}/claim", headers=lab_db.header("admin")
    )

    stats = client.get("/api/livechat/stats", headers=lab_db.header("admin")).json()

    assert stats["pending"] == 1
    assert stats["assigned"] == 1
    assert stats["closed_today"] == 0


def test_handoff_takes_registered_user_from_token(client, lab_db):
    res = client.post(
        "/api/livechat/handoff",
        json={"session_id": "rest-registered"},
        headers=lab_db.header("patient"),
    )
    pending = client.get("/api/livechat/pending", headers=lab_db.header("operator")).json()

    assert res.status_code == 200
    assert pending["items"][0]["user_id"] == lab_db.users["patient"]
    assert pending["items"][0]["user_name"] == "Ana Perez"


def test_handoff_rejects_user_id_not_backed_by_token(client, lab_db):
    anonymous = client.post(
        "/api/livechat/handoff",
        json={"session_id": "rest-spoof", "user_id": lab_db.users["patient"]},
    )
    other = client.post(
        "/api/livechat/handoff",
        json={"session_id": "rest-spoof", "user_id": lab_db.users["patient"]},
        headers=lab_db.header("patient2"),
    )
    pending = client.get("/api/livechat/pending", headers=lab_db.header("operator")).json()

    assert anonymous.status_code == 403
    assert anonymous.json()["error_code"] == "NotAuthorized"
    assert other.status_code == 403
    assert pending["total"] == 0


def test_handoff_with_invalid_token_is_rejected(client):
    res = client.post(
        "/api/livechat/handoff",
        json={"session_id": "rest-bad-token"},
        headers={"Authorization": "Bearer invalid"},
    )

    assert res.status_code == 401
    assert res.json()["error_code"] == "NotAuthenticated"


def test_handoff_validation_errors_use_envelope(client):
    res = client.post("/api/livechat/handoff", json={"user_name": "No session"})

    body = res.json()
    assert res.status_code == 422
    assert body["success"] is False
    assert body["error_code"] == "InvalidRequest"
    assert "session_id" in body["message"]


def test_claiming_closed_conversation_reports_closed(client, lab_db):
    conversation_id = _handoff(client, "rest-closed")["conversation_id"]
    client.post(
        f"/api/livechat/conversations/{conversation_id}/close",
        headers=lab_db.header("operator"),
    )

    res = client.post(
        f"/api/livechat/conversations/{conversation_id}/claim",
        headers=lab_db.header("operator2"),
    )

    assert res.status_code == 409
    assert res.json()["error_code"] == "ConversationClosed"
