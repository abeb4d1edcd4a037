"""Integration tests for the escalation HTTP API."""

from httpx import AsyncClient

from conftest import ADMIN, LEAD, MANAGER, MEMBER, NO_NUMBER, PRINCIPAL, TICKET_ID, as_user


async def _raise(client: AsyncClient, **overrides) -> dict:
    body = {
        "title": "Water cooler on floor 2 leaking",
        "description": "Puddle near the staff room every afternoon.",
        "l1_assignee_id": MANAGER,
        "involved_user_ids": [MEMBER],
        "involved_student_ids": [1],
    }
    body.update(overrides)
    response = await client.post("/escalations/matters", json=body, headers=as_user(PRINCIPAL))
    assert response.status_code == 201, response.text
    return response.json()


# =============================================================================
# Health & Root
# =============================================================================

async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


async def test_root(client):
    response = await client.get("/")
    assert response.status_code == 200
    assert "escalations" in response.json()["modules"]


# =============================================================================
# Authentication & errors
# =============================================================================

async def test_missing_user_header_is_unauthenticated(client):
    response = await client.get("/escalations/counts")
    assert response.status_code == 401
    body = response.json()
    assert body["error"] == "unauthenticated"
    assert body["correlation_id"]


async def test_unknown_user_is_unauthenticated(client):
    response = await client.get("/escalations/counts", headers=as_user(999))
    assert response.status_code == 401


async def test_correlation_id_is_echoed(client):
    response = await client.get(
        "/escalations/matters/404",
        headers={**as_user(ADMIN), "X-Correlation-ID": "req-42"},
    )
    assert response.status_code == 404
    assert response.headers["X-Correlation-ID"] == "req-42"
    assert response.json() == {
        "error": "not-found",
        "detail": response.json()["detail"],
        "correlation_id": "req-42",
    }


async def test_malformed_body_is_validation(client):
    response = await client.post(
        "/escalations/matters",
        json={"title": "Leak", "l1_assignee_id": "someone"},
        headers=as_user(PRINCIPAL),
    )
    assert response.status_code == 422
    assert response.json()["error"] == "validation"


async def test_unknown_section_is_validation(client):
    response = await client.get("/escalations/matters?section=everything", headers=as_user(ADMIN))
    assert response.status_code == 422
    assert response.json()["error"] == "validation"


# =============================================================================
# Lifecycle
# =============================================================================

async def test_create_matter(client, twilio_requests):
    body = await _raise(client)

    assert body["matter"]["status"] == "OPEN"
    assert body["matter"]["level"] == 1
    assert body["matter"]["current_assignee_id"] == MANAGER
    assert len(body["step_ids"]) == 1
    assert body["deliveries"] == [{"recipient_id": MANAGER, "status": "sent", "error": None}]
    assert twilio_requests[0]["To"] == "whatsapp:+919800000002"


async def test_create_by_member_is_forbidden(client):
    response = await client.post(
        "/escalations/matters",
        json={"title": "Water cooler leaking", "l1_assignee_id": MANAGER},
        headers=as_user(MEMBER),
    )
    assert response.status_code == 403
    assert response.json()["error"] == "forbidden"


async def test_create_with_member_as_assignee_is_invalid_target(client):
    response = await client.post(
        "/escalations/matters",
        json={"title": "Water cooler leaking", "l1_assignee_id": MEMBER},
        headers=as_user(PRINCIPAL),
    )
    assert response.status_code == 422
    assert response.json()["error"] == "invalid-target"


async def test_escalate_then_close(client):
    matter_id = (await _raise(client))["matter"]["id"]

    response = await client.post(
        f"/escalations/matters/{matter_id}/escalate",
        json={"l2_assignee_id": LEAD, "note": "Needs plumber budget"},
        headers=as_user(MANAGER),
    )
    assert response.status_code == 200
    assert response.json()["matter"]["status"] == "ESCALATED"
    assert response.json()["matter"]["level"] == 2

    response = await client.post(
        f"/escalations/matters/{matter_id}/close",
        json={"note": "Pipe replaced"},
        headers=as_user(LEAD),
    )
    assert response.status_code == 200
    matter = response.json()["matter"]
    assert matter["status"] == "CLOSED"
    assert matter["current_assignee_id"] is None


async def test_close_requires_note(client):
    matter_id = (await _raise(client))["matter"]["id"]
    response = await client.post(
        f"/escalations/matters/{matter_id}/close",
        json={"note": "   "},
        headers=as_user(MANAGER),
    )
    assert response.status_code == 422
    assert response.json()["error"] == "validation"


async def test_withdraw_by_assignee_is_forbidden(client):
    matter_id = (await _raise(client))["matter"]["id"]
    response = await client.post(
        f"/escalations/matters/{matter_id}/withdraw",
        json={"note": "Not mine to withdraw"},
        headers=as_user(MANAGER),
    )
    assert response.status_code == 403


async def test_closed_matter_rejects_hold(client):
    matter_id = (await _raise(client))["matter"]["id"]
    await client.post(
        f"/escalations/matters/{matter_id}/withdraw",
        json={"note": "Raised by mistake"},
        headers=as_user(PRINCIPAL),
    )

    response = await client.post(
        f"/escalations/matters/{matter_id}/hold",
        json={},
        headers=as_user(MANAGER),
    )
    assert response.status_code == 409
    assert response.json()["error"] == "already-closed"


async def test_second_escalation_is_invalid_state(client):
    matter_id = (await _raise(client))["matter"]["id"]
    await client.post(
        f"/escalations/matters/{matter_id}/escalate",
        json={"l2_assignee_id": LEAD},
        headers=as_user(MANAGER),
    )
    response = await client.post(
        f"/escalations/matters/{matter_id}/escalate",
        json={"l2_assignee_id": MANAGER},
        headers=as_user(LEAD),
    )
    assert response.status_code == 409
    assert response.json()["error"] == "invalid-state"


async def test_progress_by_member(client):
    matter_id = (await _raise(client))["matter"]["id"]
    response = await client.post(
        f"/escalations/matters/{matter_id}/progress",
        json={"note": "Bucket placed under the cooler"},
        headers=as_user(MEMBER),
    )
    assert response.status_code == 200
    assert response.json()["matter"]["status"] == "OPEN"


async def test_remind_reports_per_recipient(client, twilio_requests):
    matter_id = (await _raise(client, involved_user_ids=[MEMBER, NO_NUMBER]))["matter"]["id"]
    twilio_requests.clear()

    response = await client.post(
        f"/escalations/matters/{matter_id}/remind",
        json={"member_ids": [MEMBER, NO_NUMBER]},
        headers=as_user(PRINCIPAL),
    )
    assert response.status_code == 200
    body = response.json()
    assert body["sent_count"] == 1
    assert body["failed_count"] == 1
    assert len(body["step_ids"]) == 2
    failed = [r for r in body["results"] if r["status"] == "failed"]
    assert failed == [{"recipient_id": NO_NUMBER, "status": "failed", "error": "missing_whatsapp_number"}]
    assert len(twilio_requests) == 1


# =============================================================================
# Queries
# =============================================================================

async def test_sections_and_counts(client):
    open_id = (await _raise(client))["matter"]["id"]
    closed_id = (await _raise(client, title="Gate 3 lock jammed"))["matter"]["id"]
    await client.post(
        f"/escalations/matters/{closed_id}/close",
        json={"note": "Lock oiled"},
        headers=as_user(MANAGER),
    )

    response = await client.get("/escalations/matters?section=forYou", headers=as_user(MANAGER))
    assert [m["id"] for m in response.json()["matters"]] == [open_id]

    response = await client.get("/escalations/matters?section=allClosed", headers=as_user(ADMIN))
    assert [m["id"] for m in response.json()["matters"]] == [closed_id]

    response = await client.get("/escalations/counts", headers=as_user(PRINCIPAL))
    assert response.json() == {
        "for_you_count": 0,
        "raised_by_me_count": 2,
        "open_total_count": 1,
        "closed_total_count": 1,
    }


async def test_matter_detail_timeline(client):
    matter_id = (await _raise(client))["matter"]["id"]
    await client.post(
        f"/escalations/matters/{matter_id}/hold",
        json={"note": "Waiting for spare part"},
        headers=as_user(MANAGER),
    )

    response = await client.get(f"/escalations/matters/{matter_id}", headers=as_user(MEMBER))
    assert response.status_code == 200
    body = response.json()
    assert [s["action"] for s in body["steps"]] == ["CREATED", "PROGRESS"]
    assert body["steps"][1]["note"] == "On hold: Waiting for spare part"
    assert body["steps"][0]["from_user_name"] == "Priya Principal"
    assert body["replayed_status"] == "ON_HOLD"
    assert body["students"][0]["name"] == "Ravi Kumar"


async def test_raise_from_ticket(client):
    response = await client.post(
        f"/escalations/tickets/{TICKET_ID}/raise",
        json={"to_user_id": MANAGER, "note": "Exams this week"},
        headers=as_user(PRINCIPAL),
    )
    assert response.status_code == 201
    assert response.json()["matter"]["ticket_id"] == TICKET_ID

    response = await client.post(
        f"/escalations/tickets/{TICKET_ID}/raise",
        json={"to_user_id": MANAGER},
        headers=as_user(PRINCIPAL),
    )
    assert response.status_code == 409


# =============================================================================
# Day-close gate
# =============================================================================

async def test_day_close_gate_flow(client):
    await _raise(client)

    response = await client.get("/escalations/day-close/paused", headers=as_user(MEMBER))
    assert response.json() == {"user_id": MEMBER, "paused": True, "open_count": 1, "override_active": False}

    response = await client.post(
        "/escalations/day-close/overrides",
        json={"user_id": MEMBER, "reason": "Leaving for sports meet"},
        headers=as_user(ADMIN),
    )
    assert response.status_code == 201
    assert response.json()["active"] is True

    response = await client.get(
        f"/escalations/day-close/paused?user_id={MEMBER}", headers=as_user(ADMIN)
    )
    assert response.json()["paused"] is False

    response = await client.post(
        "/escalations/day-close/overrides/revoke",
        json={"user_id": MEMBER},
        headers=as_user(ADMIN),
    )
    assert response.status_code == 200
    assert response.json()["revoked"] == 1
    assert response.json()["status"]["paused"] is True

    response = await client.get(
        f"/escalations/day-close/overrides?user_id={MEMBER}", headers=as_user(ADMIN)
    )
    assert [o["active"] for o in response.json()["overrides"]] == [False]


async def test_grant_override_requires_capability(client):
    response = await client.post(
        "/escalations/day-close/overrides",
        json={"user_id": MEMBER},
        headers=as_user(MANAGER),
    )
    assert response.status_code == 403
