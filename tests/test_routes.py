"""Tests for API routes."""

from datetime import UTC, datetime, timedelta
from urllib.parse import parse_qs, urlparse
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session

from app.calendar import vault
from app.calendar.sync_state import ChannelMeta, commit_cursor
from app.core.config import settings
from app.core.errors import RefreshFailed
from app.models import Resource, ScheduleEvent
from app.routes import auth as auth_routes


def event_payload(**overrides) -> dict:
    payload = {
        "consultant_id": "consultant-1",
        "title": "Kickoff",
        "start_at": "2026-03-02T10:00:00Z",
        "end_at": "2026-03-02T11:00:00Z",
        "timezone": "UTC",
        "clinic_ids": ["clinic-1", "clinic-2"],
    }
    payload.update(overrides)
    return payload


def parse_time(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class TestHealthEndpoint:
    """Tests for the health check endpoint."""

    def test_health_check(self, client: TestClient):
        """Test the health endpoint returns OK."""
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestEventsRoutes:
    """Tests for event-related routes."""

    def test_create_event(self, client: TestClient):
        """Test creating an event returns it with its attendees."""
        response = client.post("/events", json=event_payload())
        assert response.status_code == 201

        data = response.json()
        assert data["status"] == "pending_confirmation"
        assert parse_time(data["start_at"]) == datetime(2026, 3, 2, 10, 0, tzinfo=UTC)
        assert sorted(a["clinic_id"] for a in data["attendees"]) == ["clinic-1", "clinic-2"]

    def test_create_overlapping_event(self, client: TestClient):
        """Test the second booking of the same slot is a conflict."""
        client.post("/events", json=event_payload())

        response = client.post(
            "/events", json=event_payload(start_at="2026-03-02T10:30:00Z", end_at="2026-03-02T11:30:00Z")
        )
        assert response.status_code == 409
        assert response.json() == {"detail": "Time already taken.", "code": "scheduling_conflict"}

    def test_create_without_clinics(self, client: TestClient):
        """Test 422 when no clinic attends."""
        response = client.post("/events", json=event_payload(clinic_ids=[]))
        assert response.status_code == 422
        assert response.json()["code"] == "validation_error"

    def test_create_with_missing_field(self, client: TestClient):
        """Test 422 for a payload missing a field."""
        payload = event_payload()
        del payload["title"]
        assert client.post("/events", json=payload).status_code == 422

    def test_get_event(self, client: TestClient, make_event):
        """Test retrieving an event."""
        event = make_event()
        response = client.get(f"/events/{event.id}")
        assert response.status_code == 200
        assert response.json()["title"] == "Onboarding session"

    def test_event_not_found(self, client: TestClient):
        """Test 404 for non-existent event."""
        response = client.get(f"/events/{uuid4()}")
        assert response.status_code == 404
        assert response.json()["code"] == "not_found"

    def test_list_events_for_resource(self, client: TestClient, make_event):
        """Test a resource agenda with expanded occurrences."""
        event = make_event(recurrence_rule="FREQ=DAILY")

        response = client.get(
            "/events",
            params={"start": "2026-03-02T00:00:00Z", "end": "2026-03-04T00:00:00Z", "resource_id": "consultant-1"},
        )
        assert response.status_code == 200
        keys = [entry["key"] for entry in response.json()]
        assert keys == [f"{event.id}:20260302T100000Z", f"{event.id}:20260303T100000Z"]

    def test_update_event(self, client: TestClient, make_event):
        """Test updating an event."""
        event = make_event()

        response = client.patch(
            f"/events/{event.id}", json={"start_at": "2026-03-02T14:00:00Z", "end_at": "2026-03-02T15:00:00Z"}
        )
        assert response.status_code == 200
        assert parse_time(response.json()["start_at"]) == datetime(2026, 3, 2, 14, 0, tzinfo=UTC)

    def test_update_into_conflict(self, client: TestClient, make_event):
        """Test 409 when an update overlaps another event."""
        make_event(start_hour=10)
        other = make_event(start_hour=14)

        response = client.patch(
            f"/events/{other.id}", json={"start_at": "2026-03-02T10:00:00Z", "end_at": "2026-03-02T11:00:00Z"}
        )
        assert response.status_code == 409

    def test_cancel_event(self, client: TestClient, make_event):
        """Test cancelling an event and editing it afterwards."""
        event = make_event()

        response = client.post(f"/events/{event.id}/cancel", params={"cancelled_by": "admin-1"})
        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"

        response = client.patch(f"/events/{event.id}", json={"title": "Revived"})
        assert response.status_code == 409
        assert response.json()["code"] == "invalid_transition"

    def test_delete_event(self, client: TestClient, make_event, session: Session):
        """Test deleting an event."""
        event = make_event()
        event_id = event.id

        response = client.delete(f"/events/{event_id}")
        assert response.status_code == 204

        session.expire_all()
        assert session.get(ScheduleEvent, event_id) is None
        assert client.get(f"/events/{event_id}").status_code == 404

    def test_confirm_event(self, client: TestClient, make_event):
        """Test confirming attendance."""
        event = make_event()

        response = client.post(
            f"/events/{event.id}/confirm",
            json={"actor_id": "user-1", "decision": "confirmed", "clinic_id": "clinic-1"},
        )
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "confirmed"
        assert data["attendees"][0]["confirmed_by"] == "user-1"

    def test_confirm_with_invalid_decision(self, client: TestClient, make_event):
        """Test 422 for an unknown decision."""
        event = make_event()
        response = client.post(f"/events/{event.id}/confirm", json={"actor_id": "user-1", "decision": "maybe"})
        assert response.status_code == 422

    def test_upcoming_events(self, client: TestClient, make_event):
        """Test listing events starting soon."""
        soon = datetime.now(UTC).replace(second=0, microsecond=0) + timedelta(minutes=20)
        make_event(start_hour=0, day=soon)

        response = client.get("/events/upcoming", params={"resource_id": "consultant-1", "minutes": 60})
        assert response.status_code == 200
        assert len(response.json()) == 1

    def test_suggest_slots(self, client: TestClient, make_event):
        """Test suggesting free slots."""
        make_event(start_hour=10)

        response = client.post(
            "/events/suggest-slots",
            json={
                "resource_id": "consultant-1",
                "duration_minutes": 60,
                "search_start": "2026-03-02T09:00:00Z",
                "search_end": "2026-03-02T12:00:00Z",
                "buffer_minutes": 15,
                "timezone": "UTC",
                "limit": 2,
            },
        )
        assert response.status_code == 200
        starts = [parse_time(slot["start_at"]) for slot in response.json()]
        assert starts == [datetime(2026, 3, 2, 9, 0, tzinfo=UTC), datetime(2026, 3, 2, 11, 15, tzinfo=UTC)]

    def test_suggest_slots_invalid_working_days(self, client: TestClient):
        """Test 422 for invalid working days."""
        response = client.post(
            "/events/suggest-slots",
            json={
                "resource_id": "consultant-1",
                "duration_minutes": 60,
                "search_start": "2026-03-02T09:00:00Z",
                "search_end": "2026-03-02T12:00:00Z",
                "working_days": [0, 8],
            },
        )
        assert response.status_code == 422


class TestChangeRequestRoutes:
    def test_reschedule_flow(self, client: TestClient, make_event):
        """Test requesting and accepting a reschedule."""
        event = make_event(clinic_ids=["clinic-1"])
        client.post(f"/events/{event.id}/confirm", json={"actor_id": "u", "decision": "confirmed", "clinic_id": "clinic-1"})

        response = client.post(
            f"/events/{event.id}/change-requests",
            json={
                "clinic_id": "clinic-1",
                "requested_by": "clinic-user",
                "reason": "Team offsite",
                "suggested_start_at": "2026-03-03T10:00:00Z",
                "suggested_end_at": "2026-03-03T11:00:00Z",
            },
        )
        assert response.status_code == 201
        request_id = response.json()["id"]
        assert client.get(f"/events/{event.id}").json()["status"] == "reschedule_requested"

        listed = client.get("/change-requests", params={"event_id": str(event.id)}).json()
        assert [r["id"] for r in listed] == [request_id]

        response = client.post(
            f"/change-requests/{request_id}/resolve", json={"outcome": "accepted", "handled_by": "admin-1"}
        )
        assert response.status_code == 200
        assert response.json()["status"] == "accepted"

        data = client.get(f"/events/{event.id}").json()
        assert parse_time(data["start_at"]) == datetime(2026, 3, 3, 10, 0, tzinfo=UTC)
        assert data["status"] == "confirmed"

        assert client.get("/change-requests").json() == []
        assert len(client.get("/change-requests", params={"status": "all"}).json()) == 1

    def test_request_from_uninvited_clinic(self, client: TestClient, make_event):
        """Test 422 for a clinic not invited."""
        event = make_event()
        response = client.post(
            f"/events/{event.id}/change-requests",
            json={"clinic_id": "clinic-9", "requested_by": "x", "reason": "Holiday"},
        )
        assert response.status_code == 422

    def test_resolve_unknown_request(self, client: TestClient):
        """Test 404 for an unknown change request."""
        response = client.post(
            f"/change-requests/{uuid4()}/resolve", json={"outcome": "rejected", "handled_by": "admin-1"}
        )
        assert response.status_code == 404


class TestSyncRoutes:
    def test_webhook_unknown_channel(self, client: TestClient):
        """Test that unknown channels are acknowledged."""
        response = client.post(
            "/sync/webhook",
            headers={"X-Goog-Channel-ID": "unknown", "X-Goog-Resource-ID": "r", "X-Goog-Resource-State": "exists"},
        )
        assert response.status_code == 200

    def test_webhook_without_headers(self, client: TestClient):
        """Test that a bare webhook call is acknowledged."""
        assert client.post("/sync/webhook").status_code == 200

    def test_webhook_runs_cycle(self, client: TestClient, session: Session, resource: Resource, connected):
        """Test that a change notification runs a sync cycle."""
        commit_cursor(
            session,
            resource.id,
            "cal-1",
            channel=ChannelMeta("channel-1", "resource-1", datetime.now(UTC) + timedelta(days=7)),
        )
        session.commit()

        response = client.post(
            "/sync/webhook",
            headers={"X-Goog-Channel-ID": "channel-1", "X-Goog-Resource-ID": "resource-1", "X-Goog-Resource-State": "exists"},
        )
        assert response.status_code == 200
        assert connected.events().list_calls[0]["calendarId"] == "cal-1"

    def test_sync_now(self, client: TestClient, resource: Resource, connected):
        """Test the manual sync endpoint."""
        response = client.post("/sync/now", json={"resource_id": resource.id})
        assert response.status_code == 200
        assert response.json()["ok"] is True

    def test_sync_now_requires_reconnect(self, client: TestClient, resource: Resource, fake_service):
        """Test 401 when the calendar must be reconnected."""
        response = client.post("/sync/now", json={"resource_id": resource.id})
        assert response.status_code == 401
        assert response.json()["code"] == "reconnect_calendar"

    def test_sync_now_unknown_resource(self, client: TestClient):
        """Test 404 for a resource without a calendar."""
        assert client.post("/sync/now", json={"resource_id": "ghost"}).status_code == 404

    def test_api_key_is_enforced(self, client: TestClient, resource: Resource, monkeypatch):
        """Test the internal API key guard."""
        monkeypatch.setattr(settings, "internal_api_key", "secret-key")

        assert client.post("/sync/now", json={"resource_id": resource.id}).status_code == 401
        response = client.post("/sync/renew", headers={"X-API-Key": "wrong"})
        assert response.status_code == 401

        response = client.post("/sync/renew", headers={"X-API-Key": "secret-key"})
        assert response.status_code == 200
        assert response.json() == {"ok": True, "processed": 0, "renewed": 0, "failed": 0}

    def test_sync_status(self, client: TestClient, resource: Resource):
        """Test the sync status endpoint."""
        response = client.get(f"/sync/status/{resource.id}")
        assert response.status_code == 200
        data = response.json()
        assert data["calendar_id"] == "cal-1"
        assert data["has_sync_token"] is False

    def test_sync_status_unknown_resource(self, client: TestClient):
        """Test 404 for sync status of an unknown resource."""
        assert client.get("/sync/status/ghost").status_code == 404


class TestAuthRoutes:
    def test_start_returns_consent_url(self, client: TestClient, resource: Resource):
        """Test the consent URL returned as JSON."""
        response = client.get(
            "/auth/google/start",
            params={"resource_id": resource.id, "return_to": "/settings"},
            headers={"Accept": "application/json"},
        )
        assert response.status_code == 200

        url = response.json()["url"]
        state = parse_qs(urlparse(url).query)["state"][0]
        payload = vault.verify_signed_state(state)
        assert payload["resource_id"] == resource.id
        assert payload["return_to"] == "/settings"

    def test_start_redirects(self, client: TestClient, resource: Resource):
        """Test the redirect to Google's consent page."""
        response = client.get("/auth/google/start", params={"resource_id": resource.id}, follow_redirects=False)
        assert response.status_code == 302
        assert response.headers["location"].startswith("https://accounts.google.com/")

    def test_start_rejects_offsite_return(self, client: TestClient, resource: Resource):
        """Test that offsite return paths are dropped."""
        response = client.get(
            "/auth/google/start",
            params={"resource_id": resource.id, "return_to": "//evil.example.com"},
            headers={"Accept": "application/json"},
        )
        state = parse_qs(urlparse(response.json()["url"]).query)["state"][0]
        assert vault.verify_signed_state(state)["return_to"] is None

    def test_start_unknown_resource(self, client: TestClient):
        """Test 404 when starting OAuth for an unknown resource."""
        assert client.get("/auth/google/start", params={"resource_id": "ghost"}).status_code == 404

    def test_callback_invalid_state(self, client: TestClient):
        """Test the redirect for a forged state."""
        response = client.get(
            "/auth/google/callback", params={"code": "abc", "state": "forged.state"}, follow_redirects=False
        )
        assert response.status_code == 302
        assert response.headers["location"] == "https://clinic.example.com/profile?gcal_error=invalid_state"

    def test_callback_without_signing_secret(self, client: TestClient, monkeypatch):
        """With no secret configured, every state is rejected."""
        monkeypatch.setattr(settings, "google_token_secret", "")
        monkeypatch.setattr(settings, "google_client_secret", "")
        response = client.get(
            "/auth/google/callback", params={"code": "abc", "state": "forged.state"}, follow_redirects=False
        )
        assert response.status_code == 302
        assert response.headers["location"] == "https://clinic.example.com/profile?gcal_error=invalid_state"

    def test_start_without_signing_secret(self, client: TestClient, resource: Resource, monkeypatch):
        """Test start fails cleanly when no secret is configured."""
        monkeypatch.setattr(settings, "google_token_secret", "")
        monkeypatch.setattr(settings, "google_client_secret", "")
        response = client.get("/auth/google/start", params={"resource_id": resource.id}, follow_redirects=False)
        assert response.status_code == 500

    def test_callback_consent_denied(self, client: TestClient):
        """Test the redirect when consent is denied."""
        state = vault.build_signed_state({"resource_id": "consultant-1", "return_to": "/settings"})
        response = client.get(
            "/auth/google/callback", params={"error": "access_denied", "state": state}, follow_redirects=False
        )
        assert response.headers["location"] == "https://clinic.example.com/settings?gcal_error=access_denied"

    def test_callback_connects(self, client: TestClient, monkeypatch):
        """Test a successful callback."""
        calls = []
        monkeypatch.setattr(
            auth_routes, "connect_calendar", lambda session, resource_id, code: calls.append((resource_id, code)) or "cal-1"
        )
        state = vault.build_signed_state({"resource_id": "consultant-1"})

        response = client.get("/auth/google/callback", params={"code": "abc", "state": state}, follow_redirects=False)

        assert calls == [("consultant-1", "abc")]
        assert response.headers["location"] == "https://clinic.example.com/profile?gcal=connected"

    def test_callback_connection_failure(self, client: TestClient, monkeypatch):
        """Test the redirect when the connection fails."""
        def failing(session, resource_id, code):
            raise RefreshFailed("invalid_grant")

        monkeypatch.setattr(auth_routes, "connect_calendar", failing)
        state = vault.build_signed_state({"resource_id": "consultant-1"})

        response = client.get("/auth/google/callback", params={"code": "abc", "state": state}, follow_redirects=False)
        assert response.headers["location"] == "https://clinic.example.com/profile?gcal_error=reconnect_calendar"

    @pytest.mark.parametrize("stored", [False, True])
    def test_auth_status(self, client: TestClient, session: Session, resource: Resource, stored: bool):
        """Test the connection status endpoint."""
        if stored:
            vault.store_tokens(session, resource.id, vault.TokenSet("access-1", "refresh-1"))

        response = client.get(f"/auth/status/{resource.id}")
        assert response.status_code == 200
        assert response.json()["connected"] is stored
