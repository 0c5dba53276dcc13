import pytest
from datetime import date
from unittest.mock import patch

from fastapi.testclient import TestClient

from cohort_scheduler.config.settings import settings
from cohort_scheduler.db.models import ActionStatus, ActionType, GroupAssignmentStatus
from cohort_scheduler.db.session import get_sync_session
from cohort_scheduler.main import app
from cohort_scheduler.services.delivery_state_machine import DeliveryStateMachine
from cohort_scheduler.services.delivery_webhook_service import (
    DeliveryWebhookService,
    correlation_id_from,
    get_delivery_webhook_service,
    verify_webhook_token,
)
from cohort_scheduler.services.enrollment_service import (
    EnrollmentService,
    get_enrollment_service,
)
from cohort_scheduler.services.scheduling_service import SchedulingService
from cohort_scheduler.services.template_service import (
    TemplateService,
    get_template_service,
)

API = settings.API_PREFIX


@pytest.fixture
def client(db_session, fake_provider, clock):
    app.dependency_overrides[get_sync_session] = lambda: db_session
    app.dependency_overrides[get_enrollment_service] = lambda: EnrollmentService(
        db_session, fake_provider, clock
    )
    app.dependency_overrides[get_template_service] = lambda: TemplateService(db_session)
    app.dependency_overrides[get_delivery_webhook_service] = lambda: DeliveryWebhookService(
        db_session, fake_provider
    )
    with patch(
        "cohort_scheduler.routers.scheduling.enrollments.resolve_group_assignment_task"
    ) as mock_task:
        with TestClient(app) as test_client:
            test_client.mock_resolve_task = mock_task
            yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def enqueued_message(db_session, sample_user, onboarding_group, fake_provider, clock):
    """Week 1 message handed to the provider as msg-1."""
    service = SchedulingService(db_session, clock, fake_provider)
    ga = service.enrollments.enroll(sample_user.id, onboarding_group.group.id, date(2023, 4, 10))
    stages = service.schedule_group_assignment(ga.id)
    message = next(
        a
        for a in stages[0].action_instances
        if a.action_template.action_type == ActionType.SEND_MESSAGE
    )
    DeliveryStateMachine(db_session, fake_provider, clock).attempt_enqueue(message.id)
    db_session.commit()
    return message


class TestHealth:
    def test_health(self, client):
        response = client.get(f"{API}/health")
        assert response.status_code == 200
        assert response.json()["success"] is True
        assert response.json()["data"]["database"] == "ok"

    def test_well_formed_request_id_is_echoed(self, client):
        request_id = "3f1c2a9e-8b7d-4c5e-9f0a-1b2c3d4e5f60"
        response = client.get(f"{API}/health", headers={"X-Request-ID": request_id})

        assert response.headers["X-Request-ID"] == request_id
        assert response.json()["requestId"] == request_id

    def test_malformed_request_id_is_replaced(self, client):
        response = client.get(f"{API}/health", headers={"X-Request-ID": "not-a-uuid"})

        assert response.headers["X-Request-ID"] != "not-a-uuid"
        assert response.json()["timestamp"].endswith("Z")


class TestEnrollmentRoutes:
    """Test the enrollment lifecycle endpoints."""

    def _create(self, client, sample_user, onboarding_group):
        return client.post(
            f"{API}/enrollments",
            json={
                "userId": sample_user.id,
                "groupId": onboarding_group.group.id,
                "startDate": "2023-04-10",
            },
        )

    def test_create_enrollment_schedules_resolution(
        self, client, sample_user, onboarding_group
    ):
        response = self._create(client, sample_user, onboarding_group)

        assert response.status_code == 201
        body = response.json()
        assert body["data"]["status"] == "active"
        assert body["data"]["startDate"] == "2023-04-10"
        client.mock_resolve_task.delay.assert_called_once_with(
            response.headers["X-Request-ID"], body["data"]["id"]
        )

    def test_duplicate_enrollment_conflicts(self, client, sample_user, onboarding_group):
        self._create(client, sample_user, onboarding_group)
        response = self._create(client, sample_user, onboarding_group)

        assert response.status_code == 409
        assert response.json()["meta"]["error_code"] == "CONFLICT"

    def test_unknown_group_is_rejected(self, client, sample_user):
        response = client.post(
            f"{API}/enrollments",
            json={"userId": sample_user.id, "groupId": "missing", "startDate": "2023-04-10"},
        )
        assert response.status_code == 400
        assert response.json()["meta"]["error_code"] == "REFERENCE_ERROR"

    def test_missing_field_is_rejected(self, client, sample_user):
        response = client.post(f"{API}/enrollments", json={"userId": sample_user.id})
        assert response.status_code == 422

    def test_pause_and_restart(self, client, sample_user, onboarding_group):
        created = self._create(client, sample_user, onboarding_group).json()["data"]

        paused = client.post(f"{API}/enrollments/{created['id']}/pause")
        assert paused.status_code == 200
        assert paused.json()["data"]["status"] == GroupAssignmentStatus.PAUSED.value

        restarted = client.post(
            f"{API}/enrollments/{created['id']}/restart", json={"restartDate": "2023-05-03"}
        )
        assert restarted.status_code == 201
        assert restarted.json()["data"]["restartedFromId"] == created["id"]
        assert client.mock_resolve_task.delay.call_count == 2

    def test_restart_of_active_enrollment_conflicts(
        self, client, sample_user, onboarding_group
    ):
        created = self._create(client, sample_user, onboarding_group).json()["data"]

        response = client.post(
            f"{API}/enrollments/{created['id']}/restart", json={"restartDate": "2023-05-03"}
        )
        assert response.status_code == 409

    def test_cancel_unknown_enrollment(self, client):
        response = client.post(f"{API}/enrollments/missing/cancel")
        assert response.status_code == 404

    @pytest.mark.parametrize(
        "enrollment_id", ["missing", "00000000-0000-4000-8000-000000000000"]
    )
    def test_unknown_enrollment_is_not_found(self, client, enrollment_id):
        response = client.post(f"{API}/enrollments/{enrollment_id}/pause")

        assert response.status_code == 404
        assert response.json()["meta"]["error_code"] == "NOT_FOUND"


class TestGroupAndUserRoutes:
    def test_supersede_group(self, client, onboarding_group):
        response = client.post(
            f"{API}/groups/{onboarding_group.group.id}/supersede",
            json={"groupName": "Onboarding v2"},
        )

        assert response.status_code == 201
        assert response.json()["data"]["groupName"] == "Onboarding v2"
        assert onboarding_group.group.superseded_by_id == response.json()["data"]["id"]

    def test_displayable_actions(self, client, enqueued_message, sample_user):
        response = client.get(f"{API}/users/{sample_user.id}/displayable-actions")

        assert response.status_code == 200
        (action,) = response.json()["data"]
        assert action["status"] == ActionStatus.PENDING.value

    def test_supersede_malformed_group_id(self, client):
        response = client.post(
            f"{API}/groups/not-a-uuid/supersede", json={"groupName": "Onboarding v2"}
        )

        assert response.status_code == 400
        assert response.json()["meta"]["error_code"] == "REFERENCE_ERROR"

    def test_displayable_actions_for_malformed_user_id(self, client):
        response = client.get(f"{API}/users/not-a-uuid/displayable-actions")

        assert response.status_code == 200
        assert response.json()["data"] == []


class TestDeliveryWebhook:
    """Test the provider event webhook."""

    def _events(self, event_id="evt-1", event="delivered"):
        return [
            {
                "sg_event_id": event_id,
                "sg_message_id": "msg-1.filterdrecv-5645d9c87f-xyz",
                "event": event,
                "timestamp": 1681221900,
            }
        ]

    def test_events_are_applied_once(self, client, enqueued_message):
        first = client.post("/webhooks/delivery", json=self._events())
        replay = client.post("/webhooks/delivery", json=self._events())

        assert first.status_code == 200
        assert first.json()["data"]["counts"] == {"applied": 1, "replayed": 0, "ignored": 0}
        assert replay.json()["data"]["counts"] == {"applied": 0, "replayed": 1, "ignored": 0}
        assert enqueued_message.status == ActionStatus.DELIVERED

    def test_unknown_event_types_are_ignored(self, client, enqueued_message):
        response = client.post("/webhooks/delivery", json=self._events(event="spamreport"))

        assert response.json()["data"]["counts"]["ignored"] == 1
        assert enqueued_message.status == ActionStatus.ENQUEUED

    def test_token_required_when_configured(self, client, enqueued_message, monkeypatch):
        monkeypatch.setattr(settings, "DELIVERY_WEBHOOK_SECRET", "s3cret")

        rejected = client.post("/webhooks/delivery", json=self._events())
        accepted = client.post(
            "/webhooks/delivery", json=self._events(), headers={"X-Webhook-Token": "s3cret"}
        )

        assert rejected.status_code == 401
        assert accepted.status_code == 200


class TestWebhookHelpers:
    def test_correlation_id_strips_filter_suffix(self):
        assert correlation_id_from("abc123.filter0001p1las1-1234-5F7A-1.0") == "abc123"
        assert correlation_id_from("abc123") == "abc123"

    @pytest.mark.parametrize(
        "token,secret,expected",
        [
            (None, "", True),
            (None, "s3cret", False),
            ("wrong", "s3cret", False),
            ("s3cret", "s3cret", True),
        ],
    )
    def test_verify_webhook_token(self, token, secret, expected):
        assert verify_webhook_token(token, secret) is expected
