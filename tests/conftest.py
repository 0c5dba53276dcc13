import os

os.environ.setdefault("ENVIRONMENT", "testing")

import pytest
from datetime import datetime, date, time, timezone
from functools import partial
from types import SimpleNamespace
from typing import Generator, List
from unittest.mock import Mock

from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from cohort_scheduler.db.models import (
    ActionTemplate,
    ActionType,
    Group,
    SubGroup,
    TemplateStatus,
    User,
)
from cohort_scheduler.db.db import create_tables, drop_tables
from cohort_scheduler.db.session import build_engine
from cohort_scheduler.services.delivery_provider import DeliveryProvider, ScheduleReceipt
from cohort_scheduler.utils.datetime_utils import FixedClock
from cohort_scheduler.utils.errors import DeliveryError


# Test database setup
TEST_DATABASE_URL = "sqlite:///:memory:"

MONDAY = 1


@pytest.fixture
def test_engine():
    """Create a fresh in-memory database for each test."""
    engine = build_engine(TEST_DATABASE_URL, poolclass=StaticPool)
    create_tables(engine)
    yield engine
    drop_tables(engine)
    engine.dispose()


@pytest.fixture
def db_session(test_engine) -> Generator[Session, None, None]:
    """Create a database session for each test."""
    session_maker = sessionmaker(bind=test_engine, class_=Session, expire_on_commit=False)
    session = session_maker()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def clock() -> FixedClock:
    """Clock pinned to Monday 2023-04-10 10:00 in New York."""
    return FixedClock(datetime(2023, 4, 10, 14, 0, tzinfo=timezone.utc))


@pytest.fixture
def mock_celery_task():
    """Mock Celery task for testing retry behavior."""
    mock_task = Mock()
    mock_task.request.retries = 0
    mock_task.max_retries = 5
    mock_task.retry = Mock(side_effect=Exception("Retry called"))
    return mock_task


class FakeDeliveryProvider(DeliveryProvider):
    """In-memory provider that fails a configurable number of schedule calls."""

    def __init__(self, failures: int = 0, refuse_cancel: bool = False):
        self.failures_remaining = failures
        self.refuse_cancel = refuse_cancel
        self.schedule_calls = 0
        self.scheduled: List[dict] = []
        self.cancelled: List[ScheduleReceipt] = []

    def schedule(self, recipient, sender, subject, body, scheduled_at):
        self.schedule_calls += 1
        if self.failures_remaining > 0:
            self.failures_remaining -= 1
            raise DeliveryError("Provider unavailable", status_code=503)

        number = len(self.scheduled) + 1
        self.scheduled.append(
            {
                "recipient": recipient,
                "sender": sender,
                "subject": subject,
                "body": body,
                "scheduled_at": scheduled_at,
            }
        )
        return ScheduleReceipt(correlation_id=f"msg-{number}", batch_id=f"batch-{number}")

    def cancel(self, receipt):
        if self.refuse_cancel:
            raise DeliveryError("Batch already sent", status_code=400)
        self.cancelled.append(receipt)


@pytest.fixture
def fake_provider() -> FakeDeliveryProvider:
    return FakeDeliveryProvider()


# Test data factories
@pytest.fixture
def sample_user(db_session: Session) -> User:
    """Create a user living in New York."""
    user = User(
        email="ada@example.com",
        first_name="Ada",
        last_name="Lovelace",
        timezone="America/New_York",
    )
    db_session.add(user)
    db_session.commit()
    return user


def add_sub_group(
    db_session: Session,
    group: Group,
    name: str,
    order: int,
    offset: int = 0,
    day_of_week=None,
) -> SubGroup:
    sub_group = SubGroup(
        group_id=group.id,
        sub_group_name=name,
        assignment_order=order,
        start_date_days_offset=offset,
        start_date_day_of_week=day_of_week,
        status=TemplateStatus.ACTIVE,
    )
    db_session.add(sub_group)
    db_session.flush()
    return sub_group


def add_template(
    db_session: Session,
    sub_group: SubGroup,
    action_type: ActionType,
    offset: int,
    at: time,
    subject: str = None,
    body: str = None,
) -> ActionTemplate:
    if action_type == ActionType.SEND_MESSAGE:
        subject = subject or "Your weekly check-in"
        body = body or "<p>Please complete this week's survey.</p>"
    template = ActionTemplate(
        sub_group_id=sub_group.id,
        action_type=action_type,
        action_datetime_days_offset=offset,
        time_of_day_local=at,
        message_subject=subject,
        message_body=body,
        status=TemplateStatus.ACTIVE,
    )
    db_session.add(template)
    db_session.flush()
    return template


@pytest.fixture
def onboarding_group(db_session: Session) -> SimpleNamespace:
    """
    Three-stage group:

    - Week 1: starts on the enrollment date; display day 0 09:00, message day 1 10:00
    - Week 2: 6 days after Week 1, snapped to Monday; message day 0 09:00
    - Week 3: 7 days after Week 2; display day 2 08:00
    """
    group = Group(group_name="Onboarding", status=TemplateStatus.ACTIVE)
    db_session.add(group)
    db_session.flush()

    week1 = add_sub_group(db_session, group, "Week 1", 1)
    week2 = add_sub_group(db_session, group, "Week 2", 2, offset=6, day_of_week=MONDAY)
    week3 = add_sub_group(db_session, group, "Week 3", 3, offset=7)

    templates = SimpleNamespace(
        welcome_display=add_template(
            db_session, week1, ActionType.DISPLAY_INFORMATION, 0, time(9, 0)
        ),
        week1_message=add_template(
            db_session, week1, ActionType.SEND_MESSAGE, 1, time(10, 0)
        ),
        week2_message=add_template(
            db_session, week2, ActionType.SEND_MESSAGE, 0, time(9, 0)
        ),
        week3_display=add_template(
            db_session, week3, ActionType.DISPLAY_INFORMATION, 2, time(8, 0)
        ),
    )
    db_session.commit()

    return SimpleNamespace(group=group, sub_groups=[week1, week2, week3], templates=templates)


@pytest.fixture
def enrollment_start() -> date:
    return date(2023, 4, 10)


@pytest.fixture
def template_factory(db_session: Session) -> SimpleNamespace:
    """Helpers for building extra subgroups and templates inside a test."""
    return SimpleNamespace(
        sub_group=partial(add_sub_group, db_session),
        template=partial(add_template, db_session),
    )


@pytest.fixture
def provider_factory():
    """Build fake providers with a given number of failing schedule calls."""
    return FakeDeliveryProvider
