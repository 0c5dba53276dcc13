import pytest
from datetime import date, datetime, time, timedelta, timezone

from sqlalchemy import update

from cohort_scheduler.db.models import (
    ActionStatus,
    ActionType,
    GroupAssignment,
    GroupAssignmentStatus,
    SubGroupAssignment,
    SubGroupAssignmentStatus,
    TemplateStatus,
    User,
)
from cohort_scheduler.services.action_materializer import ActionMaterializer
from cohort_scheduler.utils.errors import TemplateReferenceError


def _stage(db_session, user, sub_group, start_date, status=SubGroupAssignmentStatus.ACTIVE):
    ga = GroupAssignment(
        user_id=user.id,
        group_id=sub_group.group_id,
        start_date=start_date,
        status=GroupAssignmentStatus.ACTIVE,
    )
    db_session.add(ga)
    db_session.flush()
    stage = SubGroupAssignment(
        user_id=user.id,
        sub_group_id=sub_group.id,
        group_assignment_id=ga.id,
        start_date=start_date,
        status=status,
    )
    db_session.add(stage)
    db_session.flush()
    return stage


class TestMaterialize:
    """Test creation of action instances from templates."""

    def test_instances_in_user_timezone(
        self, db_session, sample_user, onboarding_group, enrollment_start
    ):
        stage = _stage(db_session, sample_user, onboarding_group.sub_groups[0], enrollment_start)

        instances = ActionMaterializer(db_session).materialize(sample_user, stage)

        by_template = {i.action_template_id: i for i in instances}
        templates = onboarding_group.templates
        # New York is UTC-4 in April
        assert by_template[templates.welcome_display.id].action_datetime == datetime(
            2023, 4, 10, 13, 0
        )
        assert by_template[templates.week1_message.id].action_datetime == datetime(
            2023, 4, 11, 14, 0
        )
        assert all(i.status == ActionStatus.PENDING for i in instances)

    def test_materialize_is_idempotent(
        self, db_session, sample_user, onboarding_group, enrollment_start
    ):
        stage = _stage(db_session, sample_user, onboarding_group.sub_groups[0], enrollment_start)
        materializer = ActionMaterializer(db_session)

        first = materializer.materialize(sample_user, stage)
        second = materializer.materialize(sample_user, stage)

        assert {i.id for i in first} == {i.id for i in second}
        assert len(sample_user.action_instances) == 2

    def test_later_offset_never_earlier(
        self, db_session, sample_user, onboarding_group, template_factory
    ):
        """Templates ordered by (offset, time) produce non-decreasing instants, across DST."""
        sub_group = template_factory.sub_group(onboarding_group.group, "DST week", 4)
        for offset in range(4):
            for hour in (1, 2, 3):
                template_factory.template(
                    sub_group, ActionType.DISPLAY_INFORMATION, offset, time(hour, 30)
                )
        stage = _stage(db_session, sample_user, sub_group, date(2023, 3, 11))

        materializer = ActionMaterializer(db_session)
        materializer.materialize(sample_user, stage)

        ordered = sorted(
            stage.action_instances,
            key=lambda i: (
                i.action_template.action_datetime_days_offset,
                i.action_template.time_of_day_local,
            ),
        )
        instants = [i.action_datetime for i in ordered]
        assert instants == sorted(instants)

    def test_nonexistent_local_time_moves_past_gap(
        self, db_session, sample_user, onboarding_group, template_factory
    ):
        sub_group = template_factory.sub_group(onboarding_group.group, "Spring forward", 4)
        template = template_factory.template(
            sub_group, ActionType.DISPLAY_INFORMATION, 0, time(2, 30)
        )
        stage = _stage(db_session, sample_user, sub_group, date(2023, 3, 12))

        (instance,) = ActionMaterializer(db_session).materialize(sample_user, stage)

        assert instance.action_template_id == template.id
        assert instance.action_datetime == datetime(2023, 3, 12, 7, 30)

    def test_bad_timezone_skips_templates(
        self, db_session, sample_user, onboarding_group, enrollment_start
    ):
        stage = _stage(db_session, sample_user, onboarding_group.sub_groups[0], enrollment_start)
        # Core update skips the model validator
        db_session.execute(
            update(User).where(User.id == sample_user.id).values(timezone="Nowhere/Special")
        )
        db_session.refresh(sample_user)

        assert ActionMaterializer(db_session).materialize(sample_user, stage) == set()

    def test_pending_stage_rejected(
        self, db_session, sample_user, onboarding_group, enrollment_start
    ):
        stage = _stage(
            db_session,
            sample_user,
            onboarding_group.sub_groups[1],
            enrollment_start,
            status=SubGroupAssignmentStatus.PENDING,
        )
        with pytest.raises(TemplateReferenceError):
            ActionMaterializer(db_session).materialize(sample_user, stage)

    def test_inactive_sub_group_rejected(
        self, db_session, sample_user, onboarding_group, enrollment_start
    ):
        week1 = onboarding_group.sub_groups[0]
        stage = _stage(db_session, sample_user, week1, enrollment_start)
        week1.status = TemplateStatus.INACTIVE
        db_session.flush()

        with pytest.raises(TemplateReferenceError):
            ActionMaterializer(db_session).materialize(sample_user, stage)


class TestDisplays:
    """Test publishing and reading display actions."""

    def test_publish_due_displays(
        self, db_session, sample_user, onboarding_group, enrollment_start, clock
    ):
        stage = _stage(db_session, sample_user, onboarding_group.sub_groups[0], enrollment_start)
        materializer = ActionMaterializer(db_session)
        instances = materializer.materialize(sample_user, stage)

        # 14:00 UTC is past the 13:00 UTC welcome display
        assert materializer.publish_due_displays(clock.now()) == 1
        assert materializer.publish_due_displays(clock.now()) == 0

        statuses = {i.action_template.action_type: i.status for i in instances}
        assert statuses[ActionType.DISPLAY_INFORMATION] == ActionStatus.DISPLAYED
        assert statuses[ActionType.SEND_MESSAGE] == ActionStatus.PENDING

    def test_displayable_actions_respect_time(
        self, db_session, sample_user, onboarding_group, enrollment_start
    ):
        stage = _stage(db_session, sample_user, onboarding_group.sub_groups[0], enrollment_start)
        materializer = ActionMaterializer(db_session)
        materializer.materialize(sample_user, stage)

        before = datetime(2023, 4, 10, 12, 59, tzinfo=timezone.utc)
        assert materializer.get_displayable_actions(sample_user.id, before) == []

        visible = materializer.get_displayable_actions(
            sample_user.id, before + timedelta(minutes=1)
        )
        assert [i.action_template_id for i in visible] == [
            onboarding_group.templates.welcome_display.id
        ]
