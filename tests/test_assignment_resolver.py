import pytest
from datetime import date

from sqlalchemy import select, func

from cohort_scheduler.db.models import (
    GroupAssignment,
    GroupAssignmentStatus,
    SubGroup,
    SubGroupAssignment,
    SubGroupAssignmentStatus,
)
from cohort_scheduler.services.assignment_resolver import AssignmentResolver
from cohort_scheduler.services.template_service import TemplateService
from cohort_scheduler.utils.errors import ValidationError


def _enroll(db_session, user, group, start_date, **kwargs) -> GroupAssignment:
    group_assignment = GroupAssignment(
        user_id=user.id,
        group_id=group.id,
        start_date=start_date,
        status=kwargs.pop("status", GroupAssignmentStatus.ACTIVE),
        **kwargs,
    )
    db_session.add(group_assignment)
    db_session.flush()
    return group_assignment


def _count_stages(db_session) -> int:
    return db_session.execute(select(func.count(SubGroupAssignment.id))).scalar_one()


class TestAssignmentResolver:
    """Test expansion of an enrollment into its chain of stages."""

    def test_resolves_chained_start_dates(
        self, db_session, sample_user, onboarding_group, enrollment_start
    ):
        ga = _enroll(db_session, sample_user, onboarding_group.group, enrollment_start)

        stages = AssignmentResolver(db_session).resolve(sample_user, ga, enrollment_start)

        assert [s.start_date for s in stages] == [
            date(2023, 4, 10),
            date(2023, 4, 17),  # 04-16 is a Sunday, snapped to Monday
            date(2023, 4, 24),  # anchored on Week 2's resolved date
        ]
        assert [s.status for s in stages] == [
            SubGroupAssignmentStatus.ACTIVE,
            SubGroupAssignmentStatus.PENDING,
            SubGroupAssignmentStatus.PENDING,
        ]
        assert all(s.group_assignment_id == ga.id for s in stages)

    def test_resolve_is_idempotent(
        self, db_session, sample_user, onboarding_group, enrollment_start
    ):
        ga = _enroll(db_session, sample_user, onboarding_group.group, enrollment_start)
        resolver = AssignmentResolver(db_session)

        first = resolver.resolve(sample_user, ga, enrollment_start)
        second = resolver.resolve(sample_user, ga, enrollment_start)

        assert [s.id for s in first] == [s.id for s in second]
        assert _count_stages(db_session) == 3

    def test_inactive_enrollment_resolves_nothing(
        self, db_session, sample_user, onboarding_group, enrollment_start
    ):
        ga = _enroll(
            db_session,
            sample_user,
            onboarding_group.group,
            enrollment_start,
            status=GroupAssignmentStatus.PAUSED,
        )

        assert AssignmentResolver(db_session).resolve(sample_user, ga, enrollment_start) == []
        assert _count_stages(db_session) == 0

    def test_failure_mid_chain_persists_nothing(
        self, db_session, sample_user, onboarding_group, enrollment_start, monkeypatch
    ):
        ga = _enroll(db_session, sample_user, onboarding_group.group, enrollment_start)

        from cohort_scheduler.services import assignment_resolver

        real_resolve = assignment_resolver.resolve_start_date
        calls = {"count": 0}

        def failing_resolve(anchor, offset, day_of_week=None):
            calls["count"] += 1
            if calls["count"] == 3:
                raise RuntimeError("boom")
            return real_resolve(anchor, offset, day_of_week)

        monkeypatch.setattr(assignment_resolver, "resolve_start_date", failing_resolve)

        with pytest.raises(RuntimeError):
            AssignmentResolver(db_session).resolve(sample_user, ga, enrollment_start)

        assert _count_stages(db_session) == 0

    def test_invalid_chain_rejected_before_writing(
        self, db_session, sample_user, onboarding_group, enrollment_start, monkeypatch
    ):
        ga = _enroll(db_session, sample_user, onboarding_group.group, enrollment_start)
        broken = [
            SubGroup(sub_group_name="A", assignment_order=1, start_date_days_offset=0),
            SubGroup(sub_group_name="B", assignment_order=1, start_date_days_offset=3),
        ]
        monkeypatch.setattr(
            TemplateService, "get_active_sub_groups", lambda self, group_id: broken
        )

        with pytest.raises(ValidationError):
            AssignmentResolver(db_session).resolve(sample_user, ga, enrollment_start)
        assert _count_stages(db_session) == 0

    def test_restart_skips_completed_stages(
        self, db_session, sample_user, onboarding_group, enrollment_start
    ):
        resolver = AssignmentResolver(db_session)
        original = _enroll(db_session, sample_user, onboarding_group.group, enrollment_start)
        week1, week2, week3 = resolver.resolve(sample_user, original, enrollment_start)

        week1.status = SubGroupAssignmentStatus.COMPLETED
        week2.status = SubGroupAssignmentStatus.CANCELED
        week3.status = SubGroupAssignmentStatus.CANCELED
        original.status = GroupAssignmentStatus.CANCELED
        db_session.flush()

        restart_date = date(2023, 5, 3)  # a Wednesday
        restarted = _enroll(
            db_session,
            sample_user,
            onboarding_group.group,
            restart_date,
            restarted_from_id=original.id,
        )
        stages = resolver.resolve(sample_user, restarted, restart_date)

        assert [s.sub_group_id for s in stages] == [
            onboarding_group.sub_groups[1].id,
            onboarding_group.sub_groups[2].id,
        ]
        # First remaining stage ignores its offset but keeps its Monday snap
        assert [s.start_date for s in stages] == [date(2023, 5, 8), date(2023, 5, 15)]
        assert all(s.status == SubGroupAssignmentStatus.PENDING for s in stages)
