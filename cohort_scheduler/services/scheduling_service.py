from datetime import date, datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import select, and_, exists
from sqlalchemy.orm import Session

from cohort_scheduler.db.models import (
    ActionInstance,
    ActionStatus,
    ActionTemplate,
    ActionType,
    DeliveryAttempt,
    GroupAssignment,
    GroupAssignmentStatus,
    SubGroup,
    SubGroupAssignment,
    SubGroupAssignmentStatus,
    User,
)
from cohort_scheduler.db.store import get_by_id
from cohort_scheduler.services.action_materializer import ActionMaterializer
from cohort_scheduler.services.assignment_resolver import AssignmentResolver
from cohort_scheduler.services.delivery_provider import DeliveryProvider
from cohort_scheduler.services.enrollment_service import EnrollmentService
from cohort_scheduler.services.state_transitions import (
    DONE_ACTION_STATUSES,
    SUB_GROUP_ASSIGNMENT_TRANSITIONS,
    transition,
)
from cohort_scheduler.services.template_service import TemplateService
from cohort_scheduler.utils.datetime_utils import (
    Clock,
    SystemClock,
    local_today,
    to_naive_utc,
)
from cohort_scheduler.utils.errors import (
    NotFoundError,
    TemplateReferenceError,
    TimezoneError,
)
from cohort_scheduler.utils.logging import get_logger

logger = get_logger()


class SchedulingService:
    """
    Per-user scheduling passes: resolve enrollments, activate due stages and
    materialize their actions.

    Each pass reads the clock once and derives the user's local date from that
    single reading.
    """

    def __init__(
        self,
        db_session: Session,
        clock: Optional[Clock] = None,
        provider: Optional[DeliveryProvider] = None,
    ):
        self.db = db_session
        self.clock = clock or SystemClock()
        self.templates = TemplateService(db_session)
        self.resolver = AssignmentResolver(db_session, self.templates)
        self.materializer = ActionMaterializer(db_session, self.templates)
        self.enrollments = EnrollmentService(db_session, provider, self.clock)

    def user_today(self, user: User, now: datetime) -> date:
        try:
            return local_today(user.timezone, now)
        except TimezoneError as e:
            logger.warning(
                f"User {user.id} has unusable timezone, using UTC date: {e.message}"
            )
            return now.date()

    def schedule_group_assignment(
        self, group_assignment_id: str
    ) -> List[SubGroupAssignment]:
        """Resolve an enrollment and materialize the stages that are already active"""
        now = self.clock.now()
        group_assignment = self.enrollments.get_group_assignment(group_assignment_id)
        user = group_assignment.user
        today = self.user_today(user, now)

        stages = self.resolver.resolve(user, group_assignment, today)
        for stage in stages:
            if stage.status == SubGroupAssignmentStatus.ACTIVE:
                self._materialize(user, stage)

        self.refresh_progress(group_assignment, now)
        return stages

    def activate_due_sub_group_assignments(self, user_id: str) -> int:
        """Activate a user's pending stages whose start date has arrived"""
        now = self.clock.now()
        user = get_by_id(self.db, User, user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        today = self.user_today(user, now)

        due = self.db.execute(
            select(SubGroupAssignment)
            .join(
                GroupAssignment,
                SubGroupAssignment.group_assignment_id == GroupAssignment.id,
            )
            .join(SubGroup, SubGroupAssignment.sub_group_id == SubGroup.id)
            .where(
                and_(
                    SubGroupAssignment.user_id == user.id,
                    SubGroupAssignment.status == SubGroupAssignmentStatus.PENDING,
                    SubGroupAssignment.start_date <= today,
                    GroupAssignment.status == GroupAssignmentStatus.ACTIVE,
                )
            )
            .order_by(
                SubGroupAssignment.start_date.asc(), SubGroup.assignment_order.asc()
            )
        ).scalars().all()

        touched: Dict[str, GroupAssignment] = {}
        for stage in due:
            transition(
                stage,
                SubGroupAssignmentStatus.ACTIVE,
                SUB_GROUP_ASSIGNMENT_TRANSITIONS,
                now,
            )
            self.db.flush()
            self._materialize(user, stage)
            touched[stage.group_assignment_id] = stage.group_assignment

        for group_assignment in self._active_enrollments(user.id):
            touched.setdefault(group_assignment.id, group_assignment)
        for group_assignment in touched.values():
            self.refresh_progress(group_assignment, now)

        if due:
            logger.info(f"Activated {len(due)} sub group assignments for user {user.id}")
        return len(due)

    def refresh_progress(self, group_assignment: GroupAssignment, now: datetime) -> None:
        """
        Complete stages that are finished, then the enrollment if all stages are.

        An active stage is finished when a later stage has started, or when it
        is the last stage and all of its actions are done.
        """
        if group_assignment.status != GroupAssignmentStatus.ACTIVE:
            return

        stages = self.db.execute(
            select(SubGroupAssignment)
            .join(SubGroup, SubGroupAssignment.sub_group_id == SubGroup.id)
            .where(
                and_(
                    SubGroupAssignment.group_assignment_id == group_assignment.id,
                    SubGroupAssignment.status != SubGroupAssignmentStatus.CANCELED,
                )
            )
            .order_by(
                SubGroupAssignment.start_date.asc(), SubGroup.assignment_order.asc()
            )
        ).scalars().all()

        for index, stage in enumerate(stages):
            if stage.status != SubGroupAssignmentStatus.ACTIVE:
                continue
            later = stages[index + 1 :]
            started_later = any(
                s.status
                in (SubGroupAssignmentStatus.ACTIVE, SubGroupAssignmentStatus.COMPLETED)
                for s in later
            )
            if started_later or (not later and self._all_actions_done(stage)):
                transition(
                    stage,
                    SubGroupAssignmentStatus.COMPLETED,
                    SUB_GROUP_ASSIGNMENT_TRANSITIONS,
                    now,
                )
                logger.info(f"Completed sub group assignment {stage.id}")

        self.db.flush()
        self.enrollments.complete_if_finished(group_assignment.id, now)

    def publish_due_displays(self) -> int:
        return self.materializer.publish_due_displays(self.clock.now())

    def due_message_instances(
        self,
        lookahead: timedelta,
        exclude_attempted: bool = False,
        limit: Optional[int] = None,
    ) -> List[ActionInstance]:
        """Pending send_message actions due within `lookahead` of now, earliest first"""
        horizon = to_naive_utc(self.clock.now() + lookahead)
        query = (
            select(ActionInstance)
            .join(ActionTemplate, ActionInstance.action_template_id == ActionTemplate.id)
            .where(
                and_(
                    ActionTemplate.action_type == ActionType.SEND_MESSAGE,
                    ActionInstance.status == ActionStatus.PENDING,
                    ActionInstance.action_datetime <= horizon,
                )
            )
            .order_by(ActionInstance.action_datetime.asc())
        )
        if exclude_attempted:
            query = query.where(
                ~exists().where(
                    DeliveryAttempt.action_instance_id == ActionInstance.id
                )
            )
        if limit is not None:
            query = query.limit(limit)
        return list(self.db.execute(query).scalars().all())

    def unresolved_group_assignments(self) -> List[GroupAssignment]:
        """Active enrollments that have no stages yet"""
        has_stages = exists().where(
            SubGroupAssignment.group_assignment_id == GroupAssignment.id
        )
        result = self.db.execute(
            select(GroupAssignment).where(
                and_(
                    GroupAssignment.status == GroupAssignmentStatus.ACTIVE,
                    ~has_stages,
                )
            )
        )
        return list(result.scalars().all())

    def users_with_open_stages(self) -> List[str]:
        """Users with pending or active stages under an active enrollment"""
        result = self.db.execute(
            select(SubGroupAssignment.user_id)
            .join(
                GroupAssignment,
                SubGroupAssignment.group_assignment_id == GroupAssignment.id,
            )
            .where(
                and_(
                    SubGroupAssignment.status.in_(
                        (
                            SubGroupAssignmentStatus.PENDING,
                            SubGroupAssignmentStatus.ACTIVE,
                        )
                    ),
                    GroupAssignment.status == GroupAssignmentStatus.ACTIVE,
                )
            )
            .distinct()
        )
        return list(result.scalars().all())

    def _active_enrollments(self, user_id: str) -> List[GroupAssignment]:
        result = self.db.execute(
            select(GroupAssignment).where(
                and_(
                    GroupAssignment.user_id == user_id,
                    GroupAssignment.status == GroupAssignmentStatus.ACTIVE,
                )
            )
        )
        return list(result.scalars().all())

    def _all_actions_done(self, stage: SubGroupAssignment) -> bool:
        statuses = self.db.execute(
            select(ActionInstance.status).where(
                ActionInstance.sub_group_assignment_id == stage.id
            )
        ).scalars().all()
        return all(status in DONE_ACTION_STATUSES for status in statuses)

    def _materialize(self, user: User, stage: SubGroupAssignment) -> None:
        try:
            self.materializer.materialize(user, stage)
        except TemplateReferenceError as e:
            logger.error(
                f"Could not materialize sub group assignment {stage.id}: {e.message}"
            )
