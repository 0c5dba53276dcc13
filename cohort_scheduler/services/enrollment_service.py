from datetime import date, datetime
from functools import partial
from typing import List, Optional

from fastapi import Depends
from sqlalchemy import select, and_
from sqlalchemy.orm import Session

from cohort_scheduler.db.models import (
    ActionInstance,
    ActionStatus,
    GroupAssignment,
    GroupAssignmentStatus,
    SubGroupAssignment,
    SubGroupAssignmentStatus,
    User,
)
from cohort_scheduler.db.session import get_sync_session
from cohort_scheduler.db.store import get_by_id, insert_or_get_existing
from cohort_scheduler.services.delivery_provider import DeliveryProvider
from cohort_scheduler.services.delivery_state_machine import DeliveryStateMachine
from cohort_scheduler.services.state_transitions import (
    GROUP_ASSIGNMENT_TRANSITIONS,
    SUB_GROUP_ASSIGNMENT_TRANSITIONS,
    transition,
)
from cohort_scheduler.services.template_service import TemplateService
from cohort_scheduler.utils.datetime_utils import Clock, SystemClock
from cohort_scheduler.utils.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
)
from cohort_scheduler.utils.logging import get_logger

logger = get_logger()

OPEN_ENROLLMENT_STATUSES = (GroupAssignmentStatus.ACTIVE, GroupAssignmentStatus.PAUSED)


class EnrollmentService:
    """Lifecycle of a user's enrollment in a group: enroll, pause, cancel, restart, complete"""

    def __init__(
        self,
        db_session: Session,
        provider: Optional[DeliveryProvider] = None,
        clock: Optional[Clock] = None,
    ):
        self.db = db_session
        self.clock = clock or SystemClock()
        self.templates = TemplateService(db_session)
        self.delivery = DeliveryStateMachine(db_session, provider, clock=self.clock)

    def get_group_assignment(self, group_assignment_id: str) -> GroupAssignment:
        group_assignment = get_by_id(self.db, GroupAssignment, group_assignment_id)
        if group_assignment is None:
            raise NotFoundError(f"Group assignment {group_assignment_id} not found")
        return group_assignment

    def find_open_enrollment(
        self, user_id: str, group_id: str
    ) -> Optional[GroupAssignment]:
        result = self.db.execute(
            select(GroupAssignment).where(
                and_(
                    GroupAssignment.user_id == user_id,
                    GroupAssignment.group_id == group_id,
                    GroupAssignment.status.in_(OPEN_ENROLLMENT_STATUSES),
                )
            )
        )
        return result.scalar_one_or_none()

    def enroll(
        self,
        user_id: str,
        group_id: str,
        start_date: date,
        restarted_from_id: Optional[str] = None,
    ) -> GroupAssignment:
        """
        Enroll a user in an active group.

        Raises:
            NotFoundError: If the user does not exist
            TemplateReferenceError: If the group is missing or inactive
            ConflictError: If the user already has an active or paused enrollment
                in this group
        """
        if get_by_id(self.db, User, user_id) is None:
            raise NotFoundError(f"User {user_id} not found")
        self.templates.get_active_group(group_id)

        candidate = GroupAssignment(
            user_id=user_id,
            group_id=group_id,
            start_date=start_date,
            status=GroupAssignmentStatus.ACTIVE,
            restarted_from_id=restarted_from_id,
        )
        group_assignment, created = insert_or_get_existing(
            self.db, candidate, partial(self.find_open_enrollment, user_id, group_id)
        )
        if not created:
            raise ConflictError(
                f"User {user_id} already has an open enrollment "
                f"({group_assignment.id}) in group {group_id}"
            )

        logger.info(
            f"Enrolled user {user_id} in group {group_id} starting {start_date.isoformat()}"
        )
        return group_assignment

    def pause(self, group_assignment_id: str) -> GroupAssignment:
        """Pause an active enrollment and cancel its outstanding stages and actions"""
        group_assignment = self.get_group_assignment(group_assignment_id)
        now = self.clock.now()
        transition(
            group_assignment,
            GroupAssignmentStatus.PAUSED,
            GROUP_ASSIGNMENT_TRANSITIONS,
            now,
        )
        self._cancel_outstanding_work(group_assignment, now)
        self.db.flush()

        logger.info(f"Paused group assignment {group_assignment.id}")
        return group_assignment

    def cancel(self, group_assignment_id: str) -> GroupAssignment:
        """Cancel an active or paused enrollment"""
        group_assignment = self.get_group_assignment(group_assignment_id)
        now = self.clock.now()
        transition(
            group_assignment,
            GroupAssignmentStatus.CANCELED,
            GROUP_ASSIGNMENT_TRANSITIONS,
            now,
        )
        self._cancel_outstanding_work(group_assignment, now)
        self.db.flush()

        logger.info(f"Canceled group assignment {group_assignment.id}")
        return group_assignment

    def restart(self, group_assignment_id: str, restart_date: date) -> GroupAssignment:
        """
        Replace a paused enrollment with a new one starting on `restart_date`.

        The paused row is canceled and a new active row references it through
        restarted_from_id; resolution of the new row skips completed stages.
        """
        paused = self.get_group_assignment(group_assignment_id)
        if paused.status != GroupAssignmentStatus.PAUSED:
            raise InvalidTransitionError(
                f"Only paused enrollments can be restarted; {paused.id} is "
                f"{paused.status.value}"
            )

        transition(
            paused,
            GroupAssignmentStatus.CANCELED,
            GROUP_ASSIGNMENT_TRANSITIONS,
            self.clock.now(),
        )
        # Free the open-enrollment slot before the new row claims it
        self.db.flush()

        restarted = self.enroll(
            paused.user_id, paused.group_id, restart_date, restarted_from_id=paused.id
        )
        logger.info(f"Restarted group assignment {paused.id} as {restarted.id}")
        return restarted

    def complete_if_finished(
        self, group_assignment_id: str, now: Optional[datetime] = None
    ) -> bool:
        """Complete an active enrollment once every one of its stages is completed"""
        group_assignment = self.get_group_assignment(group_assignment_id)
        if group_assignment.status != GroupAssignmentStatus.ACTIVE:
            return False

        statuses = self.db.execute(
            select(SubGroupAssignment.status).where(
                and_(
                    SubGroupAssignment.group_assignment_id == group_assignment.id,
                    SubGroupAssignment.status != SubGroupAssignmentStatus.CANCELED,
                )
            )
        ).scalars().all()

        if not statuses or any(
            status != SubGroupAssignmentStatus.COMPLETED for status in statuses
        ):
            return False

        transition(
            group_assignment,
            GroupAssignmentStatus.COMPLETED,
            GROUP_ASSIGNMENT_TRANSITIONS,
            now or self.clock.now(),
        )
        self.db.flush()
        logger.info(f"Completed group assignment {group_assignment.id}")
        return True

    def _cancel_outstanding_work(
        self, group_assignment: GroupAssignment, now: datetime
    ) -> None:
        open_stages: List[SubGroupAssignment] = list(
            self.db.execute(
                select(SubGroupAssignment).where(
                    and_(
                        SubGroupAssignment.group_assignment_id == group_assignment.id,
                        SubGroupAssignment.status.in_(
                            (
                                SubGroupAssignmentStatus.PENDING,
                                SubGroupAssignmentStatus.ACTIVE,
                            )
                        ),
                    )
                )
            ).scalars()
        )

        for stage in open_stages:
            outstanding = self.db.execute(
                select(ActionInstance).where(
                    and_(
                        ActionInstance.sub_group_assignment_id == stage.id,
                        ActionInstance.status.in_(
                            (ActionStatus.PENDING, ActionStatus.ENQUEUED)
                        ),
                    )
                )
            ).scalars().all()

            for instance in outstanding:
                if not self.delivery.cancel(instance, now):
                    logger.warning(
                        f"Action instance {instance.id} could not be canceled and "
                        f"remains {instance.status.value}"
                    )

            transition(
                stage,
                SubGroupAssignmentStatus.CANCELED,
                SUB_GROUP_ASSIGNMENT_TRANSITIONS,
                now,
            )


# Dependency injection for service provider
def get_enrollment_service(
    db: Session = Depends(get_sync_session),
) -> EnrollmentService:
    """Dependency to provide EnrollmentService instance"""
    return EnrollmentService(db)
