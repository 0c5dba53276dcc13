from datetime import date
from functools import partial
from typing import List, Optional, Set, Sequence

from sqlalchemy import select, and_
from sqlalchemy.orm import Session

from cohort_scheduler.db.models import (
    GroupAssignment,
    GroupAssignmentStatus,
    SubGroup,
    SubGroupAssignment,
    SubGroupAssignmentStatus,
    User,
)
from cohort_scheduler.db.store import insert_or_get_existing
from cohort_scheduler.services.date_rules import resolve_start_date
from cohort_scheduler.services.template_service import TemplateService
from cohort_scheduler.utils.logging import get_logger

logger = get_logger()

OPEN_SUB_GROUP_ASSIGNMENT_STATUSES = (
    SubGroupAssignmentStatus.PENDING,
    SubGroupAssignmentStatus.ACTIVE,
)


class AssignmentResolver:
    """
    Expands one GroupAssignment into the user's chain of SubGroupAssignments.

    Each subgroup's start date is derived from the previous subgroup's resolved
    start date (the first one from the enrollment's start date), so a weekday
    snap early in the chain shifts everything after it.
    """

    def __init__(
        self, db_session: Session, template_service: Optional[TemplateService] = None
    ):
        self.db = db_session
        self.templates = template_service or TemplateService(db_session)

    def resolve(
        self, user: User, group_assignment: GroupAssignment, today: date
    ) -> List[SubGroupAssignment]:
        """
        Create (or find) the SubGroupAssignments for an enrollment.

        Rows starting on or before `today` (the user's local date) are created
        active, later ones pending. Rows that already exist are returned as they
        are. Either the whole chain is written or none of it is.

        Raises:
            ValidationError: If the subgroup chain is misconfigured
        """
        if group_assignment.status != GroupAssignmentStatus.ACTIVE:
            logger.info(
                f"Skipping resolution of group assignment {group_assignment.id} "
                f"with status {group_assignment.status.value}"
            )
            return []

        sub_groups = self.templates.get_active_sub_groups(group_assignment.group_id)
        self.templates.validate_sub_group_chain(sub_groups)

        is_restart = group_assignment.restarted_from_id is not None
        if is_restart:
            completed = self._completed_sub_group_ids(user.id, sub_groups)
            sub_groups = [sg for sg in sub_groups if sg.id not in completed]

        resolved: List[SubGroupAssignment] = []
        with self.db.begin_nested():
            anchor = group_assignment.start_date
            for index, sub_group in enumerate(sub_groups):
                # A restart begins its first remaining stage on the restart date itself
                offset = 0 if is_restart and index == 0 else sub_group.start_date_days_offset
                start_date = resolve_start_date(
                    anchor, offset, sub_group.start_date_day_of_week
                )

                candidate = SubGroupAssignment(
                    user_id=user.id,
                    sub_group_id=sub_group.id,
                    group_assignment_id=group_assignment.id,
                    start_date=start_date,
                    status=(
                        SubGroupAssignmentStatus.ACTIVE
                        if start_date <= today
                        else SubGroupAssignmentStatus.PENDING
                    ),
                )
                row, created = insert_or_get_existing(
                    self.db,
                    candidate,
                    partial(self.find_open_assignment, user.id, sub_group.id),
                )
                if created:
                    logger.info(
                        f"Assigned user {user.id} to sub group {sub_group.id} "
                        f"starting {start_date.isoformat()} ({row.status.value})"
                    )

                resolved.append(row)
                anchor = row.start_date

        return resolved

    def find_open_assignment(
        self, user_id: str, sub_group_id: str
    ) -> Optional[SubGroupAssignment]:
        result = self.db.execute(
            select(SubGroupAssignment).where(
                and_(
                    SubGroupAssignment.user_id == user_id,
                    SubGroupAssignment.sub_group_id == sub_group_id,
                    SubGroupAssignment.status.in_(OPEN_SUB_GROUP_ASSIGNMENT_STATUSES),
                )
            )
        )
        return result.scalar_one_or_none()

    def _completed_sub_group_ids(
        self, user_id: str, sub_groups: Sequence[SubGroup]
    ) -> Set[str]:
        if not sub_groups:
            return set()
        result = self.db.execute(
            select(SubGroupAssignment.sub_group_id).where(
                and_(
                    SubGroupAssignment.user_id == user_id,
                    SubGroupAssignment.sub_group_id.in_([sg.id for sg in sub_groups]),
                    SubGroupAssignment.status == SubGroupAssignmentStatus.COMPLETED,
                )
            )
        )
        return set(result.scalars().all())
