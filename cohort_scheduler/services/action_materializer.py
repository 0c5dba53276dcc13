from datetime import datetime, timedelta
from functools import partial
from typing import List, Optional, Set

from sqlalchemy import select, and_
from sqlalchemy.orm import Session

from cohort_scheduler.db.models import (
    ActionInstance,
    ActionStatus,
    ActionTemplate,
    ActionType,
    SubGroupAssignment,
    SubGroupAssignmentStatus,
    TemplateStatus,
    User,
)
from cohort_scheduler.db.custom_types import parse_uuid
from cohort_scheduler.db.store import insert_or_get_existing
from cohort_scheduler.services.state_transitions import ACTION_TRANSITIONS, transition
from cohort_scheduler.services.template_service import TemplateService
from cohort_scheduler.utils.datetime_utils import (
    combine_local,
    resolve_local_datetime,
    to_naive_utc,
)
from cohort_scheduler.utils.errors import (
    TemplateReferenceError,
    TimezoneError,
    ValidationError,
)
from cohort_scheduler.utils.logging import get_logger

logger = get_logger()


class ActionMaterializer:
    """Turns the active templates of a SubGroupAssignment into concrete ActionInstances"""

    def __init__(
        self, db_session: Session, template_service: Optional[TemplateService] = None
    ):
        self.db = db_session
        self.templates = template_service or TemplateService(db_session)

    def materialize(
        self, user: User, sub_group_assignment: SubGroupAssignment
    ) -> Set[ActionInstance]:
        """
        Create one ActionInstance per active template of the assignment's subgroup.

        Calling this again for the same assignment creates nothing and returns
        the same instances. A template whose time cannot be resolved is logged
        and skipped without affecting its siblings.

        Raises:
            TemplateReferenceError: If the assignment is not active or its
                subgroup is missing or inactive
        """
        if sub_group_assignment.status != SubGroupAssignmentStatus.ACTIVE:
            raise TemplateReferenceError(
                f"SubGroupAssignment {sub_group_assignment.id} is "
                f"{sub_group_assignment.status.value}, not active"
            )

        sub_group = self.templates.get_sub_group(sub_group_assignment.sub_group_id)
        if sub_group is None or sub_group.status != TemplateStatus.ACTIVE:
            raise TemplateReferenceError(
                f"SubGroup {sub_group_assignment.sub_group_id} is missing or inactive"
            )

        instances: Set[ActionInstance] = set()
        for template in self.templates.get_active_action_templates(sub_group.id):
            try:
                self.templates.validate_action_template(template)
                action_datetime = self.compute_action_datetime(
                    user, sub_group_assignment, template
                )
            except (TimezoneError, ValidationError) as e:
                logger.warning(
                    f"Skipping template {template.id} for user {user.id}: {e.message}"
                )
                continue

            candidate = ActionInstance(
                user_id=user.id,
                action_template_id=template.id,
                sub_group_assignment_id=sub_group_assignment.id,
                action_datetime=action_datetime,
                status=ActionStatus.PENDING,
            )
            instance, created = insert_or_get_existing(
                self.db,
                candidate,
                partial(self.find_live_instance, user.id, template.id),
            )
            if created:
                logger.debug(
                    f"Materialized {template.action_type.value} action {instance.id} "
                    f"for user {user.id} at {action_datetime.isoformat()}Z"
                )
            instances.add(instance)

        logger.info(
            f"Materialized {len(instances)} actions for sub group assignment "
            f"{sub_group_assignment.id}"
        )
        return instances

    @staticmethod
    def compute_action_datetime(
        user: User, sub_group_assignment: SubGroupAssignment, template: ActionTemplate
    ) -> datetime:
        """Absolute instant (naive UTC) of a template for a user's assignment"""
        local_day = sub_group_assignment.start_date + timedelta(
            days=template.action_datetime_days_offset
        )
        local_dt = combine_local(local_day, template.time_of_day_local)
        return to_naive_utc(resolve_local_datetime(user.timezone, local_dt))

    def find_live_instance(
        self, user_id: str, action_template_id: str
    ) -> Optional[ActionInstance]:
        result = self.db.execute(
            select(ActionInstance).where(
                and_(
                    ActionInstance.user_id == user_id,
                    ActionInstance.action_template_id == action_template_id,
                    ActionInstance.status != ActionStatus.CANCELED,
                )
            )
        )
        return result.scalar_one_or_none()

    def publish_due_displays(self, now: datetime) -> int:
        """Mark display actions whose time has come as displayed"""
        cutoff = to_naive_utc(now)
        result = self.db.execute(
            select(ActionInstance)
            .join(ActionTemplate, ActionInstance.action_template_id == ActionTemplate.id)
            .where(
                and_(
                    ActionTemplate.action_type == ActionType.DISPLAY_INFORMATION,
                    ActionInstance.status == ActionStatus.PENDING,
                    ActionInstance.action_datetime <= cutoff,
                )
            )
            .order_by(ActionInstance.action_datetime.asc())
        )
        due = result.scalars().all()
        for instance in due:
            transition(instance, ActionStatus.DISPLAYED, ACTION_TRANSITIONS, now)

        self.db.flush()
        return len(due)

    def get_displayable_actions(
        self, user_id: str, now: datetime
    ) -> List[ActionInstance]:
        """Display actions visible to a user at `now`, oldest first"""
        if parse_uuid(user_id) is None:
            return []
        result = self.db.execute(
            select(ActionInstance)
            .join(ActionTemplate, ActionInstance.action_template_id == ActionTemplate.id)
            .where(
                and_(
                    ActionInstance.user_id == user_id,
                    ActionTemplate.action_type == ActionType.DISPLAY_INFORMATION,
                    ActionInstance.status.in_(
                        (ActionStatus.PENDING, ActionStatus.DISPLAYED)
                    ),
                    ActionInstance.action_datetime <= to_naive_utc(now),
                )
            )
            .order_by(ActionInstance.action_datetime.asc())
        )
        return list(result.scalars().all())
