from typing import Optional, Sequence, List

from fastapi import Depends
from sqlalchemy import select, and_
from sqlalchemy.orm import Session

from cohort_scheduler.db.models import (
    ActionTemplate,
    ActionType,
    Group,
    SubGroup,
    TemplateStatus,
)
from cohort_scheduler.db.session import get_sync_session
from cohort_scheduler.db.store import get_by_id, touch
from cohort_scheduler.services.date_rules import validate_day_of_week, validate_offset
from cohort_scheduler.utils.errors import TemplateReferenceError, ValidationError
from cohort_scheduler.utils.logging import get_logger

logger = get_logger()


class TemplateService:
    """Read access and versioned updates for the Group -> SubGroup -> ActionTemplate hierarchy"""

    def __init__(self, db_session: Session):
        self.db = db_session

    # Groups
    def get_group(self, group_id: str) -> Optional[Group]:
        return get_by_id(self.db, Group, group_id)

    def get_active_group(self, group_id: str) -> Group:
        """Get an active group or raise TemplateReferenceError"""
        group = self.get_group(group_id)
        if group is None:
            raise TemplateReferenceError(f"Group {group_id} does not exist")
        if group.status != TemplateStatus.ACTIVE:
            raise TemplateReferenceError(f"Group {group_id} is not active")
        return group

    def get_active_group_by_name(self, group_name: str) -> Optional[Group]:
        result = self.db.execute(
            select(Group).where(
                and_(
                    Group.group_name == group_name,
                    Group.status == TemplateStatus.ACTIVE,
                )
            )
        )
        return result.scalar_one_or_none()

    def supersede_group(self, group_id: str, new_group_name: str) -> Group:
        """
        Replace a group with a new version.

        The current row is marked inactive and points at the new row through
        superseded_by_id. Its own fields are left untouched.
        """
        current = self.get_active_group(group_id)

        current.status = TemplateStatus.INACTIVE
        touch(current)
        # Release the active-name slot before the new row claims it
        self.db.flush()

        replacement = Group(group_name=new_group_name, status=TemplateStatus.ACTIVE)
        self.db.add(replacement)
        self.db.flush()

        current.superseded_by_id = replacement.id
        self.db.flush()

        logger.info(
            f"Group {current.id} superseded by {replacement.id} ('{new_group_name}')"
        )
        return replacement

    def get_current_version(self, group_id: str) -> Group:
        """Follow superseded_by_id links to the newest version of a group"""
        group = self.get_group(group_id)
        if group is None:
            raise TemplateReferenceError(f"Group {group_id} does not exist")

        seen = {group.id}
        while group.superseded_by_id is not None:
            group = self.get_group(group.superseded_by_id)
            if group is None or group.id in seen:
                raise TemplateReferenceError(
                    f"Broken supersede chain starting at group {group_id}"
                )
            seen.add(group.id)
        return group

    # SubGroups
    def get_sub_group(self, sub_group_id: str) -> Optional[SubGroup]:
        return get_by_id(self.db, SubGroup, sub_group_id)

    def get_active_sub_groups(self, group_id: str) -> Sequence[SubGroup]:
        """Active subgroups of a group ordered by assignment_order"""
        result = self.db.execute(
            select(SubGroup)
            .where(
                and_(
                    SubGroup.group_id == group_id,
                    SubGroup.status == TemplateStatus.ACTIVE,
                )
            )
            .order_by(SubGroup.assignment_order.asc())
        )
        return result.scalars().all()

    @staticmethod
    def validate_sub_group_chain(sub_groups: Sequence[SubGroup]) -> None:
        """
        Check a subgroup chain before anything is derived from it.

        Raises:
            ValidationError: On a non-positive or repeated assignment_order,
                a negative offset or a weekday outside 0..6
        """
        seen_orders = set()
        for sub_group in sub_groups:
            order = sub_group.assignment_order
            if order is None or order <= 0:
                raise ValidationError(
                    f"SubGroup {sub_group.id} has non-positive assignment_order {order}"
                )
            if order in seen_orders:
                raise ValidationError(
                    f"SubGroup {sub_group.id} repeats assignment_order {order}"
                )
            seen_orders.add(order)

            validate_offset(
                sub_group.start_date_days_offset, field="start_date_days_offset"
            )
            validate_day_of_week(sub_group.start_date_day_of_week)

    # ActionTemplates
    def get_active_action_templates(self, sub_group_id: str) -> List[ActionTemplate]:
        """Active templates of a subgroup ordered by offset then local time"""
        result = self.db.execute(
            select(ActionTemplate)
            .where(
                and_(
                    ActionTemplate.sub_group_id == sub_group_id,
                    ActionTemplate.status == TemplateStatus.ACTIVE,
                )
            )
            .order_by(
                ActionTemplate.action_datetime_days_offset.asc(),
                ActionTemplate.time_of_day_local.asc(),
            )
        )
        return list(result.scalars().all())

    @staticmethod
    def validate_action_template(template: ActionTemplate) -> None:
        validate_offset(
            template.action_datetime_days_offset, field="action_datetime_days_offset"
        )
        if template.time_of_day_local is None:
            raise ValidationError(f"ActionTemplate {template.id} has no time_of_day_local")
        if template.action_type == ActionType.SEND_MESSAGE and not (
            template.message_subject and template.message_body
        ):
            raise ValidationError(
                f"ActionTemplate {template.id} sends a message without subject or body"
            )


# Dependency injection for service provider
def get_template_service(
    db: Session = Depends(get_sync_session),
) -> TemplateService:
    """Dependency to provide TemplateService instance"""
    return TemplateService(db)
