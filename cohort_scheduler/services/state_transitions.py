from datetime import datetime
from typing import Dict, FrozenSet, Optional
import enum

from cohort_scheduler.db.models import (
    ActionStatus,
    DeliveryStatus,
    GroupAssignmentStatus,
    SubGroupAssignmentStatus,
)
from cohort_scheduler.db.store import touch
from cohort_scheduler.utils.errors import InvalidTransitionError

TransitionTable = Dict[enum.Enum, FrozenSet[enum.Enum]]


GROUP_ASSIGNMENT_TRANSITIONS: TransitionTable = {
    GroupAssignmentStatus.ACTIVE: frozenset(
        {
            GroupAssignmentStatus.PAUSED,
            GroupAssignmentStatus.COMPLETED,
            GroupAssignmentStatus.CANCELED,
        }
    ),
    GroupAssignmentStatus.PAUSED: frozenset({GroupAssignmentStatus.CANCELED}),
    GroupAssignmentStatus.COMPLETED: frozenset(),
    GroupAssignmentStatus.CANCELED: frozenset(),
}

SUB_GROUP_ASSIGNMENT_TRANSITIONS: TransitionTable = {
    SubGroupAssignmentStatus.PENDING: frozenset(
        {SubGroupAssignmentStatus.ACTIVE, SubGroupAssignmentStatus.CANCELED}
    ),
    SubGroupAssignmentStatus.ACTIVE: frozenset(
        {SubGroupAssignmentStatus.COMPLETED, SubGroupAssignmentStatus.CANCELED}
    ),
    SubGroupAssignmentStatus.COMPLETED: frozenset(),
    SubGroupAssignmentStatus.CANCELED: frozenset(),
}

ACTION_TRANSITIONS: TransitionTable = {
    ActionStatus.PENDING: frozenset(
        {
            ActionStatus.DISPLAYED,
            ActionStatus.ENQUEUED,
            ActionStatus.FAILED_TO_ENQUEUE,
            ActionStatus.CANCELED,
        }
    ),
    ActionStatus.ENQUEUED: frozenset(
        {
            ActionStatus.SENT,
            ActionStatus.DELIVERED,
            ActionStatus.OPENED,
            ActionStatus.CLICKED,
            ActionStatus.FAILED_TO_SEND,
            ActionStatus.CANCELED,
        }
    ),
    ActionStatus.SENT: frozenset(
        {
            ActionStatus.DELIVERED,
            ActionStatus.OPENED,
            ActionStatus.CLICKED,
            ActionStatus.FAILED_TO_SEND,
        }
    ),
    ActionStatus.DELIVERED: frozenset({ActionStatus.OPENED, ActionStatus.CLICKED}),
    ActionStatus.OPENED: frozenset({ActionStatus.CLICKED}),
    ActionStatus.CLICKED: frozenset(),
    ActionStatus.DISPLAYED: frozenset(),
    ActionStatus.FAILED_TO_ENQUEUE: frozenset(),
    ActionStatus.FAILED_TO_SEND: frozenset(),
    ActionStatus.CANCELED: frozenset(),
}

DELIVERY_TRANSITIONS: TransitionTable = {
    DeliveryStatus.ENQUEUED: frozenset(
        {
            DeliveryStatus.SENT,
            DeliveryStatus.DELIVERED,
            DeliveryStatus.OPENED,
            DeliveryStatus.CLICKED,
            DeliveryStatus.FAILED_TO_SEND,
            DeliveryStatus.CANCELED,
        }
    ),
    DeliveryStatus.SENT: frozenset(
        {
            DeliveryStatus.DELIVERED,
            DeliveryStatus.OPENED,
            DeliveryStatus.CLICKED,
            DeliveryStatus.FAILED_TO_SEND,
        }
    ),
    DeliveryStatus.DELIVERED: frozenset(
        {DeliveryStatus.OPENED, DeliveryStatus.CLICKED}
    ),
    DeliveryStatus.OPENED: frozenset({DeliveryStatus.CLICKED}),
    DeliveryStatus.CLICKED: frozenset(),
    DeliveryStatus.FAILED_TO_SEND: frozenset(),
    DeliveryStatus.CANCELED: frozenset(),
}


def can_transition(table: TransitionTable, current: enum.Enum, target: enum.Enum) -> bool:
    return target in table.get(current, frozenset())


def is_terminal(table: TransitionTable, status: enum.Enum) -> bool:
    return not table.get(status)


# Sent or further along; the action needs no more work from the scheduler
DONE_ACTION_STATUSES = frozenset(
    {ActionStatus.SENT, ActionStatus.DELIVERED, ActionStatus.OPENED}
) | frozenset(status for status in ActionStatus if is_terminal(ACTION_TRANSITIONS, status))


def transition(
    entity, target: enum.Enum, table: TransitionTable, now: Optional[datetime] = None
) -> None:
    """
    Move `entity.status` to `target` and stamp updated_at.

    Raises:
        InvalidTransitionError: If the table does not allow current -> target
    """
    current = entity.status
    if not can_transition(table, current, target):
        raise InvalidTransitionError(
            f"{type(entity).__name__} {getattr(entity, 'id', None)} cannot move "
            f"from '{current.value}' to '{target.value}'"
        )
    entity.status = target
    touch(entity, now)
