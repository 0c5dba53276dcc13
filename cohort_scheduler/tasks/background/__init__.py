from .group_assignment_resolver import resolve_group_assignment_task
from .message_enqueuer import enqueue_message_task

__all__ = [
    "resolve_group_assignment_task",
    "enqueue_message_task",
]
