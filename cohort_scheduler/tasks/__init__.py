from .background import *
from .cron import *

__all__ = [
    "resolve_group_assignment_task",
    "enqueue_message_task",
    # Scheduled/Cron Tasks
    "scheduling_sweep_task",
    "message_dispatch_task",
    "display_publisher_task",
    "delivery_reconciler_task",
]
