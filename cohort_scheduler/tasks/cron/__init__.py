from .delivery_reconciler import delivery_reconciler_task
from .display_publisher import display_publisher_task
from .message_dispatch import message_dispatch_task
from .scheduling_sweep import scheduling_sweep_task

__all__ = [
    "delivery_reconciler_task",
    "display_publisher_task",
    "message_dispatch_task",
    "scheduling_sweep_task",
]
