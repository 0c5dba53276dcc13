from typing import Optional

from cohort_scheduler.celery import celery
from cohort_scheduler.config.settings import settings
from cohort_scheduler.db.session import get_sync_session
from cohort_scheduler.services.delivery_provider import get_delivery_provider
from cohort_scheduler.services.delivery_state_machine import (
    DeliveryStateMachine,
    EnqueueOutcome,
    EnqueueResult,
)
from cohort_scheduler.utils.logging import get_logger


@celery.task(
    bind=True,
    max_retries=settings.DELIVERY_MAX_ATTEMPTS,
    default_retry_delay=settings.DELIVERY_RETRY_BASE_DELAY,
)
def enqueue_message_task(self, request_id: str, action_instance_id: str):
    """
    Hand one send_message action to the delivery provider.

    Each run is a single attempt. While the attempt ceiling has not been
    reached a failed attempt re-schedules this task with the backoff delay
    computed by the state machine; at the ceiling the action becomes
    failed_to_enqueue and is never retried.

    Args:
        request_id: The request ID of the dispatching run
        action_instance_id: UUID of the action instance (as string)
    """
    logger = get_logger().bind(request_id=request_id)
    outcome: Optional[EnqueueOutcome] = None

    for db_session in get_sync_session():
        try:
            machine = DeliveryStateMachine(db_session, get_delivery_provider())
            outcome = machine.attempt_enqueue(action_instance_id)
            db_session.commit()
        except Exception as e:
            db_session.rollback()
            logger.error(
                f"Enqueue of action instance {action_instance_id} errored: {str(e)}"
            )
            return {"success": False, "error": str(e), "request_id": request_id}

    if outcome.result == EnqueueResult.RETRY:
        raise self.retry(countdown=outcome.retry_delay)

    return {
        "success": outcome.result in (EnqueueResult.ENQUEUED, EnqueueResult.SKIPPED),
        "result": outcome.result.value,
        "attempt_number": outcome.attempt_number,
        "error": outcome.error,
        "action_instance_id": action_instance_id,
        "request_id": request_id,
    }
