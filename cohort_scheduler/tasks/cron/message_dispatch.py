from datetime import timedelta

from cohort_scheduler.celery import celery
from cohort_scheduler.config.settings import settings
from cohort_scheduler.db.session import get_sync_session
from cohort_scheduler.services.scheduling_service import SchedulingService
from cohort_scheduler.tasks.background.message_enqueuer import enqueue_message_task
from cohort_scheduler.utils.logging import get_logger


@celery.task(bind=True, max_retries=3, default_retry_delay=60)
def message_dispatch_task(self, request_id: str):
    """
    Fan out enqueue tasks for messages due within the lookahead window.

    Only messages without any enqueue attempt are dispatched; messages that
    already failed an attempt are driven by their own task's retries.

    Args:
        request_id: Request ID for tracking purposes
    """
    logger = get_logger().bind(request_id=request_id)

    for db_session in get_sync_session():
        try:
            service = SchedulingService(db_session)
            due = service.due_message_instances(
                timedelta(hours=settings.DELIVERY_LOOKAHEAD_HOURS),
                exclude_attempted=True,
            )
            instance_ids = [instance.id for instance in due]

            for action_instance_id in instance_ids:
                enqueue_message_task.delay(request_id, action_instance_id)

            logger.info(f"Dispatched {len(instance_ids)} messages for enqueue")
            return {
                "success": True,
                "dispatched_count": len(instance_ids),
                "request_id": request_id,
            }
        except Exception as e:
            logger.error(f"Message dispatch failed: {str(e)}")
            return {"success": False, "error": str(e), "request_id": request_id}
