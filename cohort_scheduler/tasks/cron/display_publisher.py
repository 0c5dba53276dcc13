from cohort_scheduler.celery import celery
from cohort_scheduler.db.session import get_sync_session
from cohort_scheduler.services.scheduling_service import SchedulingService
from cohort_scheduler.utils.logging import get_logger


@celery.task(bind=True, max_retries=3, default_retry_delay=60)
def display_publisher_task(self, request_id: str):
    """Mark display actions whose time has come as displayed."""
    logger = get_logger().bind(request_id=request_id)

    for db_session in get_sync_session():
        try:
            published_count = SchedulingService(db_session).publish_due_displays()
            db_session.commit()

            logger.info(f"Published {published_count} display actions")
            return {
                "success": True,
                "published_count": published_count,
                "request_id": request_id,
            }
        except Exception as e:
            db_session.rollback()
            logger.error(f"Display publishing failed: {str(e)}")
            return {"success": False, "error": str(e), "request_id": request_id}
