from cohort_scheduler.celery import celery
from cohort_scheduler.db.session import get_sync_session
from cohort_scheduler.services.delivery_state_machine import DeliveryStateMachine
from cohort_scheduler.utils.logging import get_logger


@celery.task(bind=True, max_retries=3, default_retry_delay=60)
def delivery_reconciler_task(self, request_id: str):
    """Apply provider callbacks stored before their message record was committed."""
    logger = get_logger().bind(request_id=request_id)

    for db_session in get_sync_session():
        try:
            applied_count = DeliveryStateMachine(db_session).reconcile_orphaned_events()
            db_session.commit()

            if applied_count:
                logger.info(f"Applied {applied_count} stored provider events")
            return {
                "success": True,
                "applied_count": applied_count,
                "request_id": request_id,
            }
        except Exception as e:
            db_session.rollback()
            logger.error(f"Delivery reconciliation failed: {str(e)}")
            return {"success": False, "error": str(e), "request_id": request_id}
