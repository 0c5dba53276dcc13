from cohort_scheduler.celery import celery
from cohort_scheduler.db.session import get_sync_session
from cohort_scheduler.services.delivery_provider import get_delivery_provider
from cohort_scheduler.services.scheduling_service import SchedulingService
from cohort_scheduler.utils.logging import get_logger


@celery.task(bind=True, max_retries=3, default_retry_delay=60)
def scheduling_sweep_task(self, request_id: str):
    """
    Periodic pass over all enrollments.

    Runs every 15 minutes to:
    1. Resolve active enrollments that have no stages yet
    2. Activate each user's pending stages whose start date has arrived in
       the user's timezone, materializing their actions
    3. Complete finished stages and enrollments

    Each enrollment and each user is committed on its own, so one failure does
    not hold back anyone else.

    Args:
        request_id: Request ID for tracking purposes
    """
    logger = get_logger().bind(request_id=request_id)

    for db_session in get_sync_session():
        service = SchedulingService(db_session, provider=get_delivery_provider())
        resolved_count = 0
        activated_count = 0
        failed_count = 0

        logger.info("Starting scheduling sweep")

        pending_ids = [ga.id for ga in service.unresolved_group_assignments()]
        for group_assignment_id in pending_ids:
            try:
                service.schedule_group_assignment(group_assignment_id)
                db_session.commit()
                resolved_count += 1
            except Exception as e:
                db_session.rollback()
                failed_count += 1
                logger.error(
                    f"Failed to resolve group assignment {group_assignment_id}: {str(e)}"
                )

        for user_id in service.users_with_open_stages():
            try:
                activated_count += service.activate_due_sub_group_assignments(user_id)
                db_session.commit()
            except Exception as e:
                db_session.rollback()
                failed_count += 1
                logger.error(f"Failed to activate stages for user {user_id}: {str(e)}")

        logger.info(
            f"Scheduling sweep finished: {resolved_count} resolved, "
            f"{activated_count} activated, {failed_count} failed"
        )
        return {
            "success": failed_count == 0,
            "resolved_count": resolved_count,
            "activated_count": activated_count,
            "failed_count": failed_count,
            "request_id": request_id,
        }
