from cohort_scheduler.celery import celery
from cohort_scheduler.db.session import get_sync_session
from cohort_scheduler.db.models import SubGroupAssignmentStatus
from cohort_scheduler.services.delivery_provider import get_delivery_provider
from cohort_scheduler.services.scheduling_service import SchedulingService
from cohort_scheduler.utils.errors import ValidationError
from cohort_scheduler.utils.logging import get_logger


@celery.task(bind=True, max_retries=3, default_retry_delay=60)
def resolve_group_assignment_task(self, request_id: str, group_assignment_id: str):
    """
    Resolve a new enrollment into its stages and materialize the active ones.

    A misconfigured subgroup chain aborts the whole resolution; nothing is
    written and the task is not retried.

    Args:
        request_id: Request ID of the enrollment call
        group_assignment_id: UUID of the group assignment (as string)
    """
    logger = get_logger().bind(request_id=request_id)

    for db_session in get_sync_session():
        try:
            service = SchedulingService(db_session, provider=get_delivery_provider())
            stages = service.schedule_group_assignment(group_assignment_id)
            db_session.commit()

            active_count = sum(
                1 for stage in stages if stage.status == SubGroupAssignmentStatus.ACTIVE
            )
            logger.info(
                f"Resolved group assignment {group_assignment_id} into "
                f"{len(stages)} stages ({active_count} active)"
            )
            return {
                "success": True,
                "group_assignment_id": group_assignment_id,
                "stage_count": len(stages),
                "active_count": active_count,
                "request_id": request_id,
            }
        except ValidationError as e:
            db_session.rollback()
            logger.error(
                f"Invalid template configuration for group assignment "
                f"{group_assignment_id}: {e.message}"
            )
            return {
                "success": False,
                "error": e.message,
                "error_code": e.error_code,
                "request_id": request_id,
            }
        except Exception as e:
            db_session.rollback()
            logger.error(
                f"Failed to resolve group assignment {group_assignment_id}: {str(e)}"
            )
            return {"success": False, "error": str(e), "request_id": request_id}
