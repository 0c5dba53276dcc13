from fastapi import APIRouter, Depends, Request, status, Path

from cohort_scheduler.schemas.enrollment_schemas import (
    CreateEnrollmentRequest,
    GroupAssignmentResponse,
    RestartEnrollmentRequest,
)
from cohort_scheduler.services.enrollment_service import (
    EnrollmentService,
    get_enrollment_service,
)
from cohort_scheduler.tasks.background.group_assignment_resolver import (
    resolve_group_assignment_task,
)
from cohort_scheduler.utils.responses import ResponseBuilder

enrollments_router = APIRouter()


def _respond(request: Request, group_assignment, message: str, status_code: int):
    return ResponseBuilder.success(
        request=request,
        data=GroupAssignmentResponse.model_validate(group_assignment).model_dump(
            by_alias=True
        ),
        message=message,
        status_code=status_code,
    )


@enrollments_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Enroll a user in a group",
    description="Create an active enrollment and schedule resolution of its subgroups",
)
async def create_enrollment(
    request: Request,
    enrollment_data: CreateEnrollmentRequest,
    enrollment_service: EnrollmentService = Depends(get_enrollment_service),
):
    """Enroll a user in an active group"""
    group_assignment = enrollment_service.enroll(
        enrollment_data.user_id, enrollment_data.group_id, enrollment_data.start_date
    )
    enrollment_service.db.commit()

    resolve_group_assignment_task.delay(request.state.request_id, group_assignment.id)

    return _respond(
        request, group_assignment, "Enrollment created successfully", status.HTTP_201_CREATED
    )


@enrollments_router.post(
    "/{group_assignment_id}/pause",
    summary="Pause an enrollment",
    description="Pause an active enrollment and cancel its outstanding stages and actions",
)
async def pause_enrollment(
    request: Request,
    group_assignment_id: str = Path(..., description="Group assignment ID"),
    enrollment_service: EnrollmentService = Depends(get_enrollment_service),
):
    group_assignment = enrollment_service.pause(group_assignment_id)
    enrollment_service.db.commit()
    return _respond(
        request, group_assignment, "Enrollment paused successfully", status.HTTP_200_OK
    )


@enrollments_router.post(
    "/{group_assignment_id}/cancel",
    summary="Cancel an enrollment",
)
async def cancel_enrollment(
    request: Request,
    group_assignment_id: str = Path(..., description="Group assignment ID"),
    enrollment_service: EnrollmentService = Depends(get_enrollment_service),
):
    group_assignment = enrollment_service.cancel(group_assignment_id)
    enrollment_service.db.commit()
    return _respond(
        request, group_assignment, "Enrollment canceled successfully", status.HTTP_200_OK
    )


@enrollments_router.post(
    "/{group_assignment_id}/restart",
    status_code=status.HTTP_201_CREATED,
    summary="Restart a paused enrollment",
    description="Replace a paused enrollment with a new one that skips completed subgroups",
)
async def restart_enrollment(
    request: Request,
    restart_data: RestartEnrollmentRequest,
    group_assignment_id: str = Path(..., description="Group assignment ID"),
    enrollment_service: EnrollmentService = Depends(get_enrollment_service),
):
    group_assignment = enrollment_service.restart(
        group_assignment_id, restart_data.restart_date
    )
    enrollment_service.db.commit()

    resolve_group_assignment_task.delay(request.state.request_id, group_assignment.id)

    return _respond(
        request, group_assignment, "Enrollment restarted successfully", status.HTTP_201_CREATED
    )
