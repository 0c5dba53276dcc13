from fastapi import APIRouter, Depends, Request, status, Path

from cohort_scheduler.schemas.group_schemas import GroupResponse, SupersedeGroupRequest
from cohort_scheduler.services.template_service import (
    TemplateService,
    get_template_service,
)
from cohort_scheduler.utils.responses import ResponseBuilder

groups_router = APIRouter()


@groups_router.post(
    "/{group_id}/supersede",
    status_code=status.HTTP_201_CREATED,
    summary="Publish a new version of a group",
    description="Mark the group inactive and create its replacement; existing enrollments keep the old version",
)
async def supersede_group(
    request: Request,
    supersede_data: SupersedeGroupRequest,
    group_id: str = Path(..., description="Group ID"),
    template_service: TemplateService = Depends(get_template_service),
):
    replacement = template_service.supersede_group(group_id, supersede_data.group_name)
    template_service.db.commit()

    return ResponseBuilder.success(
        request=request,
        data=GroupResponse.model_validate(replacement).model_dump(by_alias=True),
        message="Group superseded successfully",
        status_code=status.HTTP_201_CREATED,
    )
