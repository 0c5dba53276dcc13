from fastapi import APIRouter, Depends, Request, Path
from sqlalchemy.orm import Session

from cohort_scheduler.db.session import get_sync_session
from cohort_scheduler.schemas.enrollment_schemas import DisplayableActionResponse
from cohort_scheduler.services.action_materializer import ActionMaterializer
from cohort_scheduler.utils.datetime_utils import utc_now
from cohort_scheduler.utils.responses import ResponseBuilder

users_router = APIRouter()


@users_router.get(
    "/{user_id}/displayable-actions",
    summary="Display actions visible to a user now",
)
async def get_displayable_actions(
    request: Request,
    user_id: str = Path(..., description="User ID"),
    db: Session = Depends(get_sync_session),
):
    actions = ActionMaterializer(db).get_displayable_actions(user_id, utc_now())
    data = [
        DisplayableActionResponse.model_validate(action).model_dump(by_alias=True)
        for action in actions
    ]
    return ResponseBuilder.success(
        request=request,
        data=data,
        message=f"{len(data)} displayable action{'s' if len(data) != 1 else ''} found",
    )
