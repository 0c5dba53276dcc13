from datetime import date, datetime
from typing import Optional

from pydantic import Field

from cohort_scheduler.db.models import ActionStatus, GroupAssignmentStatus
from cohort_scheduler.schemas.camel_base_model import CamelCaseBaseModel as BaseModel


class CreateEnrollmentRequest(BaseModel):
    user_id: str = Field(..., description="User to enroll")
    group_id: str = Field(..., description="Active group to enroll the user in")
    start_date: date = Field(..., description="Anchor date of the first subgroup")


class RestartEnrollmentRequest(BaseModel):
    restart_date: date = Field(..., description="Date the first remaining subgroup starts on")


class GroupAssignmentResponse(BaseModel):
    id: str
    user_id: str
    group_id: str
    start_date: date
    status: GroupAssignmentStatus
    restarted_from_id: Optional[str] = None


class DisplayableActionResponse(BaseModel):
    id: str
    action_template_id: str
    sub_group_assignment_id: str
    action_datetime: datetime
    status: ActionStatus
