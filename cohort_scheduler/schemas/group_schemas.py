from typing import Optional

from pydantic import Field

from cohort_scheduler.db.models import TemplateStatus
from cohort_scheduler.schemas.camel_base_model import CamelCaseBaseModel as BaseModel


class SupersedeGroupRequest(BaseModel):
    group_name: str = Field(..., min_length=1, max_length=255)


class GroupResponse(BaseModel):
    id: str
    group_name: str
    status: TemplateStatus
    superseded_by_id: Optional[str] = None
