from typing import Dict

from pydantic import Field

from cohort_scheduler.schemas.camel_base_model import CamelCaseBaseModel as BaseModel


class DeliveryWebhookResult(BaseModel):
    received: int = Field(..., description="Number of events in the batch")
    counts: Dict[str, int] = Field(..., description="Applied, replayed and ignored counts")
