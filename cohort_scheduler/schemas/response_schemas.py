from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid

from pydantic import Field

from cohort_scheduler.config.settings import settings
from cohort_scheduler.schemas.camel_base_model import CamelCaseBaseModel as BaseModel


class ResponseStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class ApiResponse(BaseModel):
    """
    Envelope shared by every JSON endpoint.

    Error responses carry `meta.error_code` (e.g. CONFLICT, NOT_FOUND) so clients
    can branch without parsing `message`.
    """

    success: bool
    status: ResponseStatus
    message: str
    data: Optional[Any] = None
    meta: Optional[Dict[str, Any]] = None
    errors: Optional[List[Dict[str, Any]]] = None
    timestamp: str = Field(default_factory=_timestamp)
    request_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    path: Optional[str] = None
    version: str = Field(default_factory=lambda: settings.VERSION)
