from datetime import datetime, date, time
from enum import Enum

from pydantic import BaseModel, ConfigDict, field_serializer
from pydantic.alias_generators import to_camel


def _isoformat(value: datetime) -> str:
    # Stored instants are naive UTC
    if value.tzinfo is None:
        return value.isoformat() + "Z"
    return value.isoformat()


class CamelCaseBaseModel(BaseModel):
    """
    camelCase on the wire, snake_case in Python.

    Naive datetimes are read as UTC and rendered with a trailing "Z"; enums
    render as their values.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )

    @field_serializer("*")
    def serialize_any(self, value):
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, datetime):
            return _isoformat(value)
        if isinstance(value, (date, time)):
            return value.isoformat()
        if isinstance(value, (list, tuple, set)):
            return [self.serialize_any(item) for item in value]
        if isinstance(value, dict):
            return {key: self.serialize_any(val) for key, val in value.items()}
        return value
