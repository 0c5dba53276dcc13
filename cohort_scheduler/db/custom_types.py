from typing import Optional, Type
import enum
import uuid

from sqlalchemy import Enum, String, TypeDecorator


class StringUUID(TypeDecorator):
    """Stores UUIDs as 36-character strings and always returns strings."""

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        """Convert Python value to database value."""
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return str(value)
        return str(uuid.UUID(str(value)))

    def process_result_value(self, value, dialect):
        """Convert database value to Python value (always string)."""
        if value is None:
            return value
        return str(value)


def new_uuid() -> str:
    return str(uuid.uuid4())


def parse_uuid(value) -> Optional[str]:
    """Canonical string form of `value`, or None if it is not a UUID."""
    if isinstance(value, uuid.UUID):
        return str(value)
    try:
        return str(uuid.UUID(str(value)))
    except (TypeError, ValueError, AttributeError):
        return None


def StatusEnum(enum_cls: Type[enum.Enum], length: int = 32) -> Enum:
    """
    Enum column stored as its lowercase value in a plain VARCHAR.

    Partial unique indexes filter on these values (e.g. status IN ('active','paused')),
    so the stored text must be the value, not the member name.
    """
    return Enum(
        enum_cls,
        native_enum=False,
        length=length,
        values_callable=lambda members: [member.value for member in members],
        validate_strings=True,
    )
