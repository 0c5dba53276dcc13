from datetime import datetime
from typing import Callable, Optional, Tuple, Type, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cohort_scheduler.db.custom_types import parse_uuid

from cohort_scheduler.utils.datetime_utils import naive_utc_now, to_naive_utc
from cohort_scheduler.utils.logging import get_logger

logger = get_logger()

T = TypeVar("T")


def touch(entity, now: Optional[datetime] = None) -> None:
    """Stamp updated_at on an entity that is about to be written."""
    entity.updated_at = to_naive_utc(now) if now is not None else naive_utc_now()


def get_by_id(db: Session, model: Type[T], entity_id) -> Optional[T]:
    """Primary key lookup; an id that is not a UUID matches nothing."""
    key = parse_uuid(entity_id)
    if key is None:
        return None
    return db.get(model, key)


def insert_or_get_existing(
    db: Session, entity: T, find_existing: Callable[[], Optional[T]]
) -> Tuple[T, bool]:
    """
    Insert `entity` inside a savepoint and let the store's unique constraints decide.

    When the insert loses to an existing row (earlier call or concurrent writer),
    the savepoint is rolled back and the existing row is returned instead.

    Returns:
        (row, created) where created is False if an existing row was returned

    Raises:
        IntegrityError: If the insert failed and no existing row explains it
    """
    try:
        with db.begin_nested():
            db.add(entity)
            db.flush()
        return entity, True
    except IntegrityError:
        existing = find_existing()
        if existing is None:
            raise
        logger.debug(
            f"{type(entity).__name__} already exists as {getattr(existing, 'id', None)}"
        )
        return existing, False
