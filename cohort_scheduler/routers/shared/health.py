from fastapi import APIRouter, Depends, Request, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from cohort_scheduler.config.settings import settings
from cohort_scheduler.db.session import get_sync_session
from cohort_scheduler.utils.logging import get_logger
from cohort_scheduler.utils.responses import ResponseBuilder

health_router = APIRouter()
logger = get_logger()


@health_router.get("")
def health_check(request: Request, db: Session = Depends(get_sync_session)):
    """Liveness plus a round trip to the database."""
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error(f"Health check database query failed: {e}")
        return ResponseBuilder.error(
            request=request,
            message="Database unavailable",
            error_code="DATABASE_UNAVAILABLE",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )

    return ResponseBuilder.success(
        request=request,
        data={"status": "healthy", "service": settings.NAME, "database": "ok"},
        message="Service is running",
    )
