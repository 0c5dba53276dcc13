from fastapi import APIRouter

from cohort_scheduler.routers.scheduling import (
    enrollments_router,
    groups_router,
    users_router,
)
from cohort_scheduler.routers.shared import health_router

main_router = APIRouter()
main_router.include_router(health_router, prefix="/health", tags=["health"])
main_router.include_router(enrollments_router, prefix="/enrollments", tags=["enrollments"])
main_router.include_router(groups_router, prefix="/groups", tags=["groups"])
main_router.include_router(users_router, prefix="/users", tags=["users"])
