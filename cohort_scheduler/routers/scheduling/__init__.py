from .enrollments import enrollments_router
from .groups import groups_router
from .users import users_router

__all__ = ["enrollments_router", "groups_router", "users_router"]
