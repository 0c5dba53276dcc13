from .main_router import main_router
from .webhook import webhook_router

__all__ = ["main_router", "webhook_router"]
