# API Package - Centralized imports
# Allows easy importing of all routers and auth dependencies

from .auth import router as auth_router, get_current_user, require_roles, create_access_token
from .hospitals import router as hospitals_router
from .doctors import router as doctors_router
from .appointments import router as appointments_router
from .queues import router as queues_router
from .chat import router as chat_router
from .realtime import router as realtime_router

__all__ = [
    # Auth
    "auth_router",
    "get_current_user",
    "require_roles",
    "create_access_token",

    # Routers
    "hospitals_router",
    "doctors_router",
    "appointments_router",
    "queues_router",
    "chat_router",
    "realtime_router",
]
