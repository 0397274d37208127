"""Route registration for the relay service.

Everything is mounted under ``/api``, the prefix the browser client targets.
"""

from fastapi import APIRouter, FastAPI

from . import auth, chat, events, system


def register_routes(app: FastAPI) -> None:
    """Register system, auth, event and chat routers on the app."""
    router = APIRouter(prefix="/api")
    router.include_router(system.router, tags=["system"])
    router.include_router(auth.router, tags=["auth"])
    router.include_router(events.router, tags=["events"])
    router.include_router(chat.router, tags=["chat"])
    app.include_router(router)
