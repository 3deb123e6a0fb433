"""API routers."""

from app.routers.public_task import router as public_task_router
from app.routers.runs import router as runs_router
from app.routers.webhooks import router as webhooks_router

__all__ = [
    "public_task_router",
    "runs_router",
    "webhooks_router",
]
