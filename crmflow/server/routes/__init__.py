"""Route registration for the CrmFlow API."""

from fastapi import FastAPI

from .automations import router as automations_router
from .cron import router as cron_router
from .events import router as events_router
from .health import router as health_router


def register_routes(app: FastAPI):
    app.include_router(health_router)
    app.include_router(cron_router)
    app.include_router(automations_router)
    app.include_router(events_router)
