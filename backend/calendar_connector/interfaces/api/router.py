from fastapi import APIRouter

from calendar_connector.interfaces.api.google_calendar import router as google_calendar_router
from calendar_connector.interfaces.api.health import router as health_router

api_router = APIRouter()
api_router.include_router(health_router, tags=["health"])
api_router.include_router(google_calendar_router)
