from fastapi import APIRouter
from mailwatch.api.v1.endpoints import gmail_events, gmail_watch, user_data

api_router = APIRouter(prefix="/api/v1")

# Include all endpoint routers
api_router.include_router(gmail_events.router)
api_router.include_router(gmail_watch.router)
api_router.include_router(user_data.router)
