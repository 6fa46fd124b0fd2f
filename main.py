from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from mailwatch.api.v1.api import api_router
from mailwatch.config import get_cors_origins
from mailwatch.database import engine, Base
from mailwatch.logger import get_logger
from mailwatch.models import UserCredential  # noqa: F401  registers the table

logger = get_logger("mailwatch")

app = FastAPI(
    title="Mailwatch",
    description="Gmail push notification sync for connected mailboxes",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup():
    """Create database tables on startup."""
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created/verified")


app.include_router(api_router)


@app.get("/")
def health_check():
    return {"status": "ok"}
