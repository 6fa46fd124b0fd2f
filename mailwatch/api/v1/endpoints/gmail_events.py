"""
Gmail Push Notification Webhook

This endpoint receives real-time notifications from Google Cloud Pub/Sub
whenever Gmail detects changes in a connected mailbox.

Pipeline:
1. Receive push notification with emailAddress + historyId
2. Find the user and their stored historyId
3. Fetch new messages using Gmail History API (incremental sync)
4. Advance the stored historyId

Anything other than a 2xx makes Pub/Sub redeliver, so only real failures
return 500.
"""

from fastapi import APIRouter, Request, Depends
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from mailwatch.database import get_db
from mailwatch.services.gmail_service import GmailClient, get_gmail_client
from mailwatch.services.identity_resolver import get_identity_resolver
from mailwatch.services.sync_orchestrator import SyncOrchestrator

router = APIRouter(prefix="/gmail", tags=["Gmail Push"])


def get_sync_orchestrator(
    db: Session = Depends(get_db),
    resolver=Depends(get_identity_resolver),
    gmail: GmailClient = Depends(get_gmail_client)
) -> SyncOrchestrator:
    """Assemble the orchestrator from its injected collaborators."""
    return SyncOrchestrator(db=db, resolver=resolver, gmail=gmail)


@router.post("/events")
async def gmail_events(
    request: Request,
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator)
):
    """
    Webhook endpoint for Gmail push notifications via Pub/Sub.

    Returns:
        200 {message, processedMessages?} when processed or skipped,
        500 {message, error} on failure
    """
    body = await request.body()
    # Directory, Gmail and database calls all block; keep them off the event loop
    result = await run_in_threadpool(orchestrator.handle, body)

    return JSONResponse(status_code=result.status_code, content=result.to_response_body())
