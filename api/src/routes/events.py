"""
Event ingress endpoints.
"""

from fastapi import APIRouter, Request, HTTPException, Header, Depends, Response
from typing import Optional
import json
import logging

from api.src.config import get_settings
from api.src.deps import get_scheduler
from api.src.models.run import EventResponse
from api.src.services.intake import InvalidEvent, normalize_event, verify_signature
from controller.src.errors import ConcurrencyExceeded, DefinitionInvalid, TriggerNotMatched
from controller.src.services.scheduler import Scheduler

logger = logging.getLogger(__name__)

router = APIRouter(tags=["events"])

# Suggested wait before retrying a rejected trigger, in seconds
RETRY_AFTER = 30

@router.post("/events", response_model=EventResponse)
async def receive_event(
    request: Request,
    response: Response,
    scheduler: Scheduler = Depends(get_scheduler),
    x_kiln_signature_256: Optional[str] = Header(None),
    x_kiln_event: Optional[str] = Header(None),
):
    """
    Receive a repository event and schedule a run for it.
    """
    # Get raw body for signature verification
    body = await request.body()

    if not verify_signature(body, x_kiln_signature_256, get_settings().webhook_secret):
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    if x_kiln_event == "ping":
        return EventResponse(status="pong")

    try:
        event = normalize_event(payload, x_kiln_event)
    except InvalidEvent as e:
        raise HTTPException(status_code=400, detail=str(e))

    definition = payload.get("definition")
    if definition is None:
        definition = scheduler.store.get(event.repository)
    if definition is None:
        raise HTTPException(
            status_code=422,
            detail=f"No pipeline definition registered for {event.repository}",
        )

    try:
        run_id = await scheduler.submit(event, definition)
    except DefinitionInvalid as e:
        logger.warning(f"Invalid pipeline definition for {event.repository}: {e}")
        raise HTTPException(status_code=422, detail=str(e))
    except TriggerNotMatched as e:
        logger.info(f"Event for {event.repository}@{event.branch} skipped: {e}")
        return EventResponse(status="skipped", reason=str(e))
    except ConcurrencyExceeded as e:
        raise HTTPException(
            status_code=429,
            detail=str(e),
            headers={"Retry-After": str(RETRY_AFTER)},
        )

    run = scheduler.get_run(run_id)
    response.status_code = 202
    return EventResponse(status="queued", run_id=run_id, jobs=list(run.jobs))
