"""Server-sent event stream of policy-aware subscriptions."""

import asyncio
import logging
from typing import AsyncIterator

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse

from kitchen_jobs.errors import SubscriptionTransportError
from kitchen_jobs.events.types import CALENDAR_EVENTS, EVENT_PAYLOADS
from kitchen_jobs.policy import PolicyContext
from kitchen_jobs.services import KitchenJobs
from .deps import get_jobs, get_policy_context

router = APIRouter()
logger = logging.getLogger(__name__)

DISCONNECT_POLL_SECONDS = 1.0


async def _watch_disconnect(request: Request, cancel: asyncio.Event) -> None:
    while not cancel.is_set():
        if await request.is_disconnected():
            cancel.set()
            return
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


async def event_stream(
    jobs: KitchenJobs,
    ctx: PolicyContext,
    event: str,
    request: Request,
) -> AsyncIterator[str]:
    """Format each received payload as an SSE frame until the client leaves."""
    cancel = asyncio.Event()
    watcher = asyncio.create_task(_watch_disconnect(request, cancel))
    if event in CALENDAR_EVENTS:
        # Sync state is only ever sent to the owning user
        stream = jobs.router.subscribe_user(ctx.user_id, event, cancel)
    else:
        stream = jobs.router.subscribe_policy_aware(ctx, event, cancel)

    log_extra = {"event": event, "user_id": ctx.user_id, "household_key": ctx.household_key}
    logger.info("Event stream opened", extra=log_extra)

    try:
        yield ": connected\n\n"
        async for data in stream:
            yield f"event: {event}\ndata: {data.model_dump_json()}\n\n"
    except SubscriptionTransportError as e:
        logger.warning(f"Event stream lost its subscription: {e}", extra=log_extra)
        yield "event: error\ndata: {\"reason\": \"subscription lost\"}\n\n"
    finally:
        cancel.set()
        watcher.cancel()
        await stream.aclose()
        logger.info("Event stream closed", extra=log_extra)


@router.get("/{event}")
async def subscribe(
    event: str,
    request: Request,
    ctx: PolicyContext = Depends(get_policy_context),
    jobs: KitchenJobs = Depends(get_jobs),
):
    """
    Stream one event type as text/event-stream.

    Recipe events listen on the household, broadcast and user channels at
    once, so the caller receives the event whichever visibility policy it
    was sent under. Calendar sync events listen on the user channel only.
    """
    if event not in EVENT_PAYLOADS:
        raise HTTPException(status_code=404, detail=f"Unknown event: {event}")

    return StreamingResponse(
        event_stream(jobs, ctx, event, request),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
