"""
Ingestion endpoint for tracking events.

Gates, in order, each rejecting the whole request:
1. Per-IP rate limit
2. Body validation (single event or array of events)
3. Per-project rate limit for every distinct project id
4. Project existence

Only then is every event dispatched. Events of one session run in batch
order, distinct sessions run concurrently, and a failing event is
logged without affecting the others.
"""

import json
from typing import Dict, List

import anyio
import structlog
from fastapi import APIRouter, Depends, Request, Response, status
from pydantic import ValidationError
from sqlmodel import Session

from pulse.api.deps import get_event_processor, get_rate_limiter
from pulse.core.config import settings
from pulse.core.errors import (
    ErrorHandler,
    EventValidationError,
    RateLimitedError,
    UnknownProjectError,
    capture_message,
)
from pulse.core.rate_limit import RateLimiter
from pulse.db import get_session
from pulse.schemas import ErrorResponse, TrackingEvent, TrackingEventBatch
from pulse.services.event_processor import EventProcessor
from pulse.services.ip import get_client_ip
from pulse.services.store import AnalyticsStore

logger = structlog.get_logger(__name__)

router = APIRouter()

CORS_PREFLIGHT_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


async def parse_events(request: Request) -> List[TrackingEvent]:
    """Decode the body into a list of events; a single object is a batch of one."""
    try:
        body = await request.json()
    except ValueError:
        raise EventValidationError([{"msg": "Request body is not valid JSON"}])

    events = body if isinstance(body, list) else [body]
    try:
        return TrackingEventBatch.validate_python(events)
    except ValidationError as e:
        raise EventValidationError(json.loads(e.json(include_url=False)))


def group_by_session(events: List[TrackingEvent]) -> Dict[str, List[TrackingEvent]]:
    """Group events by session id, keeping batch order inside each group."""
    groups: Dict[str, List[TrackingEvent]] = {}
    for event in events:
        groups.setdefault(event.session_id, []).append(event)
    return groups


@router.post(
    "/collect",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={400: {"model": ErrorResponse}, 429: {"model": ErrorResponse}},
)
async def collect(
    request: Request,
    session: Session = Depends(get_session),
    limiter: RateLimiter = Depends(get_rate_limiter),
    processor: EventProcessor = Depends(get_event_processor),
):
    """Accept a tracking event or a batch of them."""
    ip = get_client_ip(request.headers)
    ip_limit = limiter.check(f"ip:{ip}", settings.IP_RATE_LIMIT, settings.IP_RATE_WINDOW_SECONDS)
    if not ip_limit.allowed:
        raise RateLimitedError("ip", ip_limit.retry_after)

    events = await parse_events(request)

    project_ids = list(dict.fromkeys(event.project_id for event in events))
    for project_id in project_ids:
        project_limit = limiter.check(
            f"project:{project_id}", settings.PROJECT_RATE_LIMIT, settings.PROJECT_RATE_WINDOW_SECONDS
        )
        if not project_limit.allowed:
            logger.warning("Project rate limit exceeded", project_id=project_id)
            raise RateLimitedError("project", project_limit.retry_after)

    if project_ids:
        store = AnalyticsStore(session)
        valid_ids = await anyio.to_thread.run_sync(store.existing_project_ids, project_ids)
        invalid_ids = [project_id for project_id in project_ids if project_id not in valid_ids]
        if invalid_ids:
            logger.info("Rejected batch with unknown projects", projects=invalid_ids)
            raise UnknownProjectError(invalid_ids)

    failures: List[str] = []

    async def process_group(group: List[TrackingEvent]) -> None:
        for event in group:
            context = {"project_id": event.project_id, "session_id": event.session_id}
            with ErrorHandler("process_event", context=context) as handler:
                await processor.process(event, request.headers)
            if handler.error is not None:
                failures.append(event.session_id)

    async with anyio.create_task_group() as tg:
        for group in group_by_session(events).values():
            tg.start_soon(process_group, group)

    logger.info(
        "Batch accepted",
        events=len(events),
        sessions=len({event.session_id for event in events}),
        failed=len(failures),
    )
    if failures:
        capture_message(
            "Events failed after admission",
            level="warning",
            context={"failed": len(failures), "sessions": sorted(set(failures))},
        )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.options("/collect")
async def collect_preflight():
    """Preflight response allowing cross-origin POSTs from any site."""
    return Response(status_code=status.HTTP_204_NO_CONTENT, headers=CORS_PREFLIGHT_HEADERS)
