import logging
from datetime import timedelta
from typing import Annotated, Optional, Type, Union

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ValidationError

from app.assistant.dependencies import (
    get_classifier,
    get_monitor,
    get_pipeline,
    get_query_cache,
    get_rate_limiter,
    get_session_manager,
)
from app.assistant.intent import IntentClassifier, estimate_complexity
from app.assistant.monitoring import QueryMonitor
from app.assistant.query_cache import QueryCache
from app.assistant.rate_limiter import RateLimiter
from app.assistant.service import ChatPipeline, run_to_completion
from app.assistant.sessions import SessionManager
from app.assistant.streaming import SSE_HEADERS, EventType, sse_body
from app.core import schemas
from app.core.models import utc_now
from app.core.security import Caller, get_current_caller

router = APIRouter(prefix="/chat", tags=["Chat"])

caller_dep = Annotated[Caller, Depends(get_current_caller)]
limiter_dep = Annotated[RateLimiter, Depends(get_rate_limiter)]
pipeline_dep = Annotated[ChatPipeline, Depends(get_pipeline)]


def _error(status_code: int, error: str, message: str, headers=None) -> JSONResponse:
    body = schemas.ErrorResponse(error=error, message=message)
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


async def _read_body(
    request: Request, model: Type[BaseModel]
) -> Union[BaseModel, JSONResponse]:
    """Parse the JSON body by hand so bad input is a 400 with a readable message."""
    try:
        payload = await request.json()
    except ValueError:
        return _error(400, "Invalid request", "Request body must be valid JSON")

    if not isinstance(payload, dict):
        return _error(400, "Invalid request", "Request body must be a JSON object")

    try:
        return model.model_validate(payload)
    except ValidationError as error:
        first = error.errors()[0]
        field = ".".join(str(part) for part in first["loc"]) or "body"
        message = first["msg"].removeprefix("Value error, ")
        return _error(400, "Invalid request", f"{field}: {message}")


def _wants_event_stream(request: Request, stream: bool) -> bool:
    return stream and "text/event-stream" in request.headers.get("accept", "")


def _window_text(seconds: int) -> str:
    if seconds % 3600 == 0:
        hours = seconds // 3600
        return f"{hours} hour" if hours == 1 else f"{hours} hours"
    minutes = max(1, seconds // 60)
    return f"{minutes} minute" if minutes == 1 else f"{minutes} minutes"


@router.post(
    "",
    responses={
        200: {"model": schemas.ChatResponse},
        400: {"model": schemas.ErrorResponse},
        429: {"model": schemas.RateLimitErrorResponse},
        500: {"model": schemas.ErrorResponse},
    },
)
async def chat(
    request: Request,
    caller: caller_dep,
    limiter: limiter_dep,
    pipeline: pipeline_dep,
    stream: bool = False,
):
    decision = await limiter.check(caller.id)
    rate_headers = decision.headers()

    if not decision.allowed:
        logging.info(f"Rate limit exceeded for user {caller.id}")
        body = schemas.RateLimitErrorResponse(
            error="Rate limit exceeded",
            message=f"Too many requests. Please try again after {decision.reset_at_iso}.",
            reset_at=decision.reset_at_iso,
        )
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content=body.model_dump(by_alias=True),
            headers=rate_headers,
        )

    chat_request = await _read_body(request, schemas.ChatRequest)
    if isinstance(chat_request, JSONResponse):
        return chat_request

    events = pipeline.run(
        caller,
        chat_request.message,
        pinned_mode=chat_request.mode,
        session_id=chat_request.session_id,
    )

    if _wants_event_stream(request, stream):
        return StreamingResponse(
            sse_body(events, request.is_disconnected, caller.id),
            media_type="text/event-stream",
            headers={**SSE_HEADERS, **rate_headers},
        )

    final = await run_to_completion(events)
    if final is None or final.type != EventType.DONE:
        payload = final.payload if final is not None else {}
        return _error(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            payload.get("error", "Internal server error"),
            payload.get("message", "Something went wrong while answering your question."),
            headers=rate_headers,
        )

    return JSONResponse(content=final.payload, headers=rate_headers)


# Health check
@router.get("")
async def chat_health(limiter: limiter_dep):
    return {
        "status": "ok",
        "service": "CRM chat assistant",
        "rateLimit": {
            "maxRequests": limiter.max_requests,
            "windowSeconds": limiter.window_seconds,
            "window": _window_text(limiter.window_seconds),
        },
        "streaming": {"supported": True, "endpoint": "/chat?stream=true"},
    }


# Operator view of how the assistant has been doing
@router.get("/stats")
async def chat_stats(
    caller: caller_dep,
    monitor: Annotated[QueryMonitor, Depends(get_monitor)],
    cache: Annotated[Optional[QueryCache], Depends(get_query_cache)],
    hours: int = Query(default=24, ge=1, le=24 * 30),
):
    if not caller.is_elevated:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only managers and admins can view assistant stats",
        )

    try:
        summary = await monitor.summary(since=utc_now() - timedelta(hours=hours))
    except Exception as error:
        logging.error(f"Failed to summarize query logs: {error}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to load assistant stats",
        )
    summary["cache"] = cache.stats() if cache is not None else None
    return summary


@router.post(
    "/intent-preview",
    response_model=schemas.IntentPreviewResponse,
    response_model_by_alias=True,
    responses={400: {"model": schemas.ErrorResponse}},
)
async def intent_preview(
    request: Request,
    caller: caller_dep,
    classifier: Annotated[IntentClassifier, Depends(get_classifier)],
):
    preview_request = await _read_body(request, schemas.IntentPreviewRequest)
    if isinstance(preview_request, JSONResponse):
        return preview_request

    intent = await classifier.classify(preview_request.message, caller.id, caller.role)
    return schemas.IntentPreviewResponse(
        intent=intent.to_public(),
        confidence=intent.confidence,
        explanation=intent.explanation,
        estimated_complexity=estimate_complexity(intent),
    )


# Start over: the next message opens a new session
@router.delete("/session")
async def end_session(
    caller: caller_dep,
    sessions: Annotated[SessionManager, Depends(get_session_manager)],
):
    try:
        ended = await sessions.end(caller.id)
    except Exception as error:
        logging.error(f"Failed to end sessions for user {caller.id}: {error}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to end the conversation session",
        )
    return {"ended": ended}
