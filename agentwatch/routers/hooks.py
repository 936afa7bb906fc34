"""Hook ingestion API."""
from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from agentwatch.hooks.receiver import HookDispatcher, HookEvent

logger = logging.getLogger("agentwatch.hooks")

hooks_router = APIRouter(prefix="/api", tags=["hooks"])


def _get_dispatcher(request: Request) -> HookDispatcher:
    dispatcher = getattr(request.app.state, "hook_dispatcher", None)
    if not dispatcher:
        raise HTTPException(status_code=503, detail="Hook dispatcher not initialized")
    return dispatcher


def _error(message: str) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": message})


@hooks_router.post("/hook")
async def receive_hook(request: Request, background_tasks: BackgroundTasks):
    """Accept a hook event and handle it after the response is sent."""
    dispatcher = _get_dispatcher(request)

    try:
        body = await request.json()
    except ValueError:
        return _error("invalid JSON")

    if not isinstance(body, dict):
        return _error("missing required fields")
    try:
        event = HookEvent.model_validate(body)
    except ValidationError:
        return _error("missing required fields")
    if not event.hook_event_name or not event.session_id:
        return _error("missing required fields")

    if dispatcher.monitor_for(event.provider_name) is None:
        return _error("unknown provider")

    logger.debug(f"Hook {event.hook_event_name} for {event.provider_name}:{event.session_id}")
    background_tasks.add_task(dispatcher.handle, event)
    return {"ok": True}
