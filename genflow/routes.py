"""
FastAPI routes for the generation API.

  GET    /generation/engines                  registered engines + defaults
  POST   /generation/{engine_id}              validate, price and submit
  POST   /generation/{engine_id}/what-if      validate and price only
  GET    /generation/workflows                the user's tracked workflows
  POST   /generation/workflows/{id}/cancel    optimistic cancel
  DELETE /generation/workflows/{id}           drop a finished workflow
  DELETE /generation/session                  close the user's session

The acting user comes from X-User-Id (checked by WorkerAuthMiddleware).
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import Field

from . import metrics
from .engines import get_engine
from .errors import SubmissionFailed, UnknownEngineError, ValidationFailed
from .models import CamelModel, ResourceRef
from .quota import Reject
from .session import GenerationSession, SessionManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/generation", tags=["generation"])

_REJECT_STATUS = {
    "quota_exceeded": 429,
    "insufficient_funds": 402,
}


class GenerationBody(CamelModel):
    input: dict[str, Any] = Field(default_factory=dict)
    resources: list[ResourceRef] = Field(default_factory=list)


def get_manager(request: Request) -> SessionManager:
    return request.app.state.sessions


def get_user_id(request: Request) -> str:
    user_id = getattr(request.state, "user_id", None) or request.headers.get("X-User-Id")
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return user_id


def get_session(
    user_id: str = Depends(get_user_id),
    manager: SessionManager = Depends(get_manager),
) -> GenerationSession:
    return manager.get(user_id)


def _dump(model) -> dict:
    return model.model_dump(by_alias=True, mode="json")


def _raise_for_outcome(outcome) -> None:
    if isinstance(outcome, ValidationFailed):
        raise HTTPException(status_code=422, detail=outcome.model_dump(mode="json"))
    if isinstance(outcome, Reject):
        raise HTTPException(
            status_code=_REJECT_STATUS[outcome.reason.kind],
            detail=outcome.reason.model_dump(mode="json"),
        )
    if isinstance(outcome, SubmissionFailed):
        raise HTTPException(status_code=502, detail=outcome.model_dump(mode="json"))


def _require_engine(request: Request, engine_id: str):
    registry = getattr(request.app.state, "registry", None)
    try:
        return get_engine(engine_id, registry)
    except UnknownEngineError:
        raise HTTPException(status_code=404, detail=f"Unknown engine: {engine_id}")


# ── Engines ──────────────────────────────────────────────────────────────────

@router.get("/engines")
async def list_engines(request: Request):
    registry = request.app.state.registry
    return {"engines": [engine.describe() for engine in registry.values()]}


# ── Workflows ────────────────────────────────────────────────────────────────

@router.get("/workflows")
async def list_workflows(session: GenerationSession = Depends(get_session)):
    metrics.inc_counter("requests.workflows")
    workflows = session.workflows()
    return {
        "items": [_dump(wf) for wf in workflows],
        "queueDepth": session.queue_depth(),
        "stale": session.stale,
    }


@router.post("/workflows/{workflow_id}/cancel")
async def cancel_workflow(workflow_id: str, session: GenerationSession = Depends(get_session)):
    metrics.inc_counter("requests.cancel")
    workflow = await session.cancel(workflow_id)
    if workflow is None:
        raise HTTPException(status_code=404, detail=f"Workflow not found: {workflow_id}")
    return _dump(workflow)


@router.delete("/workflows/{workflow_id}")
async def remove_workflow(workflow_id: str, session: GenerationSession = Depends(get_session)):
    metrics.inc_counter("requests.remove")
    if session.get_workflow(workflow_id) is None:
        raise HTTPException(status_code=404, detail=f"Workflow not found: {workflow_id}")
    if not session.remove(workflow_id):
        raise HTTPException(status_code=409, detail="Only finished workflows can be removed")
    return {"removed": workflow_id}


@router.delete("/session")
async def close_session(
    user_id: str = Depends(get_user_id),
    manager: SessionManager = Depends(get_manager),
):
    closed = await manager.close(user_id)
    return {"closed": closed}


# ── Submit ───────────────────────────────────────────────────────────────────

@router.post("/{engine_id}/what-if")
async def what_if(
    engine_id: str,
    request: Request,
    body: Optional[GenerationBody] = None,
    session: GenerationSession = Depends(get_session),
):
    metrics.inc_counter("requests.what_if")
    _require_engine(request, engine_id)
    body = body or GenerationBody()
    outcome = await session.what_if(engine_id, body.input, body.resources)
    _raise_for_outcome(outcome)
    return _dump(outcome)


@router.post("/{engine_id}")
async def submit(
    engine_id: str,
    request: Request,
    body: Optional[GenerationBody] = None,
    session: GenerationSession = Depends(get_session),
):
    metrics.inc_counter("requests.submit")
    _require_engine(request, engine_id)
    body = body or GenerationBody()
    outcome = await session.submit(engine_id, body.input, body.resources)
    _raise_for_outcome(outcome)
    return _dump(outcome)
