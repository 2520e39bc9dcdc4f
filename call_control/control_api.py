"""
Control and dashboard APIs.

/control (admin): queue status and clearing, live CallSessions, the audit
event trail and single-job lookup. Errors use stable HTTPException details.

/api (dashboard): ProcessingSession listing, deletion and stats, regeneration,
user registration and PIN rotation. Every error, including a missing token
or an invalid body, is rendered as {"success": false, "message": ...}; the
underlying detail is only added in development mode.

Both routers require the X-Admin-Token header when ADMIN_API_TOKEN is set.
"""

from __future__ import annotations

import hmac
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from logging_setup import get_logger, Component
from observability.event_store import event_store

from .session import CallState


logger = get_logger(Component.CONTROL_API)


def _services(request: Request):
    return request.app.state.services


def _token_matches(request: Request, supplied: Optional[str]) -> bool:
    token = _services(request).config.admin_api_token
    return not token or hmac.compare_digest(supplied or "", token)


def require_admin(request: Request, x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token")) -> None:
    if not _token_matches(request, x_admin_token):
        raise HTTPException(status_code=401, detail="unauthorized")


def require_dashboard_admin(request: Request, x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token")) -> None:
    if not _token_matches(request, x_admin_token):
        raise DashboardError(401, "Unauthorized")


class DashboardError(Exception):
    def __init__(self, status_code: int, message: str, detail: Optional[Any] = None):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.detail = detail


router = APIRouter(prefix="/control", tags=["control"], dependencies=[Depends(require_admin)])
api_router = APIRouter(prefix="/api", tags=["dashboard"], dependencies=[Depends(require_dashboard_admin)])


def _dashboard_response(request: Request, status_code: int, message: str, detail: Any = None) -> JSONResponse:
    body: Dict[str, Any] = {"success": False, "message": message}
    if detail and _services(request).config.is_development:
        body["detail"] = detail
    return JSONResponse(status_code=status_code, content=body)


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(DashboardError)
    async def _dashboard_error(request: Request, exc: DashboardError):
        return _dashboard_response(request, exc.status_code, exc.message, exc.detail)

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        if not request.url.path.startswith(f"{api_router.prefix}/"):
            return await request_validation_exception_handler(request, exc)
        return _dashboard_response(request, 422, "Invalid request", jsonable_encoder(exc.errors()))


def _parse_ts(value: Optional[str], name: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        # Query strings may turn "+" into a space
        clean = value.replace(" ", "+").replace("Z", "+00:00")
        return datetime.fromisoformat(clean)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {name} timestamp: {value}")


# --- /control ---


class CallSummary(BaseModel):
    call_id: str
    state: str
    user_id: Optional[str] = None
    created_at: str
    updated_at: Optional[str] = None


class CallDetail(CallSummary):
    caller_number: Optional[str] = None
    called_number: Optional[str] = None
    history: List[str] = Field(default_factory=list)


def _call_summary(session) -> Dict[str, Any]:
    return {
        "call_id": session.call_id,
        "state": session.state.value,
        "user_id": session.user_id,
        "created_at": session.created_at.isoformat(),
        "updated_at": session.updated_at.isoformat() if session.updated_at else None,
    }


@router.get("/queue")
async def get_queue_status(request: Request) -> Dict[str, Any]:
    """Diagnostic snapshot of the job queue."""
    return _services(request).queue.get_queue_status()


@router.delete("/queue")
async def clear_queue(request: Request) -> Dict[str, Any]:
    """Abandon every queued job and pending retry."""
    dropped = _services(request).queue.clear_queue()
    return {"success": True, "dropped": dropped}


@router.get("/jobs/{job_id}")
async def get_job(job_id: str, request: Request) -> Dict[str, Any]:
    job = _services(request).queue.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    summary = job.summary()
    summary.update({
        "sessionId": job.subject_id,
        "userId": job.user_id,
        "lastError": job.last_error,
    })
    return summary


@router.get("/calls", response_model=List[CallSummary])
async def list_calls(
    request: Request,
    state: Optional[str] = Query(None, description="Filter by call state"),
) -> List[CallSummary]:
    """List live CallSessions."""
    state_filter: Optional[CallState] = None
    if state:
        try:
            state_filter = CallState(state.lower())
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid state: {state}")

    sessions = _services(request).sessions.list_sessions(state=state_filter)
    return [CallSummary(**_call_summary(s)) for s in sessions]


@router.get("/calls/{call_id}", response_model=CallDetail)
async def get_call(call_id: str, request: Request) -> CallDetail:
    session = _services(request).sessions.get_session(call_id)
    if not session:
        raise HTTPException(status_code=404, detail="Call not found")
    return CallDetail(
        **_call_summary(session),
        caller_number=session.caller_number,
        called_number=session.called_number,
        history=[s.value for s in session.history],
    )


@router.get("/events")
async def query_events(
    trace_id: Optional[str] = Query(None, description="Call id or job id"),
    event_type: Optional[str] = Query(None),
    component: Optional[str] = Query(None),
    since: Optional[str] = Query(None, description="ISO timestamp (inclusive)"),
    until: Optional[str] = Query(None, description="ISO timestamp (inclusive)"),
    limit: Optional[int] = Query(None, ge=1, le=1000),
) -> Dict[str, Any]:
    """Query the audit trail. A call id also returns the job events it produced."""
    events = event_store.query(
        trace_id=trace_id,
        event_type=event_type,
        component=component,
        since=_parse_ts(since, "since"),
        until=_parse_ts(until, "until"),
        limit=limit,
    )
    return {"trace_id": trace_id, "events": events, "count": len(events)}


# --- /api ---


class RegenerateOptions(BaseModel):
    tempo: Optional[int] = Field(None, ge=40, le=240)
    key: Optional[str] = None
    genre: Optional[str] = None
    mood: Optional[str] = None


class RegenerateRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    options: RegenerateOptions = Field(default_factory=RegenerateOptions)


class RegenerateResponse(BaseModel):
    success: bool
    message: str
    sessionId: str
    jobId: str


@api_router.get("/sessions")
async def list_sessions(request: Request, user_id: str = Query(..., min_length=1)) -> Dict[str, Any]:
    sessions = await _services(request).store.list_for_user(user_id)
    return {"success": True, "sessions": [s.to_dict() for s in sessions]}


@api_router.get("/sessions/{session_id}")
async def get_session(session_id: str, request: Request, user_id: Optional[str] = Query(None)) -> Dict[str, Any]:
    session = await _services(request).store.get(session_id)
    if session is None or (user_id and session.user_id != user_id):
        raise DashboardError(404, "Session not found")
    return {"success": True, "session": session.to_dict()}


@api_router.post("/sessions/{session_id}/regenerate", response_model=RegenerateResponse)
async def regenerate_session(session_id: str, req: RegenerateRequest, request: Request) -> RegenerateResponse:
    """Queue a regeneration of one of the user's sessions with option overrides."""
    services = _services(request)
    session = await services.store.get(session_id)
    if session is None or session.user_id != req.user_id:
        raise DashboardError(404, "Session not found")

    try:
        job = services.queue.enqueue_regeneration(
            session_id=session.id,
            user_id=req.user_id,
            original_audio_ref=session.original_audio_url,
            options=req.options.model_dump(exclude_none=True),
        )
    except Exception as e:
        logger.error("Regeneration enqueue failed", session_id=session_id, error=str(e))
        raise DashboardError(500, "Failed to queue regeneration", detail=str(e))

    return RegenerateResponse(
        success=True,
        message="Regeneration queued",
        sessionId=session.id,
        jobId=job.id,
    )


@api_router.post("/users/{user_id}/rotate-pin")
async def rotate_pin(user_id: str, request: Request) -> Dict[str, Any]:
    try:
        pin = await _services(request).authenticator.rotate_pin(user_id)
    except KeyError:
        raise DashboardError(404, "User not found")
    except RuntimeError as e:
        logger.error("PIN rotation failed", user_id=user_id, error=str(e))
        raise DashboardError(503, "Could not generate a new PIN, please try again", detail=str(e))
    return {"success": True, "pin": pin}


@api_router.delete("/sessions/{session_id}")
async def delete_session(session_id: str, request: Request, user_id: str = Query(..., min_length=1)) -> Dict[str, Any]:
    store = _services(request).store
    session = await store.get(session_id)
    if session is None or session.user_id != user_id:
        raise DashboardError(404, "Session not found")
    await store.delete(session_id)
    logger.info("Session deleted", session_id=session_id, user_id=user_id)
    return {"success": True, "message": "Session deleted successfully"}


@api_router.get("/stats")
async def get_stats(request: Request, user_id: str = Query(..., min_length=1)) -> Dict[str, Any]:
    stats = await _services(request).store.stats_for_user(user_id)
    return {"success": True, "stats": stats}


class RegisterUserRequest(BaseModel):
    phone: Optional[str] = Field(None, min_length=1)
    name: Optional[str] = None


@api_router.post("/users", status_code=201)
async def register_user(req: RegisterUserRequest, request: Request) -> Dict[str, Any]:
    """Create a user and hand back the PIN they dial in with."""
    try:
        user = await _services(request).authenticator.register_user(phone=req.phone, name=req.name)
    except ValueError:
        raise DashboardError(409, "User already exists with this phone number")
    except RuntimeError as e:
        logger.error("User registration failed", error=str(e))
        raise DashboardError(503, "Could not generate a PIN, please try again", detail=str(e))
    return {"success": True, "userId": user.id, "pin": user.pin}
