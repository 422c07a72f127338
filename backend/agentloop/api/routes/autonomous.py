"""Autonomous session API routes.

Sessions run as background tasks owned by the engine; these routes create,
inspect and resume them and never wait for the loop itself.
"""

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from agentloop.api.deps import get_autonomous_controller, get_engine
from agentloop.autonomous.controller import AutonomousController
from agentloop.core.auth import AuthUser, require_auth
from agentloop.core.exceptions import InvalidTransitionError, SessionNotFoundError
from agentloop.schemas.autonomous import ObservationRecord, SessionIterationRecord, SessionRecord
from agentloop.services.engine_service import EngineService

router = APIRouter()


class CreateSessionRequest(BaseModel):
    name: str = Field(..., min_length=1)
    goal: str = Field(..., min_length=1)
    max_iterations: int | None = Field(default=None, ge=1)
    model: str | None = None
    tool_choice: str = Field(default="auto", pattern="^(auto|none|required)$")
    allowed_tools: list[str] | None = None


class ContinueSessionRequest(BaseModel):
    user_feedback: str | None = None


class SessionResponse(BaseModel):
    session_id: str
    name: str
    goal: str
    status: str
    current_iteration: int
    max_iterations: int
    progress_percentage: float
    error: str | None = None
    running: bool = False
    created_at: datetime
    last_activity_at: datetime | None = None

    @classmethod
    def from_session(cls, session: SessionRecord, running: bool = False) -> "SessionResponse":
        return cls(
            session_id=session.id,
            name=session.name,
            goal=session.goal,
            status=session.status.value,
            current_iteration=session.current_iteration,
            max_iterations=session.max_iterations,
            progress_percentage=session.progress_percentage,
            error=session.error,
            running=running,
            created_at=session.created_at,
            last_activity_at=session.last_activity_at,
        )


async def _owned_session(controller: AutonomousController, session_id: str, user: AuthUser) -> SessionRecord:
    session = await controller.store.get_session(session_id, user_id=user.user_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


@router.post("", status_code=201, response_model=SessionResponse)
async def create_session(
    request: CreateSessionRequest,
    user: AuthUser = Depends(require_auth),
    engine: EngineService = Depends(get_engine),
):
    """Create a session and start its evaluate/plan/execute/observe loop in the background."""
    session = await engine.create_session(
        user.user_id,
        request.name,
        request.goal,
        max_iterations=request.max_iterations,
        model=request.model,
        tool_choice=request.tool_choice,
        allowed_tools=request.allowed_tools,
    )
    return SessionResponse.from_session(session, running=engine.session_running(session.id))


@router.get("/{session_id}", response_model=SessionResponse)
async def get_session(
    session_id: str,
    user: AuthUser = Depends(require_auth),
    engine: EngineService = Depends(get_engine),
):
    session = await _owned_session(engine.autonomous, session_id, user)
    return SessionResponse.from_session(session, running=engine.session_running(session_id))


@router.post("/{session_id}/continue", response_model=SessionResponse)
async def continue_session(
    session_id: str,
    request: ContinueSessionRequest,
    user: AuthUser = Depends(require_auth),
    engine: EngineService = Depends(get_engine),
):
    """Record optional feedback and resume a paused session.

    Raises:
        HTTPException(404): If session not found or user mismatch
        HTTPException(409): If the session already completed or failed
    """
    try:
        session = await engine.continue_session(session_id, user.user_id, request.user_feedback)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Session not found")
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return SessionResponse.from_session(session, running=engine.session_running(session_id))


@router.get("/{session_id}/iterations", response_model=list[SessionIterationRecord])
async def list_session_iterations(
    session_id: str,
    user: AuthUser = Depends(require_auth),
    controller: AutonomousController = Depends(get_autonomous_controller),
):
    await _owned_session(controller, session_id, user)
    return await controller.store.list_session_iterations(session_id)


@router.get("/{session_id}/observations", response_model=list[ObservationRecord])
async def list_session_observations(
    session_id: str,
    user: AuthUser = Depends(require_auth),
    controller: AutonomousController = Depends(get_autonomous_controller),
):
    await _owned_session(controller, session_id, user)
    return await controller.store.list_observations(session_id)
