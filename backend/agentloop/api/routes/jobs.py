"""Job control API routes."""

from datetime import datetime

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from agentloop.api.deps import get_engine, get_job_service
from agentloop.core.auth import AuthUser, require_auth
from agentloop.core.exceptions import InvalidTransitionError, JobNotFoundError, QueueError
from agentloop.events.publisher import StreamEventType
from agentloop.events.sink import QueueEventSink, format_sse
from agentloop.queue.schemas import TERMINAL_STATUSES
from agentloop.schemas.jobs import JobRecord, TaskPlan, ToolCallRecord
from agentloop.services.engine_service import EngineService
from agentloop.services.job_service import JobService

logger = structlog.get_logger(__name__)

router = APIRouter()


class SubmitJobRequest(BaseModel):
    """Request model for job submission."""

    goal: str = Field(..., min_length=1)
    thread_id: str | None = None
    model: str | None = None
    tool_choice: str = Field(default="auto", pattern="^(auto|none|required)$")
    allowed_tools: list[str] | None = None
    max_iterations: int | None = Field(default=None, ge=1)
    # None lets the model decide whether the goal needs a plan
    orchestrate: bool | None = None


class JobResponse(BaseModel):
    """Snapshot of a job after a submit or control action."""

    job_id: str
    thread_id: str
    status: str
    step_index: int
    total_steps: int | None = None
    current_iteration: int
    retry_count: int
    error: str | None = None
    version: int

    @classmethod
    def from_job(cls, job: JobRecord) -> "JobResponse":
        return cls(
            job_id=job.id,
            thread_id=job.thread_id,
            status=job.status.value,
            step_index=job.step_index,
            total_steps=job.plan.total_steps if job.plan else None,
            current_iteration=job.current_iteration,
            retry_count=job.retry_count,
            error=job.error,
            version=job.version,
        )


class JobStatusResponse(JobResponse):
    """Response model for job status."""

    goal: str
    progress: int
    summary: str
    estimated_completion: datetime | None = None
    plan: TaskPlan | None = None
    total_input_tokens: int
    total_output_tokens: int
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None


class IterationResponse(BaseModel):
    """One recorded iteration, without its message snapshot."""

    iteration_id: str
    iteration_number: int
    step_index: int
    input_tokens: int
    output_tokens: int
    total_tokens: int
    tool_calls: list[ToolCallRecord]
    summary_id: str | None = None
    duration_ms: int | None = None
    error: str | None = None
    started_at: datetime
    completed_at: datetime | None = None


def _not_found() -> HTTPException:
    return HTTPException(status_code=404, detail="Job not found")


@router.post("", status_code=201, response_model=JobResponse)
async def submit_job(
    request: SubmitJobRequest,
    user: AuthUser = Depends(require_auth),
    jobs: JobService = Depends(get_job_service),
):
    """Create a job and enqueue its first step."""
    try:
        job = await jobs.submit(
            user.user_id,
            request.goal,
            thread_id=request.thread_id,
            model=request.model,
            tool_choice=request.tool_choice,
            allowed_tools=request.allowed_tools,
            max_iterations=request.max_iterations,
            orchestrate=request.orchestrate,
        )
    except QueueError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return JobResponse.from_job(job)


@router.get("/{job_id}", response_model=JobStatusResponse)
async def get_job_status(
    job_id: str,
    user: AuthUser = Depends(require_auth),
    jobs: JobService = Depends(get_job_service),
):
    """Get current job status with progress line and completion estimate.

    Raises:
        HTTPException(404): If job not found or user mismatch
    """
    try:
        view = await jobs.get_status(job_id, user.user_id)
    except JobNotFoundError:
        raise _not_found()

    job = view.job
    return JobStatusResponse(
        **JobResponse.from_job(job).model_dump(),
        goal=job.goal,
        progress=view.progress,
        summary=view.summary,
        estimated_completion=view.estimated_completion,
        plan=job.plan,
        total_input_tokens=job.total_input_tokens,
        total_output_tokens=job.total_output_tokens,
        created_at=job.created_at,
        updated_at=job.updated_at,
        completed_at=job.completed_at,
    )


@router.post("/{job_id}/pause", response_model=JobResponse)
async def pause_job(
    job_id: str,
    user: AuthUser = Depends(require_auth),
    jobs: JobService = Depends(get_job_service),
):
    """Pause a job; the in-flight step (if any) finishes and no further step runs."""
    try:
        job = await jobs.pause(job_id, user.user_id)
    except JobNotFoundError:
        raise _not_found()
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return JobResponse.from_job(job)


@router.post("/{job_id}/cancel", response_model=JobResponse)
async def cancel_job(
    job_id: str,
    user: AuthUser = Depends(require_auth),
    jobs: JobService = Depends(get_job_service),
):
    """Cancel a job and drop its queued steps."""
    try:
        job = await jobs.cancel(job_id, user.user_id)
    except JobNotFoundError:
        raise _not_found()
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return JobResponse.from_job(job)


@router.post("/{job_id}/resume", response_model=JobResponse)
async def resume_job(
    job_id: str,
    user: AuthUser = Depends(require_auth),
    jobs: JobService = Depends(get_job_service),
):
    """Resume a paused or failed job from its current step or latest checkpoint."""
    try:
        job = await jobs.resume(job_id, user.user_id)
    except JobNotFoundError:
        raise _not_found()
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except QueueError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return JobResponse.from_job(job)


@router.get("/{job_id}/iterations", response_model=list[IterationResponse])
async def list_job_iterations(
    job_id: str,
    user: AuthUser = Depends(require_auth),
    jobs: JobService = Depends(get_job_service),
):
    try:
        iterations = await jobs.list_iterations(job_id, user.user_id)
    except JobNotFoundError:
        raise _not_found()
    return [
        IterationResponse(
            iteration_id=it.id,
            iteration_number=it.iteration_number,
            step_index=it.step_index,
            input_tokens=it.input_tokens,
            output_tokens=it.output_tokens,
            total_tokens=it.total_tokens,
            tool_calls=it.tool_calls,
            summary_id=it.summary_id,
            duration_ms=it.duration_ms,
            error=it.error,
            started_at=it.started_at,
            completed_at=it.completed_at,
        )
        for it in iterations
    ]


@router.get("/{job_id}/events/stream")
async def stream_job_events(
    job_id: str,
    request: Request,
    user: AuthUser = Depends(require_auth),
    engine: EngineService = Depends(get_engine),
):
    """Stream live progress events via SSE with heartbeat keepalive.

    Relays every event published on the job's channel. Sends a heartbeat
    frame whenever the stream has been idle for ``events_heartbeat_seconds``.
    Closes after ``job-complete``. If the job is already terminal on connect,
    emits one final status frame and closes immediately.

    Raises:
        HTTPException(404): If job not found or user mismatch
    """
    try:
        await engine.jobs.get_job(job_id, user.user_id)
    except JobNotFoundError:
        raise _not_found()

    sink = QueueEventSink()

    def relay(event: dict) -> None:
        sink.write(format_sse(event))
        if event.get("type") == StreamEventType.JOB_COMPLETE:
            sink.end()

    # Subscribe before re-reading status so a completion in between is not lost
    subscription = await engine.publisher.subscribe(job_id, relay, on_close=sink.end)
    job = await engine.jobs.get_job(job_id, user.user_id)
    if job.status in TERMINAL_STATUSES:
        relay(
            {
                "type": StreamEventType.JOB_COMPLETE,
                "job_id": job_id,
                "status": job.status.value,
                "iteration": job.current_iteration,
                "error": job.error,
            }
        )

    async def event_generator():
        try:
            async for chunk in sink.chunks(heartbeat_seconds=engine.settings.events_heartbeat_seconds):
                if await request.is_disconnected():
                    logger.info("event_stream_client_disconnected", job_id=job_id)
                    return
                yield chunk
        finally:
            await subscription.unsubscribe()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
