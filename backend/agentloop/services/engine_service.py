"""EngineService: owns every long-lived engine component and their lifecycle.

Constructed explicitly (normally in the FastAPI lifespan) and started with
``start()``; nothing runs as a side effect of importing this module. Holds:

- the step queue, rate limiter and worker pool
- the iteration engine and its collaborators (turn runner, summarizer, checkpoints)
- the job service used by the HTTP layer
- the autonomous controller plus the background tasks running its sessions
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import structlog
from redis.asyncio import Redis

from agentloop.autonomous.controller import AutonomousController
from agentloop.core.config import Settings, get_settings
from agentloop.engine.checkpoint import CheckpointService
from agentloop.engine.decomposer import TaskDecomposer
from agentloop.engine.iteration import IterationEngine
from agentloop.engine.llm import LLMClient
from agentloop.engine.summarizer import Summarizer
from agentloop.engine.tools import ToolRegistry
from agentloop.engine.turn import TurnRunner
from agentloop.events.publisher import EventPublisher
from agentloop.queue.job_queue import JobQueue
from agentloop.queue.rate_limiter import RateLimiter
from agentloop.queue.state_machine import JobStateMachine
from agentloop.queue.worker import WorkerPool
from agentloop.schemas.autonomous import LoopResult, SessionRecord
from agentloop.services.job_service import JobService
from agentloop.store.base import JobStore, SessionStore

logger = structlog.get_logger(__name__)


class EngineService:
    def __init__(
        self,
        store: JobStore,
        session_store: SessionStore,
        redis: Redis,
        llm: LLMClient,
        tools: ToolRegistry | None = None,
        settings: Settings | None = None,
        tool_sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store
        self.session_store = session_store
        self.redis = redis
        self.llm = llm
        self.tools = tools or ToolRegistry()

        s = self.settings
        self.publisher = EventPublisher(redis)
        self.queue = JobQueue(redis, max_attempts=s.queue_max_attempts, backoff_base=s.queue_backoff_base_seconds)
        self.rate_limiter = RateLimiter(redis, limit=s.worker_rate_limit, window_seconds=s.worker_rate_window_seconds)
        self.state_machine = JobStateMachine(store, self.publisher)
        self.turn_runner = TurnRunner(llm, self.publisher, timeout_seconds=s.model_call_timeout_seconds)
        self.summarizer = Summarizer(llm, model=s.summary_model)
        self.checkpoints = CheckpointService(store)
        self.decomposer = TaskDecomposer(llm, model=s.default_model)

        self.engine = IterationEngine(
            store=store,
            queue=self.queue,
            state_machine=self.state_machine,
            turn_runner=self.turn_runner,
            tools=self.tools,
            summarizer=self.summarizer,
            checkpoints=self.checkpoints,
            publisher=self.publisher,
            settings=s,
            tool_sleep=tool_sleep,
        )
        self.workers = WorkerPool(
            queue=self.queue,
            engine=self.engine,
            state_machine=self.state_machine,
            rate_limiter=self.rate_limiter,
            concurrency=s.worker_concurrency,
            poll_interval=s.worker_poll_interval_seconds,
            visibility_timeout=s.queue_visibility_timeout_seconds,
            shutdown_timeout=s.worker_shutdown_timeout_seconds,
        )
        self.jobs = JobService(store, self.queue, self.state_machine, self.decomposer, self.tools, s)
        self.autonomous = AutonomousController(
            session_store, llm, self.turn_runner, self.tools, settings=s, tool_sleep=tool_sleep
        )

        self._session_tasks: dict[str, asyncio.Task] = {}
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    async def start(self, workers: bool = True) -> None:
        if self._started:
            return
        if workers:
            await self.workers.start()
        self._started = True
        logger.info("engine_started", workers=workers)

    async def stop(self) -> None:
        if not self._started:
            return
        await self.workers.stop()
        tasks = list(self._session_tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._session_tasks.clear()
        self._started = False
        logger.info("engine_stopped", cancelled_sessions=len(tasks))

    # ------------------------------------------------------------------
    # Autonomous sessions run in the background
    # ------------------------------------------------------------------

    def session_running(self, session_id: str) -> bool:
        task = self._session_tasks.get(session_id)
        return task is not None and not task.done()

    async def create_session(self, user_id: str, name: str, goal: str, **options) -> SessionRecord:
        session = await self.autonomous.create_session(user_id, name, goal, **options)
        self.launch_session(session.id)
        return session

    async def continue_session(self, session_id: str, user_id: str, user_feedback: str | None = None) -> SessionRecord:
        """Validate and record feedback now; the loop itself runs in the background.

        Raises:
            SessionNotFoundError: unknown session or another user's.
            InvalidTransitionError: the session already completed or failed.
        """
        session = await self.autonomous.prepare_continue(session_id, user_id, user_feedback)
        self.launch_session(session.id)
        return session

    def launch_session(self, session_id: str) -> asyncio.Task:
        """Run a session's loop as a tracked background task."""
        if self.session_running(session_id):
            return self._session_tasks[session_id]

        coro = self.autonomous.execute(session_id)
        task = asyncio.create_task(self._run_session(session_id, coro), name=f"autonomous:{session_id}")
        self._session_tasks[session_id] = task
        task.add_done_callback(lambda _t: self._session_tasks.pop(session_id, None))
        return task

    async def _run_session(self, session_id: str, coro: Awaitable[LoopResult]) -> LoopResult | None:
        try:
            result = await coro
        except asyncio.CancelledError:
            logger.warning("autonomous_session_cancelled", session_id=session_id)
            raise
        except Exception as exc:
            logger.error(
                "autonomous_session_crashed",
                session_id=session_id,
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=True,
            )
            return None
        logger.info("autonomous_session_finished", session_id=session_id, status=result.status)
        return result
