"""AutonomousController: evaluate -> plan -> execute -> observe loop for open-ended goals.

Flow per iteration:
1. Evaluate progress from the most recent observations
2. Generate an action plan (skipped when the goal is met or evaluation says stop)
3. Execute the action through the tool-augmented turn path
4. Record what happened as an observation

Each phase is written to the iteration record before the next one starts.
The loop repeats until the goal is achieved, evaluation asks to stop, the
execution reports ``requires_human_input``, or ``max_iterations`` is hit.
Model output for evaluation and planning is always schema-validated; anything
malformed is replaced with a conservative default.
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

import structlog
from pydantic import ValidationError

from agentloop.core.config import Settings, get_settings
from agentloop.core.exceptions import InvalidTransitionError, SessionNotFoundError
from agentloop.engine.llm import LLMClient, TurnRequest
from agentloop.engine.llm_helpers import parse_json_response
from agentloop.engine.prompts import (
    EVALUATION_SYSTEM_PROMPT,
    EXECUTION_SYSTEM_PROMPT,
    PLANNING_SYSTEM_PROMPT,
    build_evaluation_prompt,
    build_execution_prompt,
    build_planning_prompt,
)
from agentloop.engine.tools import ToolExecutor, ToolRegistry
from agentloop.engine.turn import TurnRunner
from agentloop.schemas.autonomous import (
    ActionPlan,
    ExecutionResult,
    IterationPhase,
    LoopResult,
    ObservationRecord,
    ObservationType,
    ProgressEvaluation,
    SessionIterationRecord,
    SessionRecord,
    SessionStatus,
)
from agentloop.schemas.jobs import ToolCallStatus
from agentloop.schemas.messages import ChatMessage
from agentloop.store.base import SessionStore

logger = structlog.get_logger(__name__)

HUMAN_INPUT_SENTINEL = "requires_human_input"


def default_evaluation(current_progress: float) -> ProgressEvaluation:
    return ProgressEvaluation(
        goal_achieved=False,
        progress_percentage=current_progress,
        blockers=["Failed to parse evaluation"],
        recommendations=["Retry evaluation"],
        should_continue=True,
    )


def default_action_plan() -> ActionPlan:
    return ActionPlan(
        action="Continue working toward goal",
        rationale="Making incremental progress",
        expected_outcome="Move closer to goal completion",
    )


class AutonomousController:
    def __init__(
        self,
        store: SessionStore,
        llm: LLMClient,
        turn_runner: TurnRunner,
        tools: ToolRegistry,
        settings: Settings | None = None,
        tool_sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.llm = llm
        self.turn_runner = turn_runner
        self.tools = tools
        self.settings = settings or get_settings()
        self._tool_sleep = tool_sleep

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def create_session(
        self,
        user_id: str,
        name: str,
        goal: str,
        max_iterations: int | None = None,
        model: str | None = None,
        tool_choice: str = "auto",
        allowed_tools: list[str] | None = None,
    ) -> SessionRecord:
        session = await self.store.create_session(
            SessionRecord(
                user_id=user_id,
                name=name,
                goal=goal,
                max_iterations=max_iterations or self.settings.autonomous_max_iterations,
                model=model or self.settings.default_model,
                tool_choice=tool_choice,
                allowed_tools=allowed_tools,
            )
        )
        logger.info("autonomous_session_created", session_id=session.id, user_id=user_id)
        return session

    async def execute(self, session_id: str) -> LoopResult:
        """Run iterations until the session completes, pauses or fails. Never raises for loop errors."""
        session = await self.store.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        bound = logger.bind(session_id=session_id)

        try:
            session = await self.store.update_session(session_id, {"status": SessionStatus.EXECUTING})

            while session.current_iteration < session.max_iterations:
                should_continue, evaluation = await self.execute_iteration(session)

                if not should_continue:
                    if evaluation.goal_achieved:
                        await self.store.update_session(
                            session_id,
                            {"status": SessionStatus.COMPLETED, "progress_percentage": 100.0},
                        )
                        bound.info("autonomous_goal_achieved")
                        return LoopResult(
                            success=True,
                            status="completed",
                            message="Goal achieved successfully",
                            final_progress=100.0,
                        )

                    await self.store.update_session(session_id, {"status": SessionStatus.PAUSED})
                    bound.info("autonomous_session_paused", progress=evaluation.progress_percentage)
                    return LoopResult(
                        success=True,
                        status="paused",
                        message="Session paused - requires intervention",
                        final_progress=evaluation.progress_percentage,
                    )

                refreshed = await self.store.get_session(session_id)
                if refreshed is not None:
                    session = refreshed

            await self.store.update_session(session_id, {"status": SessionStatus.COMPLETED})
            bound.info("autonomous_max_iterations_reached", max_iterations=session.max_iterations)
            return LoopResult(
                success=True,
                status="max_iterations_reached",
                message=f"Reached maximum iterations ({session.max_iterations})",
                final_progress=session.progress_percentage,
            )

        except Exception as exc:
            bound.error(
                "autonomous_session_failed",
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=True,
            )
            await self.store.update_session(session_id, {"status": SessionStatus.FAILED, "error": str(exc)})
            return LoopResult(
                success=False,
                status="failed",
                message=str(exc) or "Unknown error",
                final_progress=session.progress_percentage,
            )

    async def continue_session(
        self,
        session_id: str,
        user_id: str,
        user_feedback: str | None = None,
    ) -> LoopResult:
        """Record optional user feedback and resume a paused (or still planning) session."""
        session = await self.prepare_continue(session_id, user_id, user_feedback)
        return await self.execute(session.id)

    async def prepare_continue(
        self,
        session_id: str,
        user_id: str,
        user_feedback: str | None = None,
    ) -> SessionRecord:
        session = await self.store.get_session(session_id, user_id=user_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        if session.status in (SessionStatus.COMPLETED, SessionStatus.FAILED):
            raise InvalidTransitionError(session.status.value, SessionStatus.EXECUTING.value)

        if user_feedback:
            await self.record(
                session.id,
                None,
                ObservationType.USER_INTERVENTION,
                user_feedback,
                {"timestamp": datetime.now(UTC).isoformat()},
            )
        return session

    # ------------------------------------------------------------------
    # One iteration
    # ------------------------------------------------------------------

    async def execute_iteration(self, session: SessionRecord) -> tuple[bool, ProgressEvaluation]:
        iteration_number = session.current_iteration + 1
        bound = logger.bind(session_id=session.id, iteration=iteration_number)
        bound.info("autonomous_iteration_started", max_iterations=session.max_iterations)

        iteration = await self.store.insert_session_iteration(
            SessionIterationRecord(
                session_id=session.id,
                iteration_number=iteration_number,
                phase=IterationPhase.EVALUATING,
            )
        )
        start = time.monotonic()

        try:
            evaluation = await self.evaluate_progress(session, iteration.id)
            await self.store.update_session_iteration(iteration.id, {"evaluation": evaluation})

            if evaluation.goal_achieved or not evaluation.should_continue:
                await self._complete_iteration(iteration.id, start)
                await self._touch_session(session.id, iteration_number, evaluation.progress_percentage)
                return False, evaluation

            await self.store.update_session_iteration(iteration.id, {"phase": IterationPhase.PLANNING})
            plan = await self.generate_action_plan(session, iteration.id, evaluation)
            await self.store.update_session_iteration(iteration.id, {"plan": plan})

            await self.store.update_session_iteration(iteration.id, {"phase": IterationPhase.EXECUTING})
            result = await self.execute_action(session, iteration.id, plan)
            await self.store.update_session_iteration(iteration.id, {"result": result})

            await self.store.update_session_iteration(iteration.id, {"phase": IterationPhase.OBSERVING})
            await self.record_observation(session.id, iteration.id, result)

            await self._complete_iteration(iteration.id, start)
            await self._touch_session(session.id, iteration_number, evaluation.progress_percentage)

            if result.error and HUMAN_INPUT_SENTINEL in result.error:
                bound.info("autonomous_human_input_required")
                return False, evaluation

            return True, evaluation

        except Exception as exc:
            bound.error("autonomous_iteration_failed", error=str(exc), error_type=type(exc).__name__)
            await self.record(
                session.id,
                iteration.id,
                ObservationType.ERROR,
                str(exc),
                {"iteration_number": iteration_number},
            )
            await self._complete_iteration(iteration.id, start)
            raise

    async def _complete_iteration(self, iteration_id: str, start: float) -> None:
        await self.store.update_session_iteration(
            iteration_id,
            {"completed_at": datetime.now(UTC), "duration_ms": int((time.monotonic() - start) * 1000)},
        )

    async def _touch_session(self, session_id: str, iteration_number: int, progress: float) -> None:
        await self.store.update_session(
            session_id,
            {
                "current_iteration": iteration_number,
                "progress_percentage": progress,
                "status": SessionStatus.EXECUTING,
                "last_activity_at": datetime.now(UTC),
            },
        )

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _recent_observations(self, session_id: str) -> list[ObservationRecord]:
        observations = await self.store.list_observations(session_id)
        return observations[-self.settings.autonomous_observation_window :]

    async def evaluate_progress(self, session: SessionRecord, iteration_id: str) -> ProgressEvaluation:
        observations = await self._recent_observations(session.id)
        completion = await self.llm.complete(
            EVALUATION_SYSTEM_PROMPT,
            build_evaluation_prompt(session.goal, observations, session.progress_percentage),
            model=session.model,
        )
        try:
            evaluation = ProgressEvaluation.model_validate(parse_json_response(completion.text))
        except (json.JSONDecodeError, ValidationError) as exc:
            logger.warning("autonomous_evaluation_invalid", session_id=session.id, error=str(exc))
            evaluation = default_evaluation(session.progress_percentage)

        await self.record(
            session.id,
            iteration_id,
            ObservationType.EVALUATION,
            f"Progress: {evaluation.progress_percentage:g}%, Goal achieved: {str(evaluation.goal_achieved).lower()}",
            {"evaluation": evaluation.model_dump(mode="json")},
        )
        return evaluation

    async def generate_action_plan(
        self,
        session: SessionRecord,
        iteration_id: str,
        evaluation: ProgressEvaluation,
    ) -> ActionPlan:
        observations = await self._recent_observations(session.id)
        completion = await self.llm.complete(
            PLANNING_SYSTEM_PROMPT,
            build_planning_prompt(session.goal, evaluation, observations),
            model=session.model,
        )
        try:
            plan = ActionPlan.model_validate(parse_json_response(completion.text))
        except (json.JSONDecodeError, ValidationError) as exc:
            logger.warning("autonomous_plan_invalid", session_id=session.id, error=str(exc))
            plan = default_action_plan()

        await self.record(
            session.id,
            iteration_id,
            ObservationType.PLANNING,
            f"Action: {plan.action}",
            {"plan": plan.model_dump(mode="json")},
        )
        return plan

    async def execute_action(self, session: SessionRecord, iteration_id: str, plan: ActionPlan) -> ExecutionResult:
        """Run the planned action as one tool-augmented turn. Errors become a failed result."""
        executor = ToolExecutor(
            self.tools.select(session.allowed_tools),
            max_attempts=self.settings.tool_max_attempts,
            sleep=self._tool_sleep,
        )
        prompt = build_execution_prompt(session.goal, plan.action, plan.rationale, plan.expected_outcome)
        request = TurnRequest(
            system_prompt=EXECUTION_SYSTEM_PROMPT,
            messages=[ChatMessage.from_text("user", prompt)],
            model=session.model,
            executor=executor,
            tool_choice=session.tool_choice,
            max_steps=self.settings.max_steps_per_turn,
            max_tokens=self.settings.model_max_tokens,
        )
        try:
            turn = await self.turn_runner.run(request, stream_id=session.id, iteration=session.current_iteration + 1)
        except Exception as exc:
            return ExecutionResult(success=False, error=str(exc) or type(exc).__name__)

        for record in turn.tool_calls:
            await self.record(
                session.id,
                iteration_id,
                ObservationType.TOOL_CALL,
                f"{record.tool_name}: {record.status.value}",
                {"tool_call_id": record.tool_call_id, "attempts": record.attempts, "error": record.error},
            )

        if HUMAN_INPUT_SENTINEL in turn.text:
            return ExecutionResult(
                success=False,
                output=turn.text,
                error=f"{HUMAN_INPUT_SENTINEL}: the agent needs a decision before continuing",
                tool_calls=len(turn.tool_calls),
            )

        failed = [r for r in turn.tool_calls if r.status == ToolCallStatus.FAILED]
        if failed and len(failed) == len(turn.tool_calls):
            return ExecutionResult(
                success=False,
                output=turn.text,
                error="; ".join(r.error or r.tool_name for r in failed),
                tool_calls=len(turn.tool_calls),
            )
        return ExecutionResult(success=True, output=turn.text, tool_calls=len(turn.tool_calls))

    async def record_observation(self, session_id: str, iteration_id: str, result: ExecutionResult) -> ObservationRecord:
        if result.success:
            content = f"Execution successful: {result.output[:500] if result.output else 'completed'}"
        else:
            content = f"Execution failed: {result.error or 'unknown error'}"
        return await self.record(
            session_id,
            iteration_id,
            ObservationType.EXECUTION,
            content,
            {"result": result.model_dump(mode="json")},
        )

    async def record(
        self,
        session_id: str,
        iteration_id: str | None,
        observation_type: ObservationType,
        content: str,
        metadata: dict | None = None,
    ) -> ObservationRecord:
        return await self.store.insert_observation(
            ObservationRecord(
                session_id=session_id,
                iteration_id=iteration_id,
                type=observation_type,
                content=content,
                metadata=metadata or {},
            )
        )
