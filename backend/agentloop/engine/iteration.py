"""IterationEngine: executes one step message for a job.

Per message:
1. Load the job; a queue retry (``retry_count > 0``) restores a job the worker failed.
2. Jump forward to the latest checkpoint when the message is behind it.
3. Idempotence guard: a completed iteration for this job+step is never re-run;
   only the continuation is re-driven.
4. Continuation check (all steps done / failed / paused / retry ceiling).
5. Proactive summarization when the context nears the model's window.
6. One streamed model turn with tools, events published as they arrive.
7. Persist the iteration, the assistant message, tool-call history and token totals.
8. Checkpoint every K iterations and after checkpoint-type steps.
9. Enqueue the continuation, or finish the job.

Errors from the model call are recorded on the iteration and re-raised; the
worker pool turns them into a failed job plus a queue retry.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime

import structlog

from agentloop.core.config import Settings, get_settings
from agentloop.core.exceptions import ContextExceededError, DuplicateRecordError, JobNotFoundError, ModelTimeoutError
from agentloop.domain.progress import ContinuationDecision, evaluate_continuation, task_summary
from agentloop.engine.checkpoint import CheckpointService, should_checkpoint
from agentloop.engine.llm import INCOMPLETE_STOP_REASONS, TurnRequest
from agentloop.engine.prompts import build_job_system_prompt, build_step_instruction
from agentloop.engine.summarizer import SummarizationResult, Summarizer
from agentloop.engine.tokens import (
    calculate_cumulative_tokens,
    context_window_limit,
    estimate_total_tokens,
    is_context_exceeded,
    should_summarize,
)
from agentloop.engine.tools import ToolExecutor, ToolRegistry
from agentloop.engine.turn import TurnResult, TurnRunner
from agentloop.events.publisher import EventPublisher, StreamEventType
from agentloop.queue.job_queue import JobQueue
from agentloop.queue.schemas import JobStatus, StepMessage
from agentloop.queue.state_machine import JobStateMachine
from agentloop.schemas.jobs import (
    Checkpoint,
    ContextSummaryRecord,
    IterationRecord,
    JobRecord,
    SubTask,
    SubTaskStatus,
)
from agentloop.schemas.messages import ChatMessage
from agentloop.store.base import JobStore

logger = structlog.get_logger(__name__)


@dataclass
class StepOutcome:
    job_id: str
    step_index: int
    action: str  # executed | skipped | stopped
    reason: str = ""
    iteration: IterationRecord | None = None
    next_step_index: int | None = None


class IterationEngine:
    def __init__(
        self,
        store: JobStore,
        queue: JobQueue,
        state_machine: JobStateMachine,
        turn_runner: TurnRunner,
        tools: ToolRegistry,
        summarizer: Summarizer,
        checkpoints: CheckpointService,
        publisher: EventPublisher | None = None,
        settings: Settings | None = None,
        tool_sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.queue = queue
        self.state_machine = state_machine
        self.turn_runner = turn_runner
        self.tools = tools
        self.summarizer = summarizer
        self.checkpoints = checkpoints
        self.publisher = publisher
        self.settings = settings or get_settings()
        self._tool_sleep = tool_sleep

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def process_step(self, message: StepMessage) -> StepOutcome:
        bound = logger.bind(job_id=message.job_id, step_index=message.step_index)

        job = await self.store.get_job(message.job_id)
        if job is None:
            raise JobNotFoundError(message.job_id)

        # Only a failure the worker caused is undone; user pauses and cancels stand
        if message.retry_count > 0 and job.status == JobStatus.FAILED and job.awaiting_retry:
            bound.info("job_retry_restoring", retry_count=message.retry_count)
            await self.state_machine.transition(
                job.id,
                JobStatus.RUNNING,
                "Retrying after failure",
                changes={"error": None, "awaiting_retry": False},
                when=lambda current: current.awaiting_retry and not current.cancelled,
            )
            job = await self._reload(job.id)

        step_index = message.step_index
        restored: Checkpoint | None = None
        latest = await self.checkpoints.restore(job.id)
        if latest is not None and step_index < latest.step_index:
            bound.info("job_resumed_from_checkpoint", checkpoint_step_index=latest.step_index)
            restored = latest
            step_index = latest.step_index
            job = await self.store.update_job(job.id, {"step_index": step_index})

        existing = await self.store.get_iteration_for_step(job.id, step_index)
        if existing is not None and existing.completed_at is not None:
            bound.info("iteration_already_executed", iteration=existing.iteration_number)
            return await self._advance(job, step_index, existing, stop_reason=None, action="skipped")

        if job.status == JobStatus.PENDING:
            await self.state_machine.transition(job.id, JobStatus.RUNNING, "Job started")
            job = await self._reload(job.id)

        decision = evaluate_continuation(job.model_copy(update={"step_index": step_index}), self._retry_ceiling)
        if not decision.should_continue:
            return await self._stop(job, step_index, decision)

        if existing is None and job.current_iteration >= job.max_iterations:
            return await self._finish(job, step_index, "Maximum iterations reached")

        try:
            iteration, result, summary = await self._execute(job, step_index, existing, restored)
        except DuplicateRecordError:
            bound.warning("iteration_insert_conflict")
            return StepOutcome(job.id, step_index, "skipped", reason="Iteration already recorded")

        job = await self._reload(job.id)
        await self._maybe_checkpoint(job, iteration, result, summary)
        return await self._advance(job, step_index, iteration, stop_reason=result.stop_reason, action="executed")

    @property
    def _retry_ceiling(self) -> int:
        return self.settings.job_retry_ceiling

    async def _reload(self, job_id: str) -> JobRecord:
        job = await self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _current_step(self, job: JobRecord, step_index: int) -> SubTask | None:
        if job.plan is None or step_index >= len(job.plan.steps):
            return None
        return job.plan.steps[step_index]

    def _history_for_step(self, job: JobRecord, step: SubTask | None, step_index: int) -> list[ChatMessage]:
        history = list(job.messages)
        if step is not None or not history or history[-1].role != "user":
            history.append(ChatMessage.from_text("user", build_step_instruction(step, step_index)))
        return history

    async def _start_iteration(
        self,
        job: JobRecord,
        step_index: int,
        existing: IterationRecord | None,
        snapshot: list[ChatMessage],
    ) -> IterationRecord:
        if existing is not None:
            return await self.store.update_iteration(
                existing.id,
                {"started_at": datetime.now(UTC), "error": None, "message_snapshot": snapshot},
            )
        return await self.store.insert_iteration(
            IterationRecord(
                job_id=job.id,
                iteration_number=job.current_iteration + 1,
                step_index=step_index,
                message_snapshot=snapshot,
            )
        )

    async def _summarize(
        self,
        job: JobRecord,
        iteration: IterationRecord,
        messages: list[ChatMessage],
        system_prompt: str,
    ) -> SummarizationResult | None:
        result = await self.summarizer.summarize(messages, system_prompt)
        if not result.applied:
            return None
        record = await self.store.insert_context_summary(
            ContextSummaryRecord(
                job_id=job.id,
                iteration_id=iteration.id,
                summary_text=result.summary_text,
                messages_summarized=result.messages_summarized,
                token_count_before=result.token_count_before,
                token_count_after=result.token_count_after,
            )
        )
        await self.store.update_iteration(iteration.id, {"summary_id": record.id})
        return result

    async def _execute(
        self,
        job: JobRecord,
        step_index: int,
        existing: IterationRecord | None,
        restored: Checkpoint | None,
    ) -> tuple[IterationRecord, TurnResult, SummarizationResult | None]:
        step = self._current_step(job, step_index)
        history = self._history_for_step(job, step, step_index)
        iteration = await self._start_iteration(job, step_index, existing, history)
        bound = logger.bind(job_id=job.id, step_index=step_index, iteration=iteration.iteration_number)

        system_prompt = build_job_system_prompt(job, step, restored.summary if restored else None)
        turn_messages = history
        summary: SummarizationResult | None = None

        # Budget decisions use the job's cumulative usage: earlier iterations plus this prompt
        previous = [it for it in await self.store.list_iterations(job.id) if it.id != iteration.id]
        prior_tokens = calculate_cumulative_tokens(previous).total_tokens
        tokens = estimate_total_tokens(turn_messages, system_prompt)
        cumulative = prior_tokens + tokens
        if should_summarize(cumulative, job.model, self.settings.summarization_threshold_ratio).needed:
            bound.info("context_summarization_needed", cumulative_tokens=cumulative, prompt_tokens=tokens)
            summary = await self._summarize(job, iteration, turn_messages, system_prompt)
            if summary is not None:
                turn_messages = summary.optimized_messages
                tokens = summary.token_count_after
                cumulative = prior_tokens + tokens

        if tokens >= context_window_limit(job.model):
            await self._record_iteration_error(iteration, "Context window exceeded before model call")
            raise ContextExceededError(f"Context of ~{tokens} tokens does not fit {job.model}")

        executor = ToolExecutor(
            self.tools.select(job.allowed_tools),
            max_attempts=self.settings.tool_max_attempts,
            sleep=self._tool_sleep,
        )
        started = time.monotonic()
        forced = False
        while True:
            request = TurnRequest(
                system_prompt=system_prompt,
                messages=turn_messages,
                model=job.model,
                executor=executor,
                tool_choice=job.tool_choice,
                max_steps=self.settings.max_steps_per_turn,
                max_tokens=self.settings.model_max_tokens,
            )
            try:
                result = await self.turn_runner.run(request, stream_id=job.id, iteration=iteration.iteration_number)
                break
            except ModelTimeoutError as exc:
                await self._record_iteration_error(iteration, str(exc))
                raise
            except Exception as exc:
                if not is_context_exceeded(exc, cumulative, job.model):
                    await self._record_iteration_error(iteration, f"{type(exc).__name__}: {exc}")
                    raise
                if forced:
                    await self._record_iteration_error(iteration, f"Context exceeded after summarization: {exc}")
                    raise ContextExceededError(str(exc)) from exc
                bound.warning("context_exceeded_summarizing", error=str(exc))
                forced = True
                retry_summary = await self._summarize(job, iteration, turn_messages, system_prompt)
                if retry_summary is None:
                    await self._record_iteration_error(iteration, f"Context exceeded: {exc}")
                    raise ContextExceededError(str(exc)) from exc
                summary = retry_summary
                turn_messages = retry_summary.optimized_messages
                tokens = retry_summary.token_count_after
                cumulative = prior_tokens + tokens

        duration_ms = int((time.monotonic() - started) * 1000)
        iteration = await self.store.update_iteration(
            iteration.id,
            {
                "input_tokens": result.usage.input_tokens,
                "output_tokens": result.usage.output_tokens,
                "total_tokens": result.usage.input_tokens + result.usage.output_tokens,
                "tool_calls": result.tool_calls,
                "duration_ms": duration_ms,
                "error": None,
                "completed_at": datetime.now(UTC),
            },
        )

        if result.tool_calls:
            await self.store.append_tool_calls(job.id, result.tool_calls)

        failed_calls = len(result.failed_tool_calls)
        changes: dict = {
            "messages": [*history, result.message],
            "current_iteration": max(job.current_iteration, iteration.iteration_number),
            "step_index": step_index + 1,
            "retry_count": job.retry_count + failed_calls,
        }
        totals = calculate_cumulative_tokens(await self.store.list_iterations(job.id))
        changes["total_input_tokens"] = totals.total_input_tokens
        changes["total_output_tokens"] = totals.total_output_tokens

        if job.plan is not None and step is not None:
            plan = job.plan.model_copy(deep=True)
            plan.steps[step_index].status = SubTaskStatus.FAILED if failed_calls else SubTaskStatus.COMPLETED
            changes["plan"] = plan

        await self.store.update_job(job.id, changes)

        if failed_calls:
            bound.warning("step_failed", failed_tool_calls=failed_calls, retry_count=changes["retry_count"])
        bound.info(
            "iteration_completed",
            input_tokens=result.usage.input_tokens,
            output_tokens=result.usage.output_tokens,
            tool_calls=len(result.tool_calls),
            duration_ms=duration_ms,
            stop_reason=result.stop_reason,
        )
        return iteration, result, summary

    async def _record_iteration_error(self, iteration: IterationRecord, error: str) -> None:
        await self.store.update_iteration(iteration.id, {"error": error})

    async def _maybe_checkpoint(
        self,
        job: JobRecord,
        iteration: IterationRecord,
        result: TurnResult,
        summary: SummarizationResult | None,
    ) -> None:
        step = self._current_step(job, iteration.step_index)
        if not should_checkpoint(iteration.iteration_number, self.settings.checkpoint_interval, step.type if step else None):
            return
        findings = {
            "iteration": iteration.iteration_number,
            "last_output": result.text[:2000],
        }
        if summary is not None:
            findings["context_summary"] = summary.summary_text
        await self.checkpoints.save(
            job,
            next_step_index=iteration.step_index + 1,
            findings=findings,
            tool_results=result.tool_calls,
            summary=f"Checkpoint after step {iteration.step_index + 1}: {step.description}" if step else None,
        )

    # ------------------------------------------------------------------
    # Continuation
    # ------------------------------------------------------------------

    async def _advance(
        self,
        job: JobRecord,
        step_index: int,
        iteration: IterationRecord | None,
        stop_reason: str | None,
        action: str,
    ) -> StepOutcome:
        """Enqueue the next step or finish the job after ``step_index`` ran (or was skipped)."""
        next_step_index = step_index + 1
        if action == "skipped":
            next_step_index = max(job.step_index, next_step_index)

        decision = evaluate_continuation(job.model_copy(update={"step_index": next_step_index}), self._retry_ceiling)
        if not decision.should_continue:
            outcome = await self._stop(job, next_step_index, decision)
            outcome.action = action
            outcome.iteration = iteration
            return outcome

        if job.current_iteration >= job.max_iterations:
            outcome = await self._finish(job, next_step_index, "Maximum iterations reached")
            outcome.action, outcome.iteration = action, iteration
            return outcome

        if job.plan is None and stop_reason is not None and stop_reason not in INCOMPLETE_STOP_REASONS:
            outcome = await self._finish(job, next_step_index, "Goal completed")
            outcome.action, outcome.iteration = action, iteration
            return outcome

        # Re-read so a pause or cancel issued during the turn stops the chain here
        latest = await self._reload(job.id)
        if latest.status != JobStatus.RUNNING or latest.cancelled:
            logger.info("job_continuation_halted", job_id=job.id, status=latest.status.value)
            return StepOutcome(job.id, step_index, action, reason="Job paused", iteration=iteration)

        await self.queue.enqueue(
            StepMessage(
                job_id=job.id,
                user_id=job.user_id,
                thread_id=job.thread_id,
                step_index=next_step_index,
            ),
            delay=self.settings.continuation_delay_seconds,
        )
        logger.debug("job_continuation_enqueued", job_id=job.id, step_index=next_step_index)
        return StepOutcome(
            job.id,
            step_index,
            action,
            reason="More steps to execute",
            iteration=iteration,
            next_step_index=next_step_index,
        )

    async def _stop(self, job: JobRecord, step_index: int, decision: ContinuationDecision) -> StepOutcome:
        if decision.fail:
            logger.warning("job_retry_ceiling_exceeded", job_id=job.id, retry_count=job.retry_count)
            updated = await self.state_machine.transition(
                job.id, JobStatus.FAILED, decision.reason, changes={"error": decision.reason}
            )
            if updated is not None:
                await self._publish_complete(updated)
            return StepOutcome(job.id, step_index, "stopped", reason=decision.reason)

        if decision.reason == "All steps completed":
            return await self._finish(job, step_index, decision.reason)

        logger.info("job_not_continued", job_id=job.id, reason=decision.reason)
        return StepOutcome(job.id, step_index, "stopped", reason=decision.reason)

    async def _finish(self, job: JobRecord, step_index: int, reason: str) -> StepOutcome:
        updated = await self.state_machine.transition(job.id, JobStatus.COMPLETED, reason)
        if updated is not None:
            await self._publish_complete(updated)
        return StepOutcome(job.id, step_index, "stopped", reason=reason)

    async def _publish_complete(self, job: JobRecord) -> None:
        if self.publisher is None:
            return
        await self.publisher.publish(
            job.id,
            {
                "type": StreamEventType.JOB_COMPLETE,
                "status": job.status.value,
                "iteration": job.current_iteration,
                "summary": task_summary(job),
                "error": job.error,
                "total_tokens": job.total_tokens,
            },
        )
