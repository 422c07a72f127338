"""TaskDecomposer: decides whether a request needs orchestration and plans it.

Both calls go to the model but neither can fail the caller: an unreadable
orchestration verdict means "no", and an unusable plan becomes a single
``llm-reasoning`` step that carries the goal verbatim.
"""

from __future__ import annotations

import json
from typing import Any

import structlog
from pydantic import ValidationError

from agentloop.engine.llm import LLMClient
from agentloop.engine.llm_helpers import parse_json_response
from agentloop.engine.prompts import (
    ORCHESTRATION_SYSTEM_PROMPT,
    build_decomposition_prompt,
    build_decomposition_system_prompt,
    build_orchestration_prompt,
)
from agentloop.schemas.jobs import SubTask, SubTaskType, TaskPlan

logger = structlog.get_logger(__name__)


def fallback_plan(goal: str) -> TaskPlan:
    return TaskPlan(steps=[SubTask(description=goal, type=SubTaskType.LLM_REASONING)])


class TaskDecomposer:
    def __init__(self, llm: LLMClient, model: str | None = None, max_steps: int = 50) -> None:
        self.llm = llm
        self.model = model
        self.max_steps = max_steps

    async def should_orchestrate(self, request: str) -> bool:
        try:
            completion = await self.llm.complete(
                ORCHESTRATION_SYSTEM_PROMPT,
                build_orchestration_prompt(request),
                max_tokens=10,
                model=self.model,
            )
        except Exception as exc:
            logger.error(
                "orchestration_check_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return False

        decision = "YES" in completion.text.strip().upper()
        logger.info("orchestration_decided", request=request[:50], orchestrate=decision)
        return decision

    async def decompose_goal(
        self,
        goal: str,
        available_capabilities: list[str],
        context: dict[str, Any] | None = None,
    ) -> TaskPlan:
        """Plan ``goal`` into ordered subtasks, or fall back to a single step."""
        try:
            completion = await self.llm.complete(
                build_decomposition_system_prompt(available_capabilities, self.max_steps),
                build_decomposition_prompt(goal, context),
                max_tokens=2000,
                model=self.model,
            )
        except Exception as exc:
            logger.error(
                "decomposition_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return fallback_plan(goal)

        try:
            plan = TaskPlan.model_validate(parse_json_response(completion.text))
        except (json.JSONDecodeError, ValidationError) as exc:
            logger.warning(
                "decomposition_invalid",
                text=completion.text[:200],
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return fallback_plan(goal)

        if len(plan.steps) > self.max_steps:
            plan = TaskPlan(steps=plan.steps[: self.max_steps])

        logger.info(
            "goal_decomposed",
            total_steps=plan.total_steps,
            steps=" -> ".join(s.description for s in plan.steps),
        )
        return plan
