"""Prompt builders for the engine's fixed-purpose model calls.

Each builder takes only the inputs its prompt needs and returns plain text.
JSON-producing prompts state the expected shape; the callers still validate
every response before using it.
"""

from __future__ import annotations

import json

from agentloop.schemas.autonomous import ObservationRecord, ProgressEvaluation
from agentloop.schemas.jobs import JobRecord, SubTask

# ---------------------------------------------------------------------------
# Summarization
# ---------------------------------------------------------------------------

SUMMARY_SYSTEM_PROMPT = "You condense conversation history for an assistant that must keep working on the same task."


def build_summary_prompt(conversation_text: str) -> str:
    return (
        "Please provide a concise summary of the following conversation. Focus on:\n"
        "- Key topics discussed\n"
        "- Important decisions made\n"
        "- Relevant context and background information\n"
        "- Any important facts or data mentioned\n\n"
        f"Conversation to summarize:\n{conversation_text}\n\nSummary:"
    )


# ---------------------------------------------------------------------------
# Task decomposition
# ---------------------------------------------------------------------------

ORCHESTRATION_SYSTEM_PROMPT = """You are a task analyzer. Determine if a user request requires orchestration as a long-running, multi-step task.

A task SHOULD be orchestrated if it:
1. Requires multiple sequential tool calls (more than 5)
2. Involves processing large datasets or many items
3. Has steps that depend on previous results
4. Could take longer than 2 minutes to complete
5. Might exceed context window limits
6. Requires iterative refinement or loops
7. Involves complex workflows such as "analyze all files" or "migrate X to Y"

A task should NOT be orchestrated if it:
1. Is a simple question or query
2. Requires only 1-2 tool calls
3. Can complete in under 1 minute
4. Is primarily conversational

Respond with ONLY "YES" or "NO"."""


def build_orchestration_prompt(request: str) -> str:
    return f'User request: "{request}"\n\nShould this be orchestrated?'


def build_decomposition_system_prompt(capabilities: list[str], max_steps: int) -> str:
    tool_list = "\n".join(f"- {c}" for c in capabilities) or "- (no tools available)"
    return f"""You are a task planner. Break complex goals into concrete, actionable subtasks.

Available tools:
{tool_list}

Rules:
1. Each subtask should be specific and measurable
2. Use "tool-call" for steps requiring tool execution
3. Use "llm-reasoning" for analysis, summarization, or decision-making
4. Use "checkpoint" before context-heavy operations
5. Steps are sequential and build on each other
6. Maximum {max_steps} steps

Respond with JSON only:
{{
  "steps": [
    {{"id": "step-1", "description": "Specific action", "type": "tool-call", "estimatedDuration": 30}}
  ],
  "totalSteps": 1
}}
estimatedDuration is in seconds."""


def build_decomposition_prompt(goal: str, context: dict | None = None) -> str:
    context_block = f"\nContext: {json.dumps(context, default=str)}" if context else ""
    return f'Goal: "{goal}"{context_block}\n\nBreak this down into subtasks:'


# ---------------------------------------------------------------------------
# Iteration engine
# ---------------------------------------------------------------------------


def build_job_system_prompt(job: JobRecord, step: SubTask | None, checkpoint_summary: str | None = None) -> str:
    lines = [
        "You are an autonomous assistant working through a long-running task one step at a time.",
        f"Overall goal: {job.goal}",
    ]
    if job.plan is not None:
        lines.append(f"Plan progress: {job.plan.completed_count}/{job.plan.total_steps} steps completed.")
    if step is not None:
        lines.append(f"Current step ({step.id}, {step.type.value}): {step.description}")
        lines.append("Focus only on the current step and report what you found or did.")
    if checkpoint_summary:
        lines.append(f"Resumed from checkpoint: {checkpoint_summary}")
    return "\n".join(lines)


def build_step_instruction(step: SubTask | None, step_index: int) -> str:
    if step is None:
        return "Continue working toward the goal."
    return f"Execute step {step_index + 1}: {step.description}"


# ---------------------------------------------------------------------------
# Autonomous loop
# ---------------------------------------------------------------------------

EVALUATION_SYSTEM_PROMPT = "You assess progress toward a goal. Reply with a single JSON object and nothing else."
PLANNING_SYSTEM_PROMPT = "You decide the next concrete action toward a goal. Reply with a single JSON object and nothing else."
EXECUTION_SYSTEM_PROMPT = (
    "You are an autonomous agent. Use the available tools to carry out the planned action. "
    "If you cannot proceed without a human decision, say requires_human_input."
)


def _observation_lines(observations: list[ObservationRecord]) -> str:
    if not observations:
        return "(no observations yet)"
    return "\n".join(f"- [{o.type.value}] {o.content}" for o in observations)


def build_evaluation_prompt(goal: str, observations: list[ObservationRecord], current_progress: float) -> str:
    return f"""Goal: {goal}
Current progress: {current_progress:.0f}%

Recent observations:
{_observation_lines(observations)}

Return JSON:
{{"goalAchieved": bool, "progressPercentage": 0-100, "blockers": [str], "recommendations": [str], "shouldContinue": bool}}"""


def build_planning_prompt(goal: str, evaluation: ProgressEvaluation, observations: list[ObservationRecord]) -> str:
    return f"""Goal: {goal}
Progress: {evaluation.progress_percentage:.0f}%
Blockers: {", ".join(evaluation.blockers) or "none"}
Recommendations: {", ".join(evaluation.recommendations) or "none"}

Recent observations:
{_observation_lines(observations)}

Return JSON:
{{"action": str, "rationale": str, "expectedOutcome": str}}"""


def build_execution_prompt(goal: str, action: str, rationale: str, expected_outcome: str) -> str:
    return f"""Execute the following action toward achieving this goal:

Goal: {goal}
Planned Action: {action}
Rationale: {rationale}
Expected Outcome: {expected_outcome}

Use the available tools as needed and report back what you accomplished."""
