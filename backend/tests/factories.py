"""Record builders and driving helpers shared by the test modules."""

from agentloop.queue.schemas import JobStatus
from agentloop.schemas.jobs import JobRecord, SubTask, SubTaskType, TaskPlan
from agentloop.schemas.messages import ChatMessage
from agentloop.services.engine_service import EngineService

TEST_USER_ID = "test-user-001"
OTHER_USER_ID = "test-user-002"


def make_plan(*descriptions: str, step_type: SubTaskType = SubTaskType.LLM_REASONING) -> TaskPlan:
    return TaskPlan(steps=[SubTask(description=d, type=step_type) for d in descriptions])


def make_job(
    goal: str = "Collect and summarise the quarterly figures",
    plan: TaskPlan | None = None,
    status: JobStatus = JobStatus.PENDING,
    **fields,
) -> JobRecord:
    fields.setdefault("messages", [ChatMessage.from_text("user", goal)])
    fields.setdefault("model", "claude-sonnet-4-20250514")
    return JobRecord(
        user_id=fields.pop("user_id", TEST_USER_ID),
        thread_id="thread-001",
        goal=goal,
        plan=plan,
        status=status,
        **fields,
    )


async def drain(service: EngineService, limit: int = 50) -> int:
    """Process queued step messages until none are due. Returns how many ran."""
    for processed in range(limit):
        if not await service.workers.process_next():
            return processed
    raise AssertionError(f"queue did not drain within {limit} messages")
