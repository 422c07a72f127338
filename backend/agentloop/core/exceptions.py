class AgentLoopError(Exception):
    """Base exception for the execution engine."""

    pass


class JobNotFoundError(AgentLoopError):
    """Raised when a step message references a job that has no durable record.

    Fatal: the queue discards the message instead of retrying it.
    """

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job '{job_id}' not found")


class SessionNotFoundError(AgentLoopError):
    """Raised when an autonomous session does not exist or belongs to another user."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Autonomous session '{session_id}' not found")


class InvalidTransitionError(AgentLoopError):
    """Raised when a control request asks for a status change the state machine forbids."""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move from '{current}' to '{target}'")


class StaleRecordError(AgentLoopError):
    """Raised when a versioned update loses a race with a concurrent writer."""

    def __init__(self, record_id: str, expected_version: int, actual_version: int):
        self.record_id = record_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Record '{record_id}' is at version {actual_version}, expected {expected_version}"
        )


class DuplicateRecordError(AgentLoopError):
    """Raised when an append-only record (iteration number, step index) already exists."""

    pass


class ContextExceededError(AgentLoopError):
    """Raised when a turn cannot fit the model's context window even after summarization."""

    pass


class ModelTimeoutError(AgentLoopError):
    """Raised when a single model call exceeds the configured wall-clock limit."""

    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Model call exceeded {timeout_seconds:.0f}s")


class ToolExecutionError(AgentLoopError):
    """Raised by tool providers; the executor retries these with backoff."""

    pass


class QueueError(AgentLoopError):
    """Raised when the step queue cannot accept or track a message."""

    pass


class RetryLimitExceededError(AgentLoopError):
    """Raised when a job's retry count passes the job-level ceiling."""

    def __init__(self, step: str, attempts: int):
        self.step = step
        self.attempts = attempts
        super().__init__(f"Retry limit exceeded for step '{step}' after {attempts} attempts")
