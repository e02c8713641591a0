from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:
    from codeagent.agents.code_agent import AgentSnapshot
    from codeagent.workflows.worker import Worker


@dataclass(frozen=True)
class TaskStep:
    """Transcript marker for a submitted task."""

    task: str


@dataclass(frozen=True)
class ActionStep:
    """One think/code/execute/observe iteration.

    Exactly one of ``result`` and ``error`` is meaningful: a step with an
    ``error`` never carries a result value.
    """

    step: int
    thought: str = ""
    code: str = ""
    result: Any = None
    error: Optional[str] = None
    output: str = ""

    @property
    def is_error(self) -> bool:
        return self.error is not None


class DecisionKind(str, Enum):
    APPROVE = "approve"
    MODIFY = "modify"
    FEEDBACK = "feedback"
    REJECT = "reject"


@dataclass(frozen=True)
class Decision:
    """Verdict of a validation handler on one candidate code step."""

    kind: DecisionKind
    code: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def approve(cls) -> "Decision":
        return cls(DecisionKind.APPROVE)

    @classmethod
    def modify(cls, code: str) -> "Decision":
        if not code or not code.strip():
            raise ValueError("modify decision requires replacement code")
        return cls(DecisionKind.MODIFY, code=code)

    @classmethod
    def feedback(cls, message: str) -> "Decision":
        return cls(DecisionKind.FEEDBACK, message=message)

    @classmethod
    def reject(cls) -> "Decision":
        return cls(DecisionKind.REJECT)


@dataclass(frozen=True)
class ValidationRequest:
    """Candidate code step awaiting a decision."""

    worker: "Worker"
    agent_name: str
    thought: str
    code: str

    def respond(self, decision: Decision) -> None:
        self.worker.decide(decision)


class AgentStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    AWAITING_VALIDATION = "awaiting_validation"
    FORCING_FINAL = "forcing_final"
    COMPLETED = "completed"
    FAILED = "failed"
    REJECTED = "rejected"


# Notifications sent by a worker to its listener.


@dataclass(frozen=True)
class WorkerStarted:
    worker: "Worker"
    name: str


@dataclass(frozen=True)
class PendingValidation:
    worker: "Worker"
    thought: str
    code: str


@dataclass(frozen=True)
class FinalResult:
    worker: "Worker"
    answer: Any
    snapshot: "AgentSnapshot"


@dataclass(frozen=True)
class WorkerFailed:
    worker: "Worker"
    reason: str


@dataclass(frozen=True)
class WorkerRejected:
    worker: "Worker"


@dataclass(frozen=True)
class Progress:
    worker: "Worker"
    info: Dict[str, Any] = field(default_factory=dict)


class TaskStatus(str, Enum):
    OK = "ok"
    ERROR = "error"
    REJECTED = "rejected"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class TaskResult:
    """Outcome of ``Orchestrator.run_task``."""

    status: TaskStatus
    answer: Any = None
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is TaskStatus.OK

    @classmethod
    def success(cls, answer: Any) -> "TaskResult":
        return cls(TaskStatus.OK, answer=answer)

    @classmethod
    def failure(cls, reason: str) -> "TaskResult":
        return cls(TaskStatus.ERROR, reason=reason)
