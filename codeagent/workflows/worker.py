from __future__ import annotations

import logging
import queue
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol

from codeagent.agents.code_agent import AgentSnapshot, CodeAgent
from codeagent.agents.config import AgentConfig
from codeagent.schemas.messages import (
    AgentStatus,
    Decision,
    FinalResult,
    PendingValidation,
    Progress,
    WorkerFailed,
    WorkerRejected,
    WorkerStarted,
)
from codeagent.workflows.errors import WorkerStopped

logger = logging.getLogger(__name__)


class Listener(Protocol):
    def notify(self, event: Any) -> None:
        ...


@dataclass(frozen=True)
class _Run:
    task: str
    snapshot: Optional[AgentSnapshot] = None


@dataclass(frozen=True)
class _Decide:
    decision: Decision


@dataclass(frozen=True)
class _Stop:
    pass


class Worker:
    """One running agent: a thread, an inbox and a ``CodeAgent``.

    The worker talks to the outside only through its inbox and its
    listener. It holds at most one validation request open at a time,
    since it blocks on the inbox until the matching decision arrives.
    """

    def __init__(self, config: AgentConfig, listener: Optional[Listener] = None) -> None:
        self.id = uuid.uuid4().hex[:8]
        self.name = config.name
        self.config = config
        self.listener = listener
        self._inbox: "queue.Queue[Any]" = queue.Queue()
        self._agent: Optional[CodeAgent] = None
        self._thread: Optional[threading.Thread] = None

    def __repr__(self) -> str:
        return f"Worker(name={self.name!r}, id={self.id!r})"

    @property
    def status(self) -> AgentStatus:
        return self._agent.status if self._agent else AgentStatus.IDLE

    def start(self, runner: Callable[[], None] | None = None) -> None:
        self._thread = threading.Thread(
            target=runner or self.serve,
            name=f"worker-{self.name}-{self.id}",
            daemon=True,
        )
        self._thread.start()

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run(self, task: str, snapshot: AgentSnapshot | None = None) -> None:
        self._inbox.put(_Run(task, snapshot))

    def decide(self, decision: Decision) -> None:
        self._inbox.put(_Decide(decision))

    def stop(self, timeout: float | None = None) -> None:
        self._inbox.put(_Stop())
        if timeout is not None and self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    def report(self, event: Any) -> None:
        if self.listener is not None:
            self.listener.notify(event)

    def serve(self) -> None:
        self.report(WorkerStarted(self, self.name))
        while True:
            message = self._inbox.get()
            if isinstance(message, _Stop):
                break
            if isinstance(message, _Run):
                try:
                    self._run_task(message)
                except WorkerStopped:
                    logger.info("Worker %s stopped mid-task", self.name)
                    break
            else:
                logger.warning("Worker %s ignoring %r while idle", self.name, message)
        logger.debug("Worker %s (%s) exiting", self.name, self.id)

    def _run_task(self, message: _Run) -> None:
        if self._agent is None or message.snapshot is not None:
            self._agent = CodeAgent(self.config, snapshot=message.snapshot)
        outcome = self._agent.run(message.task, self._await_decision, self._progress)

        if outcome.status is AgentStatus.COMPLETED:
            self.report(FinalResult(self, outcome.answer, outcome.snapshot))
        elif outcome.status is AgentStatus.REJECTED:
            self.report(WorkerRejected(self))
        else:
            self.report(WorkerFailed(self, outcome.reason or "unknown error"))

    def _await_decision(self, thought: str, code: str) -> Decision:
        self.report(PendingValidation(self, thought, code))
        while True:
            message = self._inbox.get()
            if isinstance(message, _Decide):
                return message.decision
            if isinstance(message, _Stop):
                raise WorkerStopped()
            logger.warning("Worker %s ignoring %r while awaiting validation", self.name, message)

    def _progress(self, info: Dict[str, Any]) -> None:
        self.report(Progress(self, info))
