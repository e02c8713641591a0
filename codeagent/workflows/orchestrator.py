"""Central coordinator for workers, validation and sub-agent routing.

All orchestrator state lives in one control thread. Public methods only
post messages to its inbox and, where they return something, wait on a
``ReplyChannel``. Worker notifications land in the same inbox, so state
changes are processed strictly one at a time.

Routing of terminal notifications: the main worker's result goes to the
pending ``run_task`` caller; a tracked sub-agent's result goes to the
tool call that delegated to it. Anything else comes from a worker that
was already abandoned (timeout, stop) and is dropped.
"""
from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from codeagent.agents.code_agent import AgentSnapshot
from codeagent.agents.config import AgentConfig
from codeagent.memory.transcript import format_for_llm
from codeagent.schemas.messages import (
    Decision,
    FinalResult,
    PendingValidation,
    Progress,
    TaskResult,
    TaskStatus,
    ValidationRequest,
    WorkerFailed,
    WorkerRejected,
    WorkerStarted,
)
from codeagent.workflows.channels import ReplyChannel
from codeagent.workflows.errors import OrchestratorStoppedError, WorkerStartError
from codeagent.workflows.supervisor import Supervisor
from codeagent.workflows.validation import ValidationHandler, auto_approve
from codeagent.workflows.worker import Worker

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrchestratorStatus:
    status: str
    pending_validations: int = 0
    active_sub_agents: int = 0
    result: Optional[TaskResult] = None
    error: Optional[str] = None


@dataclass
class _SubAgentEntry:
    worker: Worker
    name: str
    reply: ReplyChannel


@dataclass(frozen=True)
class _RunTask:
    task: str
    reply: ReplyChannel


@dataclass(frozen=True)
class _TrackSubAgent:
    worker: Worker
    task: str
    name: str
    reply: ReplyChannel


@dataclass(frozen=True)
class _SubmitDecision:
    decision: Decision
    worker: Optional[Worker] = None


@dataclass(frozen=True)
class _CancelTask:
    reply: ReplyChannel


@dataclass(frozen=True)
class _CancelSubAgent:
    worker: Worker


@dataclass(frozen=True)
class _StatusQuery:
    reply: ReplyChannel


@dataclass(frozen=True)
class _Shutdown:
    reply: ReplyChannel


class Orchestrator:
    def __init__(
        self,
        config: AgentConfig,
        validation_handler: ValidationHandler | None = None,
        supervisor: Supervisor | None = None,
        on_progress: Callable[[Worker, Dict[str, Any]], None] | None = None,
        default_timeout: float | None = None,
        sub_agent_timeout: float | None = 120.0,
    ) -> None:
        self.config = config.with_listener(self)
        self.validation_handler = validation_handler or auto_approve
        self.supervisor = supervisor or Supervisor()
        self.on_progress = on_progress
        self.default_timeout = default_timeout
        self.sub_agent_timeout = sub_agent_timeout

        self._inbox: "queue.Queue[Any]" = queue.Queue()
        self._stopped = threading.Event()
        self._thread = threading.Thread(target=self._loop, name=f"orchestrator-{config.name}", daemon=True)

        # Owned by the control thread.
        self._main_worker: Optional[Worker] = None
        self._task_reply: Optional[ReplyChannel] = None
        self._snapshot: Optional[AgentSnapshot] = None
        self._sub_agents: Dict[Worker, _SubAgentEntry] = {}
        self._pending_validations: Dict[Worker, ValidationRequest] = {}
        self._last_result: Optional[TaskResult] = None

    @classmethod
    def start(
        cls,
        config: AgentConfig,
        validation_handler: ValidationHandler | None = None,
        supervisor: Supervisor | None = None,
        on_progress: Callable[[Worker, Dict[str, Any]], None] | None = None,
        default_timeout: float | None = None,
        sub_agent_timeout: float | None = 120.0,
    ) -> "Orchestrator":
        orchestrator = cls(
            config,
            validation_handler=validation_handler,
            supervisor=supervisor,
            on_progress=on_progress,
            default_timeout=default_timeout,
            sub_agent_timeout=sub_agent_timeout,
        )
        orchestrator._thread.start()
        logger.info("Orchestrator started for agent %s", config.name)
        return orchestrator

    def __enter__(self) -> "Orchestrator":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.stop()

    # Public API, callable from any thread.

    def run_task(self, task: str, timeout: float | None = None) -> TaskResult:
        reply = ReplyChannel()
        self._post(_RunTask(task, reply))
        timeout = timeout if timeout is not None else self.default_timeout
        try:
            return reply.receive(timeout)
        except TimeoutError:
            if reply.send(TaskResult(TaskStatus.TIMEOUT, reason=f"task timed out after {timeout}s")):
                logger.warning("Task timed out after %ss: %s", timeout, task)
                self._post_quietly(_CancelTask(reply))
            return reply.receive()

    def track_sub_agent(self, worker: Worker, task: str, name: str, timeout: float | None = None) -> str:
        """Hand ``task`` to an idle child worker and block until it finishes."""
        reply = ReplyChannel()
        self._post(_TrackSubAgent(worker, task, name, reply))
        try:
            return reply.receive(timeout)
        except TimeoutError:
            if reply.send(f"Agent '{name}' timed out after {timeout}s"):
                logger.warning("Sub-agent %s (%s) timed out", name, worker.id)
                self._post_quietly(_CancelSubAgent(worker))
            return reply.receive()

    def submit_decision(self, decision: Decision, worker: Worker | None = None) -> None:
        self._post(_SubmitDecision(decision, worker))

    def notify(self, event: Any) -> None:
        """Listener entry point for worker notifications."""
        self._post_quietly(event)

    def status(self) -> OrchestratorStatus:
        if self._stopped.is_set():
            return OrchestratorStatus(status="stopped", result=self._last_result)
        reply = ReplyChannel()
        self._post(_StatusQuery(reply))
        return reply.receive()

    def stop(self, timeout: float | None = 10.0) -> None:
        if self._stopped.is_set() or not self._thread.is_alive():
            self._stopped.set()
            return
        if threading.current_thread() is self._thread:
            # called from a handler or callback; the loop shuts down after the current message
            self._inbox.put(_Shutdown(ReplyChannel()))
            return
        reply = ReplyChannel()
        self._inbox.put(_Shutdown(reply))
        try:
            reply.receive(timeout)
        except TimeoutError:
            logger.error("Orchestrator did not shut down within %ss", timeout)
        self._thread.join(timeout)

    def _post(self, message: Any) -> None:
        if self._stopped.is_set():
            raise OrchestratorStoppedError("orchestrator is stopped")
        self._inbox.put(message)

    def _post_quietly(self, message: Any) -> None:
        if not self._stopped.is_set():
            self._inbox.put(message)

    # Control thread.

    def _loop(self) -> None:
        while True:
            message = self._inbox.get()
            if isinstance(message, _Shutdown):
                self._shutdown(message.reply)
                return
            try:
                self._dispatch(message)
            except Exception:
                logger.exception("Orchestrator failed to handle %r", message)

    def _dispatch(self, message: Any) -> None:
        if isinstance(message, _RunTask):
            self._handle_run_task(message)
        elif isinstance(message, _TrackSubAgent):
            self._handle_track(message)
        elif isinstance(message, _SubmitDecision):
            self._handle_submit(message)
        elif isinstance(message, _CancelTask):
            self._handle_cancel_task(message)
        elif isinstance(message, _CancelSubAgent):
            self._handle_cancel_sub_agent(message)
        elif isinstance(message, _StatusQuery):
            message.reply.send(self._current_status())
        elif isinstance(message, WorkerStarted):
            logger.debug("Worker %s (%s) started", message.name, message.worker.id)
        elif isinstance(message, PendingValidation):
            self._handle_validation(message)
        elif isinstance(message, FinalResult):
            self._handle_final(message)
        elif isinstance(message, WorkerFailed):
            self._handle_failed(message)
        elif isinstance(message, WorkerRejected):
            self._handle_rejected(message)
        elif isinstance(message, Progress):
            self._handle_progress(message)
        else:
            logger.warning("Orchestrator ignoring unknown message %r", message)

    def _handle_run_task(self, message: _RunTask) -> None:
        if self._task_reply is not None:
            message.reply.send(TaskResult.failure("a task is already running"))
            return

        worker = self._main_worker
        if worker is not None and worker.is_alive():
            logger.info("Reusing main worker %s for task: %s", worker.id, message.task)
            worker.run(message.task)
        else:
            try:
                worker = self.supervisor.start(self.config, self)
            except WorkerStartError as exc:
                logger.error("Main worker failed to start: %s", exc)
                message.reply.send(TaskResult.failure(f"failed to start agent: {exc}"))
                return
            self._main_worker = worker
            worker.run(message.task, snapshot=self._snapshot)
        self._task_reply = message.reply

    def _handle_track(self, message: _TrackSubAgent) -> None:
        entry = _SubAgentEntry(worker=message.worker, name=message.name, reply=message.reply)
        # registered before the child sees its task
        self._sub_agents[message.worker] = entry
        logger.info("Tracking sub-agent %s (%s)", message.name, message.worker.id)
        message.worker.run(message.task)

    def _handle_validation(self, message: PendingValidation) -> None:
        worker = message.worker
        if not self._is_known(worker):
            logger.warning("Ignoring validation request from unknown worker %s", worker.id)
            return
        request = ValidationRequest(worker=worker, agent_name=worker.name, thought=message.thought, code=message.code)
        self._pending_validations[worker] = request
        logger.info("Validation requested by %s", worker.name)
        try:
            decision = self.validation_handler(request)
        except Exception as exc:
            logger.exception("Validation handler failed for %s", worker.name)
            decision = Decision.feedback(f"Validation failed: {exc}")
        if decision is not None:
            self._deliver(worker, decision)

    def _handle_submit(self, message: _SubmitDecision) -> None:
        worker = message.worker
        if worker is None:
            if len(self._pending_validations) != 1:
                logger.warning(
                    "Cannot route decision without a worker (%d pending)", len(self._pending_validations)
                )
                return
            worker = next(iter(self._pending_validations))
        if worker not in self._pending_validations:
            logger.warning("No pending validation for worker %s; decision dropped", worker.id)
            return
        self._deliver(worker, message.decision)

    def _deliver(self, worker: Worker, decision: Decision) -> None:
        self._pending_validations.pop(worker, None)
        logger.info("Decision for %s: %s", worker.name, decision.kind.value)
        worker.decide(decision)

    def _handle_final(self, message: FinalResult) -> None:
        worker = message.worker
        self._pending_validations.pop(worker, None)
        if worker is self._main_worker:
            self._snapshot = message.snapshot
            self._reply_task(TaskResult.success(message.answer))
            return
        entry = self._sub_agents.pop(worker, None)
        if entry is not None:
            logger.info("Sub-agent %s finished", entry.name)
            entry.reply.send(format_for_llm(message.answer))
            self.supervisor.stop(worker)
            return
        logger.info("Dropping result from stale worker %s", worker.id)

    def _handle_failed(self, message: WorkerFailed) -> None:
        worker = message.worker
        self._pending_validations.pop(worker, None)
        if worker is self._main_worker:
            self._retire_main_worker()
            self._reply_task(TaskResult.failure(message.reason))
            return
        entry = self._sub_agents.pop(worker, None)
        if entry is not None:
            logger.info("Sub-agent %s failed: %s", entry.name, message.reason)
            entry.reply.send(f"Agent error: {message.reason}")
            self.supervisor.stop(worker)
            return
        logger.info("Dropping failure from stale worker %s: %s", worker.id, message.reason)

    def _handle_rejected(self, message: WorkerRejected) -> None:
        worker = message.worker
        self._pending_validations.pop(worker, None)
        if worker is self._main_worker:
            self._retire_main_worker()
            self._reply_task(TaskResult(TaskStatus.REJECTED, reason="Execution rejected"))
            return
        entry = self._sub_agents.pop(worker, None)
        if entry is not None:
            entry.reply.send(f"Agent '{entry.name}' execution rejected")
            self.supervisor.stop(worker)
            return
        logger.info("Dropping rejection from stale worker %s", worker.id)

    def _handle_progress(self, message: Progress) -> None:
        if self.on_progress is None:
            return
        try:
            self.on_progress(message.worker, dict(message.info))
        except Exception:
            logger.exception("Progress callback failed")

    def _handle_cancel_task(self, message: _CancelTask) -> None:
        if self._task_reply is not message.reply:
            return
        self._task_reply = None
        self._last_result = message.reply.receive(0)
        self._retire_main_worker()
        self._cancel_sub_agents("Agent error: task cancelled")

    def _handle_cancel_sub_agent(self, message: _CancelSubAgent) -> None:
        entry = self._sub_agents.pop(message.worker, None)
        self._pending_validations.pop(message.worker, None)
        if entry is not None:
            self.supervisor.stop(message.worker)

    def _shutdown(self, reply: ReplyChannel) -> None:
        self._stopped.set()
        logger.info("Orchestrator shutting down")
        self._reply_task(TaskResult.failure("orchestrator stopped"))
        self._retire_main_worker()
        self._cancel_sub_agents("Agent error: orchestrator stopped")
        # callers that posted before the stop flag was set must not hang
        while True:
            try:
                message = self._inbox.get_nowait()
            except queue.Empty:
                break
            if isinstance(message, _RunTask):
                message.reply.send(TaskResult.failure("orchestrator stopped"))
            elif isinstance(message, _TrackSubAgent):
                message.reply.send("Agent error: orchestrator stopped")
                self.supervisor.stop(message.worker)
            elif isinstance(message, (_StatusQuery, _Shutdown)):
                message.reply.send(OrchestratorStatus(status="stopped", result=self._last_result))
        reply.send(True)

    # Helpers, control thread only.

    def _is_known(self, worker: Worker) -> bool:
        return worker is self._main_worker or worker in self._sub_agents

    def _reply_task(self, result: TaskResult) -> None:
        if self._task_reply is None:
            return
        self._last_result = result
        self._task_reply.send(result)
        self._task_reply = None

    def _retire_main_worker(self) -> None:
        worker = self._main_worker
        if worker is None:
            return
        self._pending_validations.pop(worker, None)
        self.supervisor.stop(worker)
        self._main_worker = None

    def _cancel_sub_agents(self, reason: str) -> None:
        for worker, entry in list(self._sub_agents.items()):
            entry.reply.send(reason)
            self._pending_validations.pop(worker, None)
            self.supervisor.stop(worker)
        self._sub_agents.clear()

    def _current_status(self) -> OrchestratorStatus:
        last = self._last_result
        return OrchestratorStatus(
            status="running" if self._task_reply is not None else "idle",
            pending_validations=len(self._pending_validations),
            active_sub_agents=len(self._sub_agents),
            result=last,
            error=last.reason if last is not None and not last.ok else None,
        )


def run_agent(
    task: str,
    config: AgentConfig,
    validation_handler: ValidationHandler | None = None,
    timeout: float | None = None,
) -> TaskResult:
    """Start an orchestrator, run one task and stop it."""
    with Orchestrator.start(config, validation_handler=validation_handler) as orchestrator:
        return orchestrator.run_task(task, timeout=timeout)
