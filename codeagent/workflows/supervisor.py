from __future__ import annotations

import logging
import threading
from typing import Dict, List, Optional

from codeagent.agents.config import AgentConfig
from codeagent.schemas.messages import WorkerFailed
from codeagent.workflows.errors import WorkerStartError
from codeagent.workflows.worker import Listener, Worker

logger = logging.getLogger(__name__)


class Supervisor:
    """Starts and stops workers; a crashing worker never takes down its caller.

    Workers are not restarted. A crash is reported to the worker's listener
    as ``WorkerFailed`` and the caller decides what to do next.
    """

    def __init__(self, max_workers: Optional[int] = None) -> None:
        if max_workers is not None and max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {max_workers}")
        self.max_workers = max_workers
        self._workers: Dict[str, Worker] = {}
        self._lock = threading.Lock()

    def start(self, config: AgentConfig, listener: Optional[Listener] = None) -> Worker:
        worker = Worker(config, listener)
        with self._lock:
            if self.max_workers is not None and len(self._workers) >= self.max_workers:
                raise WorkerStartError(f"worker limit reached ({self.max_workers})")
            self._workers[worker.id] = worker

        try:
            worker.start(runner=lambda: self._guard(worker))
        except RuntimeError as exc:
            with self._lock:
                self._workers.pop(worker.id, None)
            raise WorkerStartError(str(exc)) from exc

        logger.info("Started worker %s (%s)", worker.name, worker.id)
        return worker

    def _guard(self, worker: Worker) -> None:
        try:
            worker.serve()
        except Exception as exc:
            logger.exception("Worker %s (%s) crashed", worker.name, worker.id)
            worker.report(WorkerFailed(worker, f"worker crashed: {type(exc).__name__}: {exc}"))
        finally:
            with self._lock:
                self._workers.pop(worker.id, None)

    def stop(self, worker: Worker, timeout: float | None = None) -> None:
        logger.info("Stopping worker %s (%s)", worker.name, worker.id)
        worker.stop(timeout)

    def list(self) -> List[Worker]:
        with self._lock:
            return [w for w in self._workers.values() if w.is_alive()]

    def count(self) -> int:
        return len(self.list())

    def stop_all(self, timeout: float | None = None) -> None:
        with self._lock:
            workers = list(self._workers.values())
        for worker in workers:
            self.stop(worker, timeout)
