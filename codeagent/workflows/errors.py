from __future__ import annotations


class WorkerStartError(RuntimeError):
    """The supervisor could not start a worker."""


class WorkerStopped(Exception):
    """Raised inside a worker thread when it is told to stop mid-task."""


class OrchestratorStoppedError(RuntimeError):
    """An operation was called on an orchestrator that has been stopped."""
