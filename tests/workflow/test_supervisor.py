import queue
import time

import pytest

from codeagent.agents.config import AgentConfig
from codeagent.schemas.messages import WorkerFailed
from codeagent.utils.llm_clients import ScriptedLLMClient
from codeagent.workflows.errors import WorkerStartError
from codeagent.workflows.supervisor import Supervisor


class RecordingListener:
    def __init__(self):
        self.events = queue.Queue()

    def notify(self, event):
        self.events.put(event)


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def test_start_list_count_and_stop_all():
    supervisor = Supervisor()
    first = supervisor.start(AgentConfig(name="one"))
    second = supervisor.start(AgentConfig(name="two"))

    assert supervisor.count() == 2
    assert set(supervisor.list()) == {first, second}

    supervisor.stop_all(timeout=5)
    assert wait_for(lambda: supervisor.count() == 0)


def test_worker_limit_is_enforced():
    supervisor = Supervisor(max_workers=1)
    worker = supervisor.start(AgentConfig())

    with pytest.raises(WorkerStartError, match="worker limit reached"):
        supervisor.start(AgentConfig())

    supervisor.stop(worker, timeout=5)
    assert wait_for(lambda: supervisor.count() == 0)
    supervisor.stop(supervisor.start(AgentConfig()), timeout=5)


def test_crash_is_contained_and_reported():
    listener = RecordingListener()
    supervisor = Supervisor()
    client = ScriptedLLMClient([RuntimeError("boom")])
    crashing = supervisor.start(AgentConfig(name="fragile", llm_client=client), listener)
    healthy = supervisor.start(AgentConfig(name="healthy"))

    crashing.run("task")

    failure = None
    while failure is None:
        event = listener.events.get(timeout=5)
        if isinstance(event, WorkerFailed):
            failure = event
    assert failure.worker is crashing
    assert failure.reason == "worker crashed: RuntimeError: boom"
    assert wait_for(lambda: not crashing.is_alive())
    assert healthy.is_alive()
    supervisor.stop_all(timeout=5)
