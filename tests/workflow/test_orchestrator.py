import queue
import threading
import time

import pytest

from codeagent.agents.config import AgentConfig
from codeagent.schemas.llm import CodeStep
from codeagent.schemas.messages import Decision, TaskStatus
from codeagent.tools.base import FunctionTool
from codeagent.utils.llm_clients import LLMTransportError, ScriptedLLMClient
from codeagent.workflows.errors import OrchestratorStoppedError
from codeagent.workflows.orchestrator import Orchestrator, run_agent
from codeagent.workflows.supervisor import Supervisor

TIMEOUT = 10


def scripted(*codes):
    return ScriptedLLMClient(
        [CodeStep(thought="step", code=c) if isinstance(c, str) else c for c in codes]
    )


def blocking_tool(name, release, entered=None):
    def wait(value):
        if entered is not None:
            entered.set()
        release.wait(TIMEOUT)
        return value

    return FunctionTool(name, wait)


def test_calculation_task_returns_answer():
    config = AgentConfig(max_steps=5, llm_client=scripted("a = 25 * 4\na", "final_answer(str(a + 10))"))

    with Orchestrator.start(config) as orchestrator:
        result = orchestrator.run_task("Calculate 25*4, then add 10", timeout=TIMEOUT)

    assert result.ok
    assert result.status is TaskStatus.OK
    assert result.answer == "110"


def test_variables_survive_across_tasks():
    client = scripted("x = 10 + 5\nfinal_answer(x)", "final_answer(x * 3)")
    supervisor = Supervisor()

    with Orchestrator.start(AgentConfig(llm_client=client), supervisor=supervisor) as orchestrator:
        first = orchestrator.run_task("Calculate 10 + 5", timeout=TIMEOUT)
        workers = supervisor.list()
        second = orchestrator.run_task("Multiply that by 3", timeout=TIMEOUT)

        assert supervisor.list() == workers

    assert first.answer == 15
    assert second.answer == 45
    contents = [m["content"] for m in client.calls[-1].messages]
    assert "Calculate 10 + 5" in contents
    assert contents[-1] == "Multiply that by 3"


def test_rejecting_handler_blocks_execution():
    executed = []
    config = AgentConfig(
        tools=[FunctionTool("record", lambda: executed.append(1))],
        llm_client=scripted("tools.record()\nfinal_answer(1)"),
    )

    with Orchestrator.start(config, validation_handler=lambda request: Decision.reject()) as orchestrator:
        result = orchestrator.run_task("do it", timeout=TIMEOUT)

    assert result.status is TaskStatus.REJECTED
    assert result.reason == "Execution rejected"
    assert not result.ok
    assert executed == []


def test_step_budget_bounds_model_calls():
    client = scripted("a = 1\na", "b = 2\nb", "final_answer(3)")

    with Orchestrator.start(AgentConfig(max_steps=1, llm_client=client)) as orchestrator:
        result = orchestrator.run_task("needs two steps", timeout=TIMEOUT)

    assert result.status is TaskStatus.ERROR
    assert result.reason == "agent did not provide final answer"
    assert len(client.calls) == 2


def test_sub_agent_answer_flows_back_into_parent():
    calculator = AgentConfig(
        name="calculator",
        instructions="Solves arithmetic.",
        llm_client=scripted("final_answer(25 * 4 + 15)"),
    )
    parent = AgentConfig(
        name="manager",
        managed_agents=[calculator],
        llm_client=scripted(
            "r = agents.calculator('compute 25*4+15')\nr",
            "final_answer(f'The result is {r}')",
        ),
    )
    reviewed = []

    def handler(request):
        reviewed.append(request.agent_name)
        return Decision.approve()

    with Orchestrator.start(parent, validation_handler=handler) as orchestrator:
        result = orchestrator.run_task("Delegate the calculation", timeout=TIMEOUT)
        status = orchestrator.status()

    assert result.answer == "The result is 115"
    assert reviewed == ["manager", "calculator", "manager"]
    assert status.active_sub_agents == 0


def test_concurrent_sub_agents_get_their_own_results():
    release = threading.Event()
    entered = threading.Event()
    slow = AgentConfig(
        name="slow",
        tools=[blocking_tool("wait", release, entered)],
        llm_client=scripted("final_answer(tools.wait('slow'))"),
    )
    fast = AgentConfig(name="fast", llm_client=scripted("final_answer('fast')"))
    results = {}

    with Orchestrator.start(AgentConfig()) as orchestrator:
        slow_worker = orchestrator.supervisor.start(slow.with_listener(orchestrator), orchestrator)
        fast_worker = orchestrator.supervisor.start(fast.with_listener(orchestrator), orchestrator)

        def call(worker, name):
            results[name] = orchestrator.track_sub_agent(worker, f"run {name}", name, TIMEOUT)

        slow_thread = threading.Thread(target=call, args=(slow_worker, "slow"))
        slow_thread.start()
        assert entered.wait(TIMEOUT)

        call(fast_worker, "fast")
        assert results == {"fast": "fast"}
        assert orchestrator.status().active_sub_agents == 1

        release.set()
        slow_thread.join(TIMEOUT)

    assert results == {"fast": "fast", "slow": "slow"}


def test_sub_agent_failures_become_strings():
    broken = AgentConfig(name="broken", llm_client=ScriptedLLMClient([LLMTransportError("no route")]))
    parent = AgentConfig(
        managed_agents=[broken],
        llm_client=scripted("r = agents.broken('try')\nfinal_answer(r)"),
    )

    result = run_agent("delegate", parent, timeout=TIMEOUT)

    assert result.answer == "Agent error: LLM call failed: no route"


def test_sub_agent_rejection_is_reported_to_parent():
    child = AgentConfig(name="child", llm_client=scripted("final_answer(1)"))
    parent = AgentConfig(
        managed_agents=[child],
        llm_client=scripted("r = agents.child('go')\nfinal_answer(r)"),
    )

    def handler(request):
        return Decision.reject() if request.agent_name == "child" else Decision.approve()

    result = run_agent("delegate", parent, validation_handler=handler, timeout=TIMEOUT)

    assert result.answer == "Agent 'child' execution rejected"


def test_sub_agent_start_failure_is_reported_to_parent():
    child = AgentConfig(name="child", llm_client=scripted("final_answer(1)"))
    parent = AgentConfig(
        managed_agents=[child],
        llm_client=scripted("r = agents.child('go')\nfinal_answer(r)"),
    )

    with Orchestrator.start(parent, supervisor=Supervisor(max_workers=1)) as orchestrator:
        result = orchestrator.run_task("delegate", timeout=TIMEOUT)

    assert result.answer == "Agent 'child' failed to start: worker limit reached (1)"


def test_sub_agent_timeout_is_reported_to_parent():
    release = threading.Event()
    child = AgentConfig(
        name="child",
        tools=[blocking_tool("wait", release)],
        llm_client=scripted("final_answer(tools.wait(1))"),
    )
    parent = AgentConfig(
        managed_agents=[child],
        llm_client=scripted("r = agents.child('go')\nfinal_answer(r)"),
    )

    with Orchestrator.start(parent, sub_agent_timeout=0.2) as orchestrator:
        result = orchestrator.run_task("delegate", timeout=TIMEOUT)
        release.set()

    assert result.answer == "Agent 'child' timed out after 0.2s"


def test_task_timeout_then_recovery():
    release = threading.Event()
    client = scripted("final_answer(tools.wait(1))", "final_answer('again')")
    config = AgentConfig(tools=[blocking_tool("wait", release)], llm_client=client)

    with Orchestrator.start(config) as orchestrator:
        result = orchestrator.run_task("slow task", timeout=0.2)
        release.set()
        assert result.status is TaskStatus.TIMEOUT
        assert orchestrator.status().status == "idle"

        retry = orchestrator.run_task("next task", timeout=TIMEOUT)

    assert retry.answer == "again"


def test_crashed_worker_is_replaced_for_the_next_task():
    client = ScriptedLLMClient([RuntimeError("boom"), CodeStep(thought="t", code="final_answer('ok')")])

    with Orchestrator.start(AgentConfig(llm_client=client)) as orchestrator:
        crashed = orchestrator.run_task("first", timeout=TIMEOUT)
        recovered = orchestrator.run_task("second", timeout=TIMEOUT)

    assert crashed.status is TaskStatus.ERROR
    assert crashed.reason == "worker crashed: RuntimeError: boom"
    assert recovered.answer == "ok"


def test_second_concurrent_task_is_refused():
    release = threading.Event()
    entered = threading.Event()
    config = AgentConfig(
        tools=[blocking_tool("wait", release, entered)],
        llm_client=scripted("final_answer(tools.wait('first'))"),
    )
    results = queue.Queue()

    with Orchestrator.start(config) as orchestrator:
        runner = threading.Thread(target=lambda: results.put(orchestrator.run_task("first", timeout=TIMEOUT)))
        runner.start()
        assert entered.wait(TIMEOUT)

        refused = orchestrator.run_task("second", timeout=TIMEOUT)
        assert orchestrator.status().status == "running"
        release.set()
        runner.join(TIMEOUT)

    assert refused.reason == "a task is already running"
    assert results.get(timeout=TIMEOUT).answer == "first"


def test_failing_handler_turns_into_feedback():
    client = scripted("final_answer(1)", "final_answer(2)")

    def handler(request):
        raise RuntimeError("judge offline")

    with Orchestrator.start(AgentConfig(max_steps=1, llm_client=client), validation_handler=handler) as orchestrator:
        result = orchestrator.run_task("task", timeout=TIMEOUT)

    assert result.answer == 2
    contents = [m["content"] for m in client.calls[-1].messages]
    assert any("User feedback: Validation failed: judge offline" in c for c in contents)


def test_deferred_decisions_through_submit_decision():
    requests = queue.Queue()
    results = queue.Queue()

    def handler(request):
        requests.put(request)
        return None

    config = AgentConfig(llm_client=scripted("final_answer('approved later')"))
    with Orchestrator.start(config, validation_handler=handler) as orchestrator:
        runner = threading.Thread(target=lambda: results.put(orchestrator.run_task("task", timeout=TIMEOUT)))
        runner.start()

        request = requests.get(timeout=TIMEOUT)
        assert orchestrator.status().pending_validations == 1
        orchestrator.submit_decision(Decision.approve(), request.worker)
        runner.join(TIMEOUT)

    assert results.get(timeout=TIMEOUT).answer == "approved later"


def test_handler_can_answer_through_the_request():
    requests = queue.Queue()
    results = queue.Queue()
    config = AgentConfig(llm_client=scripted("final_answer('via request')"))

    with Orchestrator.start(config, validation_handler=lambda r: requests.put(r)) as orchestrator:
        runner = threading.Thread(target=lambda: results.put(orchestrator.run_task("task", timeout=TIMEOUT)))
        runner.start()
        requests.get(timeout=TIMEOUT).respond(Decision.approve())
        runner.join(TIMEOUT)

    assert results.get(timeout=TIMEOUT).answer == "via request"


def test_progress_is_forwarded():
    progress = []
    config = AgentConfig(llm_client=scripted("a = 1", "final_answer(a)"))

    with Orchestrator.start(config, on_progress=lambda worker, info: progress.append(info["step"])) as orchestrator:
        orchestrator.run_task("task", timeout=TIMEOUT)

    assert progress == [1, 2]


def test_stopped_orchestrator_refuses_work():
    orchestrator = Orchestrator.start(AgentConfig(llm_client=scripted()))
    orchestrator.stop()

    assert orchestrator.status().status == "stopped"
    with pytest.raises(OrchestratorStoppedError):
        orchestrator.run_task("task")


def test_handler_can_stop_the_orchestrator():
    holder = {}

    def handler(request):
        holder["orchestrator"].stop(timeout=TIMEOUT)
        return None

    orchestrator = Orchestrator.start(AgentConfig(llm_client=scripted("final_answer(1)")), validation_handler=handler)
    holder["orchestrator"] = orchestrator
    started = time.monotonic()
    result = orchestrator.run_task("task", timeout=TIMEOUT)

    assert time.monotonic() - started < TIMEOUT / 2
    assert result.reason == "orchestrator stopped"
    assert orchestrator.status().status == "stopped"
