from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from codeagent.tools.base import Tool
from codeagent.workflows.errors import OrchestratorStoppedError, WorkerStartError

if TYPE_CHECKING:
    from codeagent.agents.config import AgentConfig

logger = logging.getLogger(__name__)


class ManagedAgentTool(Tool):
    """Exposes a sub-agent configuration as ``agents.<name>(task)``.

    The call blocks the calling code step until the child worker reaches a
    terminal state. It never raises into generated code: every outcome,
    failures included, comes back as a string the parent can reason about.
    """

    def __init__(self, config: "AgentConfig", timeout: Optional[float] = None) -> None:
        summary = config.agent_description.strip().rstrip(".")
        super().__init__(
            name=config.name,
            description=f"{summary}. Call with: agents.{config.name}(task)",
            inputs={"task": {"type": "string", "description": "Task to delegate to this agent"}},
            output_type="string",
            safety="unsafe",
        )
        self.config = config
        self.timeout = timeout

    def run(self, task: str) -> str:
        orchestrator = self.config.listener
        if orchestrator is None:
            return f"Agent '{self.name}' failed to start: no orchestrator attached"

        try:
            worker = orchestrator.supervisor.start(self.config, orchestrator)
        except WorkerStartError as exc:
            logger.error("Sub-agent %s failed to start: %s", self.name, exc)
            return f"Agent '{self.name}' failed to start: {exc}"

        timeout = self.timeout if self.timeout is not None else orchestrator.sub_agent_timeout
        logger.info("Delegating to sub-agent %s (%s)", self.name, worker.id)
        try:
            return orchestrator.track_sub_agent(worker, str(task), self.name, timeout)
        except OrchestratorStoppedError:
            orchestrator.supervisor.stop(worker)
            return "Agent error: orchestrator stopped"
