from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from codeagent.agents.config import AgentConfig
from codeagent.agents.prompts import FORCE_FINAL_MESSAGE, system_prompt
from codeagent.execution.sandbox import ExecutionResult, execute
from codeagent.memory.binding import Binding
from codeagent.memory.transcript import Memory
from codeagent.schemas.llm import CodeStep
from codeagent.schemas.messages import ActionStep, AgentStatus, Decision, DecisionKind
from codeagent.utils.llm_clients import LLMClient, LLMError, LLMResponseError

logger = logging.getLogger(__name__)

Decide = Callable[[str, str], Decision]
ProgressFn = Callable[[Dict[str, Any]], None]


@dataclass(frozen=True)
class AgentSnapshot:
    """State carried from one task to the next: transcript plus binding."""

    memory: Memory
    binding: Binding


@dataclass(frozen=True)
class AgentOutcome:
    status: AgentStatus
    answer: Any = None
    reason: Optional[str] = None
    snapshot: Optional[AgentSnapshot] = None


class CodeAgent:
    """Think, write code, get it validated, execute, observe. Repeat.

    ``run`` drives one task to a terminal status. Every candidate code step
    goes through ``decide`` before it runs, except the single forced-final
    step issued once ``max_steps`` is exhausted. Memory and user variables
    survive across ``run`` calls on the same instance.
    """

    def __init__(self, config: AgentConfig, snapshot: AgentSnapshot | None = None) -> None:
        self.config = config
        if snapshot is not None:
            self.memory = snapshot.memory.copy()
            self.binding = snapshot.binding
        else:
            self.memory = Memory()
            self.binding = config.build_binding()
        self.step = 0
        self.status = AgentStatus.IDLE
        self._llm: Optional[LLMClient] = None

    @property
    def llm(self) -> LLMClient:
        if self._llm is None:
            self._llm = self.config.client()
        return self._llm

    def snapshot(self) -> AgentSnapshot:
        return AgentSnapshot(memory=self.memory.copy(), binding=self.binding)

    def messages(self) -> List[Dict[str, str]]:
        prompt = system_prompt(self.binding.tools, self.binding.agents, self.config.instructions)
        return [{"role": "system", "content": prompt}] + self.memory.to_messages()

    def run(self, task: str, decide: Decide, notify: ProgressFn | None = None) -> AgentOutcome:
        self.binding = self.binding.clear_final_answer()
        self.step = 0
        self.memory.add_task(task)
        self.status = AgentStatus.RUNNING
        logger.info("[%s] New task: %s", self.config.name, task)

        while True:
            if self.binding.final_answer is not None:
                return self._finish(AgentStatus.COMPLETED, answer=self.binding.final_answer.value)
            if self.step >= self.config.max_steps:
                return self._force_final()

            self.step += 1
            if notify:
                notify({"agent": self.config.name, "step": self.step, "max_steps": self.config.max_steps})

            last_step = self.step >= self.config.max_steps
            schema = self.config.response_schema if last_step and self.config.response_schema else CodeStep
            try:
                response = self.llm.complete(
                    self.config.model, self.messages(), schema, **self.config.llm_options
                )
            except LLMResponseError as exc:
                logger.warning("[%s] Step %d: invalid model response: %s", self.config.name, self.step, exc)
                self.memory.add_step(
                    ActionStep(step=self.step, thought="(invalid response)", error=f"Invalid model response: {exc}")
                )
                continue
            except LLMError as exc:
                return self._finish(AgentStatus.FAILED, reason=f"LLM call failed: {exc}")

            if not isinstance(response, CodeStep):
                logger.info("[%s] Custom schema response on final step", self.config.name)
                self.binding = self.binding.with_final_answer(response.model_dump_json())
                continue

            self.status = AgentStatus.AWAITING_VALIDATION
            decision = decide(response.thought, response.code)
            self.status = AgentStatus.RUNNING
            logger.info("[%s] Step %d decision: %s", self.config.name, self.step, decision.kind.value)

            if decision.kind is DecisionKind.REJECT:
                return self._finish(AgentStatus.REJECTED, reason="Execution rejected")
            if decision.kind is DecisionKind.FEEDBACK:
                self.memory.add_step(
                    ActionStep(
                        step=self.step,
                        thought=response.thought,
                        code=response.code,
                        error=f"User feedback: {decision.message or ''}",
                    )
                )
                continue

            code = decision.code if decision.kind is DecisionKind.MODIFY else response.code
            self._execute_step(response.thought, code)

    def _execute_step(self, thought: str, code: str) -> ExecutionResult:
        logger.debug("[%s] Step %d code:\n%s", self.config.name, self.step, code)
        result = execute(code, self.binding)
        if result.ok:
            self.binding = result.binding
            step = ActionStep(step=self.step, thought=thought, code=code, result=result.value, output=result.output)
        else:
            logger.info("[%s] Step %d execution error: %s", self.config.name, self.step, result.error)
            step = ActionStep(step=self.step, thought=thought, code=code, error=result.error, output=result.output)
        self.memory.add_step(step)
        return result

    def _force_final(self) -> AgentOutcome:
        self.status = AgentStatus.FORCING_FINAL
        logger.warning(
            "[%s] Reached max_steps=%d; forcing a final answer, executed without validation",
            self.config.name,
            self.config.max_steps,
        )
        messages = self.messages() + [{"role": "user", "content": FORCE_FINAL_MESSAGE}]
        try:
            response = self.llm.complete(self.config.model, messages, CodeStep, **self.config.llm_options)
        except LLMResponseError as exc:
            return self._finish(
                AgentStatus.FAILED, reason=f"agent did not provide final answer (invalid model response: {exc})"
            )
        except LLMError as exc:
            return self._finish(AgentStatus.FAILED, reason=f"LLM call failed: {exc}")

        self.step += 1
        result = self._execute_step(response.thought, response.code)
        if self.binding.final_answer is not None:
            return self._finish(AgentStatus.COMPLETED, answer=self.binding.final_answer.value)
        reason = "agent did not provide final answer"
        if result.error:
            reason += f" ({result.error})"
        return self._finish(AgentStatus.FAILED, reason=reason)

    def _finish(self, status: AgentStatus, answer: Any = None, reason: str | None = None) -> AgentOutcome:
        self.status = status
        if status is AgentStatus.COMPLETED:
            logger.info("[%s] Completed after %d step(s)", self.config.name, self.step)
        else:
            logger.info("[%s] %s: %s", self.config.name, status.value, reason)
        return AgentOutcome(status=status, answer=answer, reason=reason, snapshot=self.snapshot())
