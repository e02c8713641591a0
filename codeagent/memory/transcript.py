from __future__ import annotations

import json
from functools import singledispatch
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from codeagent.memory.binding import FinalAnswer
from codeagent.schemas.messages import ActionStep, TaskStep

Step = Union[TaskStep, ActionStep]
ChatMessage = Dict[str, str]


@singledispatch
def format_for_llm(value: Any) -> str:
    """Render an observed value for the language model."""
    return repr(value)


@format_for_llm.register
def _(value: str) -> str:
    return value


@format_for_llm.register(int)
@format_for_llm.register(float)
def _(value) -> str:
    return str(value)


@format_for_llm.register(type(None))
def _(value) -> str:
    return "None"


@format_for_llm.register
def _(value: FinalAnswer) -> str:
    return format_for_llm(value.value)


class Memory:
    """Append-only log of task markers and action steps for one agent."""

    def __init__(self, steps: Iterable[Step] | None = None) -> None:
        self._steps: List[Step] = list(steps or [])

    def add_task(self, task: str) -> TaskStep:
        marker = TaskStep(task=task)
        self._steps.append(marker)
        return marker

    def add_step(self, step: ActionStep) -> ActionStep:
        self._steps.append(step)
        return step

    @property
    def steps(self) -> Tuple[Step, ...]:
        return tuple(self._steps)

    def action_steps(self) -> List[ActionStep]:
        return [s for s in self._steps if isinstance(s, ActionStep)]

    def count(self) -> int:
        return len(self._steps)

    def __len__(self) -> int:
        return len(self._steps)

    def last_step(self) -> Optional[Step]:
        return self._steps[-1] if self._steps else None

    def copy(self) -> "Memory":
        return Memory(self._steps)

    def to_messages(self) -> List[ChatMessage]:
        messages: List[ChatMessage] = []
        for step in self._steps:
            if isinstance(step, TaskStep):
                messages.append({"role": "user", "content": step.task})
            else:
                messages.append({"role": "assistant", "content": _assistant_content(step)})
                messages.append({"role": "user", "content": _observation(step)})
        return messages


def _assistant_content(step: ActionStep) -> str:
    if step.code:
        return json.dumps({"thought": step.thought, "code": step.code})
    return step.thought


def _observation(step: ActionStep) -> str:
    if step.is_error:
        return (
            "**Observation (Error):**\n"
            f"```\n{step.error}\n```\n\n"
            "Please fix the error and try again."
        )
    text = f"**Observation:**\nResult: {format_for_llm(step.result)}"
    if step.output:
        text += f"\n\n**Output:**\n```\n{step.output.rstrip()}\n```"
    return text
