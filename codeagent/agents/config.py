from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence, Type

from pydantic import BaseModel

from codeagent.memory.binding import Binding, ToolTable
from codeagent.tools.base import Tool, validate_tool_name
from codeagent.tools.final_answer import FINAL_ANSWER_TOOL, FinalAnswerTool
from codeagent.tools.managed_agent import ManagedAgentTool
from codeagent.utils.llm_clients import LLMClient, build_llm_client
from codeagent.utils.settings import DEFAULT_MODEL, AppConfig, LLMConfig

DEFAULT_INSTRUCTIONS = "You are a helpful assistant that solves tasks by writing Python code."
DEFAULT_LLM_OPTIONS: Dict[str, Any] = {"temperature": 0.7, "max_tokens": 4000}


def _default_llm_options() -> Dict[str, Any]:
    return dict(DEFAULT_LLM_OPTIONS)


@dataclass(frozen=True)
class AgentConfig:
    """Immutable description of one agent, top-level or managed."""

    name: str = "agent"
    instructions: str = DEFAULT_INSTRUCTIONS
    description: Optional[str] = None
    tools: Sequence[Tool] = ()
    managed_agents: Sequence["AgentConfig"] = ()
    model: str = DEFAULT_MODEL
    max_steps: int = 10
    llm_options: Dict[str, Any] = field(default_factory=_default_llm_options)
    response_schema: Optional[Type[BaseModel]] = None
    llm_client: Optional[LLMClient] = field(default=None, compare=False)
    listener: Any = field(default=None, compare=False, repr=False)

    def __post_init__(self) -> None:
        validate_tool_name(self.name)
        if self.max_steps < 1:
            raise ValueError(f"max_steps must be >= 1, got {self.max_steps}")
        object.__setattr__(self, "tools", tuple(self.tools))
        object.__setattr__(self, "managed_agents", tuple(self.managed_agents))
        object.__setattr__(self, "llm_options", dict(self.llm_options))
        _ensure_unique([t.name for t in self.tools], "tool")
        _ensure_unique([a.name for a in self.managed_agents], "managed agent")

    @property
    def agent_description(self) -> str:
        return self.description or self.instructions

    def with_listener(self, listener: Any) -> "AgentConfig":
        return replace(
            self,
            listener=listener,
            managed_agents=tuple(agent.with_listener(listener) for agent in self.managed_agents),
        )

    def all_tools(self) -> List[Tool]:
        tools = list(self.tools)
        if not any(t.name == FINAL_ANSWER_TOOL for t in tools):
            tools.append(FinalAnswerTool())
        return tools

    def agent_tools(self) -> List[ManagedAgentTool]:
        return [ManagedAgentTool(agent) for agent in self.managed_agents]

    def build_binding(self) -> Binding:
        return Binding(tools=ToolTable(self.all_tools()), agents=ToolTable(self.agent_tools()))

    def client(self) -> LLMClient:
        return self.llm_client or build_llm_client(LLMConfig(model=self.model))

    @classmethod
    def from_settings(cls, settings: AppConfig, **overrides: Any) -> "AgentConfig":
        values: Dict[str, Any] = {
            "name": settings.agent.name,
            "model": settings.llm.model,
            "max_steps": settings.agent.max_steps,
            "llm_options": {
                "temperature": settings.llm.temperature,
                "max_tokens": settings.llm.max_tokens,
            },
        }
        if settings.agent.instructions:
            values["instructions"] = settings.agent.instructions
        values.update(overrides)
        return cls(**values)


def _ensure_unique(names: List[str], kind: str) -> None:
    seen = set()
    for name in names:
        if name in seen:
            raise ValueError(f"duplicate {kind} name {name!r}")
        seen.add(name)
