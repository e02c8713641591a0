from __future__ import annotations

from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional

from codeagent.tools.base import Tool


class ToolTable:
    """Read-only ``tools.<name>`` / ``agents.<name>`` namespace."""

    __slots__ = ("_entries",)

    def __init__(self, tools: Iterable[Tool] = ()) -> None:
        entries: Dict[str, Tool] = {}
        for item in tools:
            if item.name in entries:
                raise ValueError(f"duplicate tool name {item.name!r}")
            entries[item.name] = item
        object.__setattr__(self, "_entries", MappingProxyType(entries))

    def __getattr__(self, name: str) -> Tool:
        if name.startswith("__"):
            raise AttributeError(name)
        try:
            return self._entries[name]
        except KeyError:
            available = ", ".join(sorted(self._entries)) or "none"
            raise AttributeError(f"no tool named {name!r} (available: {available})") from None

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError("tool tables are read-only")

    def __delattr__(self, name: str) -> None:
        raise AttributeError("tool tables are read-only")

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __iter__(self) -> Iterator[Tool]:
        return iter(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"ToolTable({sorted(self._entries)})"

    def names(self) -> List[str]:
        return list(self._entries)

    def get(self, name: str) -> Optional[Tool]:
        return self._entries.get(name)

    def documentation(self) -> str:
        return "\n\n".join(item.documentation() for item in self)


@dataclass(frozen=True)
class FinalAnswer:
    """Tagged payload marking a task as answered."""

    value: Any


@dataclass(frozen=True)
class Binding:
    """Persisted execution environment of one agent.

    ``tools`` and ``agents`` are fixed when the binding is created; only
    ``variables`` and ``final_answer`` change from step to step, and each
    change produces a new ``Binding``.
    """

    tools: ToolTable = field(default_factory=ToolTable)
    agents: ToolTable = field(default_factory=ToolTable)
    variables: Mapping[str, Any] = field(default_factory=dict)
    final_answer: Optional[FinalAnswer] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "variables", MappingProxyType(dict(self.variables)))

    @property
    def has_final_answer(self) -> bool:
        return self.final_answer is not None

    def get(self, name: str, default: Any = None) -> Any:
        return self.variables.get(name, default)

    def with_variables(self, variables: Mapping[str, Any]) -> "Binding":
        return replace(self, variables=variables)

    def with_final_answer(self, answer: Any) -> "Binding":
        return replace(self, final_answer=FinalAnswer(answer))

    def clear_final_answer(self) -> "Binding":
        return replace(self, final_answer=None)
