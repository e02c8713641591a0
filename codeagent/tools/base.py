from __future__ import annotations

import keyword
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Mapping, Optional

SAFETY_LEVELS = ("safe", "unsafe")


def validate_tool_name(name: str) -> str:
    if not isinstance(name, str) or not name.isidentifier() or keyword.iskeyword(name):
        raise ValueError(f"tool name must be a Python identifier, got {name!r}")
    return name


class Tool(ABC):
    """Callable capability exposed to generated code as ``tools.<name>``."""

    name: str

    def __init__(
        self,
        name: str,
        description: str,
        inputs: Mapping[str, Mapping[str, str]] | None = None,
        output_type: str = "any",
        safety: str = "unsafe",
    ) -> None:
        if safety not in SAFETY_LEVELS:
            raise ValueError(f"safety must be one of {SAFETY_LEVELS}, got {safety!r}")
        self.name = validate_tool_name(name)
        self.description = description
        self.inputs: Dict[str, Dict[str, str]] = {k: dict(v) for k, v in (inputs or {}).items()}
        self.output_type = output_type
        self.safety = safety

    @abstractmethod
    def run(self, *args: Any, **kwargs: Any) -> Any:
        """Execute tool logic and return its output."""

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        return self.run(*args, **kwargs)

    def documentation(self) -> str:
        """Markdown block describing the tool to the language model."""
        badge = "[SAFE]" if self.safety == "safe" else "[UNSAFE]"
        if self.inputs:
            inputs_doc = "\n".join(
                f"  - {arg} ({spec.get('type', 'any')}): {spec.get('description', '')}"
                for arg, spec in self.inputs.items()
            )
        else:
            inputs_doc = "  (none)"
        return (
            f"### {self.name} {badge}\n"
            f"{self.description}\n\n"
            f"**Inputs:**\n{inputs_doc}\n\n"
            f"**Output:** {self.output_type}"
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


class FunctionTool(Tool):
    """Wraps a plain callable of any arity."""

    def __init__(
        self,
        name: str,
        function: Callable[..., Any],
        description: str = "",
        inputs: Mapping[str, Mapping[str, str]] | None = None,
        output_type: str = "any",
        safety: str = "unsafe",
    ) -> None:
        if not callable(function):
            raise ValueError(f"expected a callable for tool {name!r}, got {function!r}")
        super().__init__(
            name=name,
            description=description or (function.__doc__ or "").strip(),
            inputs=inputs,
            output_type=output_type,
            safety=safety,
        )
        self.function = function

    def run(self, *args: Any, **kwargs: Any) -> Any:
        return self.function(*args, **kwargs)


def tool(
    name: Optional[str] = None,
    description: str = "",
    inputs: Mapping[str, Mapping[str, str]] | None = None,
    output_type: str = "any",
    safety: str = "unsafe",
) -> Callable[[Callable[..., Any]], FunctionTool]:
    """Decorator turning a function into a ``FunctionTool``."""

    def wrap(function: Callable[..., Any]) -> FunctionTool:
        return FunctionTool(
            name=name or function.__name__,
            function=function,
            description=description,
            inputs=inputs,
            output_type=output_type,
            safety=safety,
        )

    return wrap
