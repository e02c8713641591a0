from __future__ import annotations

import logging
from typing import Callable, List, Optional

from codeagent.schemas.messages import Decision, ValidationRequest

logger = logging.getLogger(__name__)

# Returning None means the handler will deliver its decision later,
# through Orchestrator.submit_decision or request.respond.
ValidationHandler = Callable[[ValidationRequest], Optional[Decision]]


def auto_approve(request: ValidationRequest) -> Decision:
    return Decision.approve()


class InteractiveValidator:
    """Human-in-the-loop approval on a terminal."""

    PROMPT = "[a]pprove  [m]odify  [f]eedback  [r]eject > "

    def __init__(
        self,
        input_fn: Callable[[str], str] = input,
        output_fn: Callable[[str], None] = print,
    ) -> None:
        self.input_fn = input_fn
        self.output_fn = output_fn

    def __call__(self, request: ValidationRequest) -> Decision:
        self.output_fn(self._render(request))
        try:
            return self._ask()
        except EOFError:
            logger.info("Input closed during validation; rejecting")
            return Decision.reject()

    def _ask(self) -> Decision:
        while True:
            choice = self.input_fn(self.PROMPT).strip().lower()
            if choice in ("a", "approve"):
                return Decision.approve()
            if choice in ("r", "reject"):
                return Decision.reject()
            if choice in ("f", "feedback"):
                return Decision.feedback(self.input_fn("Feedback: ").strip())
            if choice in ("m", "modify"):
                code = self._read_code()
                if code.strip():
                    return Decision.modify(code)
                self.output_fn("No code entered.")
                continue
            self.output_fn(f"Unknown choice: {choice!r}")

    def _read_code(self) -> str:
        self.output_fn("Enter the replacement code, finish with an empty line:")
        lines: List[str] = []
        while True:
            line = self.input_fn("")
            if not line.strip():
                break
            lines.append(line)
        return "\n".join(lines)

    @staticmethod
    def _render(request: ValidationRequest) -> str:
        bar = "=" * 60
        return (
            f"{bar}\n"
            f"Agent: {request.agent_name}\n\n"
            f"Thought:\n{request.thought}\n\n"
            f"Code:\n{request.code}\n"
            f"{bar}"
        )
