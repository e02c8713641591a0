from __future__ import annotations

from typing import Any

from codeagent.tools.base import Tool

FINAL_ANSWER_TOOL = "final_answer"


class FinalAnswerSignal(BaseException):
    """Non-local exit raised by ``final_answer``.

    Derives from ``BaseException`` so that ``except Exception`` blocks in
    generated code cannot swallow it.
    """

    def __init__(self, answer: Any) -> None:
        super().__init__("final answer")
        self.answer = answer


class FinalAnswerTool(Tool):
    """Reserved tool that terminates a task with an answer."""

    def __init__(self) -> None:
        super().__init__(
            name=FINAL_ANSWER_TOOL,
            description=(
                "Provides the final answer to the task. "
                "Call this when you have the complete answer."
            ),
            inputs={"answer": {"type": "any", "description": "The final answer to return"}},
            output_type="any",
            safety="safe",
        )

    def run(self, answer: Any) -> Any:
        raise FinalAnswerSignal(answer)
