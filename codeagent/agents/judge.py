from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

from codeagent.agents.prompts import judge_prompt
from codeagent.schemas.llm import ValidationVerdict
from codeagent.schemas.messages import Decision, ValidationRequest
from codeagent.utils.llm_clients import LLMClient, LLMError
from codeagent.utils.settings import DEFAULT_MODEL

logger = logging.getLogger(__name__)

PromptFn = Callable[[str, str, str], str]


class JudgeValidator:
    """Validation handler that asks a second model to review each code step.

    An ``approve`` verdict only goes through when its safety score reaches
    ``auto_approve_threshold``; below it the agent gets the judge's
    reasoning back as feedback. If the judge itself cannot be reached the
    ``fallback`` decision is used (approve unless configured otherwise).
    """

    def __init__(
        self,
        llm_client: LLMClient,
        model: str = DEFAULT_MODEL,
        auto_approve_threshold: int = 80,
        prompt_fn: PromptFn = judge_prompt,
        fallback: Optional[Decision] = None,
        llm_options: Optional[Dict[str, Any]] = None,
    ) -> None:
        if not 0 <= auto_approve_threshold <= 100:
            raise ValueError(f"auto_approve_threshold must be within 0..100, got {auto_approve_threshold}")
        self.llm_client = llm_client
        self.model = model
        self.auto_approve_threshold = auto_approve_threshold
        self.prompt_fn = prompt_fn
        self.fallback = fallback or Decision.approve()
        self.llm_options = dict(llm_options or {"temperature": 0.0})

    def __call__(self, request: ValidationRequest) -> Decision:
        messages = [{"role": "user", "content": self.prompt_fn(request.agent_name, request.thought, request.code)}]
        try:
            verdict = self.llm_client.complete(self.model, messages, ValidationVerdict, **self.llm_options)
        except LLMError as exc:
            logger.error("Judge call failed for %s, falling back to %s: %s", request.agent_name, self.fallback.kind.value, exc)
            return self.fallback

        decision = self.make_decision(verdict)
        logger.info(
            "Judge verdict for %s: %s (score %d) -> %s",
            request.agent_name,
            verdict.decision,
            verdict.safety_score,
            decision.kind.value,
        )
        return decision

    def make_decision(self, verdict: ValidationVerdict) -> Decision:
        if verdict.decision == "approve":
            if verdict.safety_score >= self.auto_approve_threshold:
                return Decision.approve()
            return Decision.feedback(f"Safety score too low ({verdict.safety_score}): {verdict.reasoning}")
        if verdict.decision == "reject":
            return Decision.reject()
        if verdict.decision == "modify":
            if verdict.modified_code and verdict.modified_code.strip():
                return Decision.modify(verdict.modified_code)
            return Decision.feedback(verdict.reasoning)
        return Decision.feedback(verdict.feedback_message or verdict.reasoning)
