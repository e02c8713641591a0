from __future__ import annotations

import json
import logging
import os
import re
import threading
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Type, TypeVar

import openai
from pydantic import BaseModel, ValidationError

from codeagent.utils.settings import DEFAULT_BASE_URL, LLMConfig

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)
ChatMessage = Dict[str, str]

FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")


class LLMError(Exception):
    """Base class for language-model failures."""


class LLMTransportError(LLMError):
    """The model could not be reached (network, auth, HTTP status, missing key)."""


class LLMResponseError(LLMError):
    """The model answered, but not with a decodable object of the requested schema."""


class LLMClient(ABC):
    """Lightweight interface so agents can swap between real and scripted models."""

    @abstractmethod
    def complete(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        response_model: Type[T],
        **options: Any,
    ) -> T:
        """Return the model's reply decoded as ``response_model``."""


def parse_structured(text: str, response_model: Type[T]) -> T:
    """Decode ``text`` as ``response_model``.

    Accepts raw JSON, the first fenced ```json block, or the outermost
    ``{...}`` span of a chatty reply.
    """
    if not text or not text.strip():
        raise LLMResponseError("empty response from model")
    candidates = [text.strip()]
    fenced = FENCE_RE.search(text)
    if fenced:
        candidates.append(fenced.group(1))
    start, end = text.find("{"), text.rfind("}")
    if 0 <= start < end:
        candidates.append(text[start : end + 1])

    last_error: Optional[ValidationError] = None
    for candidate in candidates:
        try:
            return response_model.model_validate_json(candidate)
        except ValidationError as exc:
            last_error = exc
    raise LLMResponseError(f"response does not match {response_model.__name__}: {last_error}")


def schema_instruction(response_model: Type[BaseModel]) -> str:
    schema = json.dumps(response_model.model_json_schema(), indent=2)
    return f"Respond only with a JSON object matching this JSON schema:\n{schema}"


def _with_schema(messages: Sequence[ChatMessage], response_model: Type[BaseModel]) -> List[ChatMessage]:
    payload = [dict(m) for m in messages]
    instruction = schema_instruction(response_model)
    if payload and payload[0].get("role") == "system":
        payload[0]["content"] = f"{payload[0]['content']}\n\n{instruction}"
    else:
        payload.insert(0, {"role": "system", "content": instruction})
    return payload


class OpenAIChatClient(LLMClient):
    """Structured completions against any OpenAI-compatible chat endpoint."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 120.0,
        client: Any = None,
    ) -> None:
        self.api_key = api_key or os.environ.get("HF_TOKEN") or os.environ.get("OPENAI_API_KEY")
        self.base_url = base_url
        self.timeout = timeout
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            if not self.api_key:
                raise LLMTransportError("API key required (HF_TOKEN, OPENAI_API_KEY or api_key)")
            self._client = openai.OpenAI(api_key=self.api_key, base_url=self.base_url, timeout=self.timeout)
        return self._client

    def complete(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        response_model: Type[T],
        **options: Any,
    ) -> T:
        client = self._get_client()
        logger.debug("Calling %s at %s for %s", model, self.base_url, response_model.__name__)
        try:
            response = client.chat.completions.create(
                model=model,
                messages=_with_schema(messages, response_model),
                response_format={"type": "json_object"},
                **options,
            )
        except openai.OpenAIError as exc:
            logger.error("LLM call to %s failed: %s", model, exc)
            raise LLMTransportError(str(exc)) from exc

        if not response.choices:
            raise LLMResponseError("model returned no choices")
        content = response.choices[0].message.content
        return parse_structured(content or "", response_model)


@dataclass
class ScriptedCall:
    model: str
    messages: List[ChatMessage]
    response_model: Type[BaseModel]
    options: Dict[str, Any] = field(default_factory=dict)


class ScriptedLLMClient(LLMClient):
    """Replays canned responses in order; used for tests and offline runs.

    Each scripted item may be a pydantic instance, a dict or JSON string to
    validate against the requested schema, an exception to raise, or a
    callable ``(messages, response_model) -> item`` evaluated at call time.
    """

    def __init__(self, responses: Iterable[Any] = ()) -> None:
        self._responses = deque(responses)
        self._lock = threading.Lock()
        self.calls: List[ScriptedCall] = []

    def add(self, *responses: Any) -> None:
        with self._lock:
            self._responses.extend(responses)

    @property
    def remaining(self) -> int:
        with self._lock:
            return len(self._responses)

    def complete(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        response_model: Type[T],
        **options: Any,
    ) -> T:
        with self._lock:
            self.calls.append(ScriptedCall(model, [dict(m) for m in messages], response_model, dict(options)))
            if not self._responses:
                raise LLMTransportError("scripted client has no responses left")
            item = self._responses.popleft()

        if callable(item) and not isinstance(item, (type, BaseModel)):
            item = item(messages, response_model)
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, BaseModel):
            return item
        if isinstance(item, dict):
            try:
                return response_model.model_validate(item)
            except ValidationError as exc:
                raise LLMResponseError(str(exc)) from exc
        if isinstance(item, str):
            return parse_structured(item, response_model)
        raise TypeError(f"unsupported scripted response: {item!r}")


def build_llm_client(config: LLMConfig) -> LLMClient:
    return OpenAIChatClient(
        api_key=os.environ.get(config.api_key_env),
        base_url=config.base_url,
        timeout=config.timeout,
    )
