from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field

DEFAULT_MODEL = "Qwen/Qwen3-Coder-30B-A3B-Instruct"
DEFAULT_BASE_URL = "https://router.huggingface.co/v1"


class LLMConfig(BaseModel):
    provider: str = "huggingface"
    model: str = DEFAULT_MODEL
    base_url: str = DEFAULT_BASE_URL
    api_key_env: str = "HF_TOKEN"
    temperature: float = 0.7
    max_tokens: int = 4000
    timeout: float = 120.0


class AgentSettings(BaseModel):
    name: str = "agent"
    instructions: Optional[str] = None
    max_steps: int = Field(default=10, ge=1)


class WorkflowConfig(BaseModel):
    task_timeout: Optional[float] = None
    sub_agent_timeout: float = 120.0
    max_workers: Optional[int] = Field(default=None, ge=1)


class ValidationConfig(BaseModel):
    mode: Literal["auto", "interactive", "ai"] = "auto"
    auto_approve_threshold: int = Field(default=80, ge=0, le=100)
    model: Optional[str] = None


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: Optional[str] = None


class AppConfig(BaseModel):
    llm: LLMConfig = Field(default_factory=LLMConfig)
    agent: AgentSettings = Field(default_factory=AgentSettings)
    workflow: WorkflowConfig = Field(default_factory=WorkflowConfig)
    validation: ValidationConfig = Field(default_factory=ValidationConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config(env: str = "base", config_dir: str | Path = "configs") -> AppConfig:
    config_dir = Path(config_dir)
    base = _read_yaml(config_dir / "base.yaml")
    if env != "base":
        override_path = config_dir / f"{env}.yaml"
        if override_path.exists():
            base = _merge_dicts(base, _read_yaml(override_path))
    return AppConfig(
        llm=LLMConfig(**base.get("llm", {})),
        agent=AgentSettings(**base.get("agent", {})),
        workflow=WorkflowConfig(**base.get("workflow", {})),
        validation=ValidationConfig(**base.get("validation", {})),
        logging=LoggingConfig(**base.get("logging", {"level": "INFO"})),
    )


def _read_yaml(path: Path) -> Dict[str, Any]:
    return yaml.safe_load(path.read_text(encoding="utf-8")) or {}


def _merge_dicts(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            merged[key] = _merge_dicts(base[key], value)
        else:
            merged[key] = value
    return merged
