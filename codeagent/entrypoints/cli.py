from __future__ import annotations

import argparse
import sys
from typing import List, Optional

from codeagent.agents.config import AgentConfig
from codeagent.agents.judge import JudgeValidator
from codeagent.schemas.messages import TaskResult
from codeagent.telemetry.logging import setup_logging
from codeagent.utils.llm_clients import build_llm_client
from codeagent.utils.settings import AppConfig, load_config
from codeagent.workflows.orchestrator import Orchestrator
from codeagent.workflows.supervisor import Supervisor
from codeagent.workflows.validation import InteractiveValidator, ValidationHandler, auto_approve


def build_validation_handler(config: AppConfig, mode: str) -> ValidationHandler:
    if mode == "interactive":
        return InteractiveValidator()
    if mode == "ai":
        return JudgeValidator(
            llm_client=build_llm_client(config.llm),
            model=config.validation.model or config.llm.model,
            auto_approve_threshold=config.validation.auto_approve_threshold,
        )
    return auto_approve


def build_orchestrator(config: AppConfig, mode: str) -> Orchestrator:
    agent = AgentConfig.from_settings(config, llm_client=build_llm_client(config.llm))
    return Orchestrator.start(
        agent,
        validation_handler=build_validation_handler(config, mode),
        supervisor=Supervisor(max_workers=config.workflow.max_workers),
        default_timeout=config.workflow.task_timeout,
        sub_agent_timeout=config.workflow.sub_agent_timeout,
    )


def print_result(result: TaskResult) -> None:
    if result.ok:
        print(f"\n[answer]\n{result.answer}")
    else:
        print(f"\n[{result.status.value}] {result.reason}", file=sys.stderr)


def repl(orchestrator: Orchestrator) -> int:
    print("Enter a task per line; an empty line or EOF exits.")
    exit_code = 0
    while True:
        try:
            task = input("task> ").strip()
        except EOFError:
            break
        if not task:
            break
        result = orchestrator.run_task(task)
        print_result(result)
        exit_code = 0 if result.ok else 1
    return exit_code


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run a code-writing agent on a task.")
    parser.add_argument("task", nargs="?", help="Task for the agent. Omit to start an interactive session.")
    parser.add_argument("--env", default="base", help="Config environment (base, dev, prod, ...).")
    parser.add_argument("--config-dir", default="configs", help="Directory holding the YAML configs.")
    parser.add_argument(
        "--validation",
        choices=("auto", "interactive", "ai"),
        default=None,
        help="How code steps are approved (defaults to the configured mode).",
    )
    parser.add_argument("--max-steps", type=int, default=None, help="Override the agent's step budget.")
    args = parser.parse_args(argv)

    config = load_config(args.env, config_dir=args.config_dir)
    if args.max_steps is not None:
        config.agent.max_steps = args.max_steps
    setup_logging(config.logging.level, config.logging.file)

    mode = args.validation or config.validation.mode
    with build_orchestrator(config, mode) as orchestrator:
        if args.task is None:
            return repl(orchestrator)
        result = orchestrator.run_task(args.task)
        print_result(result)
        return 0 if result.ok else 1


if __name__ == "__main__":
    sys.exit(main())
