"""Interactive prompts that fill in whatever the command line left unset."""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING

from persistency.agents import SUPPORTED_AGENTS, find_agent_binary
from persistency.errors import InvalidArgumentsError

if TYPE_CHECKING:
    from persistency.cli import InitOptions

logger = logging.getLogger(__name__)

InputFn = Callable[[str], str]


def ask(message: str, default: str | None = None, input_fn: InputFn = input) -> str:
    """Ask a free-text question; an empty answer returns ``default`` (or "")."""
    suffix = f" [{default}]" if default else ""
    answer = input_fn(f"{message}{suffix} ").strip()
    return answer or (default or "")


def choose(message: str, choices: tuple[str, ...], default: str | None = None, input_fn: InputFn = input) -> str:
    while True:
        answer = ask(f"{message} ({'/'.join(choices)})", default, input_fn)
        if answer in choices:
            return answer
        print(f"Please answer one of: {', '.join(choices)}")


def confirm(message: str, default: bool = False, input_fn: InputFn = input) -> bool:
    hint = "Y/n" if default else "y/N"
    answer = input_fn(f"{message} [{hint}] ").strip().lower()
    if not answer:
        return default
    return answer in ("y", "yes")


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def prompt_for_missing_options(options: InitOptions, input_fn: InputFn = input) -> InitOptions:
    """Complete ``options`` in place and return it.

    In non-interactive mode nothing is asked; a missing project name, project
    path or agent raises ``InvalidArgumentsError`` instead.
    """
    if options.non_interactive:
        missing = []
        if not options.project_name:
            missing.append("--project-name")
        if not options.project_path:
            missing.append("--project-path")
        if not options.agent:
            missing.append("--agent")
        if missing:
            raise InvalidArgumentsError(
                f"Missing required {', '.join(missing)} in non-interactive mode."
            )
        return options

    cwd = Path.cwd()
    if not options.project_name:
        options.project_name = ask("Project name:", cwd.name, input_fn)
    if not options.project_path:
        options.project_path = ask("Project path:", str(cwd), input_fn)
    if not options.prod_branch:
        options.prod_branch = ask("Production (truth) branch (blank for current):", None, input_fn) or None
    if not options.agent:
        options.agent = choose("AI agent CLI:", SUPPORTED_AGENTS, SUPPORTED_AGENTS[0], input_fn)

    if not options.ai_cmd and options.agent in SUPPORTED_AGENTS:
        detected = find_agent_binary(options.agent)
        if detected:
            logger.info("Detected %s CLI at %s", options.agent, detected)
            options.ai_cmd = detected
        else:
            options.ai_cmd = ask(
                "AI CLI command override (full path or alias, blank if on PATH):", None, input_fn
            ) or None

    if not options.default_model:
        options.default_model = ask("Default AI model identifier (optional):", None, input_fn) or None
    if not options.assets:
        options.assets = _split_csv(
            ask("Additional assets (comma separated paths, optional):", None, input_fn)
        )
    if not options.notes:
        note = ask(
            "Supplemental notes or documentation sources (CSV exports, wiki URLs, etc.):",
            None,
            input_fn,
        )
        if note:
            options.notes = [note]
    return options


def prompt_for_layer_dir(default_dir: str, input_fn: InputFn = input) -> str:
    """Ask where an existing layer lives when nothing on disk points to one."""
    return ask("Where is the existing persistency layer?", default_dir, input_fn)
