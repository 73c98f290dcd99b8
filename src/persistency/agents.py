"""Agent CLI discovery, optional install/update, and credential checks."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from collections.abc import Mapping
from pathlib import Path

from persistency.errors import AgentMissingError, AuthMissingError, InvalidArgumentsError

logger = logging.getLogger(__name__)

SUPPORTED_AGENTS = ("codex", "claude", "gemini")

BINARY_CANDIDATES: dict[str, list[str]] = {
    "codex": ["codex", "codex-cli", "apl-codex"],
    "claude": ["claude", "claude-cli"],
    "gemini": ["gemini", "gemini-cli", "google-genai"],
}

# Package names per install method.
INSTALL_TARGETS: dict[str, dict[str, str]] = {
    "codex": {
        "npm": "@vez/codex-cli",
        "pnpm": "@vez/codex-cli",
        "pipx": "codex-cli",
        "brew": "codex-cli",
    },
    "claude": {
        "npm": "@anthropic-ai/claude-cli",
        "pnpm": "@anthropic-ai/claude-cli",
        "pipx": "anthropic-cli",
        "brew": "anthropic-cli",
    },
    "gemini": {
        "npm": "@google/generative-ai-cli",
        "pnpm": "@google/generative-ai-cli",
        "pipx": "google-generativeai-cli",
        "brew": "google-generativeai",
    },
}

AUTH_HINTS: dict[str, list[str]] = {
    "codex": ["CODEX_API_KEY", "OPENAI_API_KEY"],
    "claude": ["ANTHROPIC_API_KEY"],
    "gemini": ["GOOGLE_API_KEY", "GEMINI_API_KEY"],
}


def validate_agent(agent: str) -> str:
    if agent not in SUPPORTED_AGENTS:
        raise InvalidArgumentsError(
            f"Unsupported agent '{agent}'. Use one of: {', '.join(SUPPORTED_AGENTS)}"
        )
    return agent


def resolve_command(binary: str) -> str | None:
    """Absolute path for ``binary``: an existing path as-is, else a PATH lookup."""
    if os.sep in binary:
        return binary if Path(binary).expanduser().exists() else None
    return shutil.which(binary)


def find_agent_binary(agent: str, hint: str | None = None) -> str | None:
    """Try the explicit hint first, then the known binary names for ``agent``."""
    if hint:
        resolved = resolve_command(hint)
        if resolved:
            return resolved
    for candidate in BINARY_CANDIDATES[agent]:
        resolved = resolve_command(candidate)
        if resolved:
            return resolved
    return None


def _package_command(agent: str, method: str, upgrade: bool) -> list[str]:
    target = INSTALL_TARGETS[agent][method]
    if method in ("npm", "pnpm"):
        return [method, "update" if upgrade else "install", "-g", target]
    if method == "pipx":
        return ["pipx", "upgrade" if upgrade else "install", target]
    if method == "brew":
        return ["brew", "upgrade" if upgrade else "install", target]
    raise InvalidArgumentsError(f"Unsupported install method: {method}")


def _run_package_manager(command: list[str]) -> None:
    logger.info("Running %s", " ".join(command))
    subprocess.run(command, check=True)


def ensure_agent_cli(agent: str, install_method: str | None = None, hint: str | None = None) -> str:
    """Return the agent command, installing it when an install method is given.

    An already present binary is updated best effort; a missing one without
    an install method raises ``AgentMissingError``.
    """
    validate_agent(agent)
    method = install_method if install_method and install_method != "skip" else None

    found = find_agent_binary(agent, hint)
    if found:
        if method:
            try:
                _run_package_manager(_package_command(agent, method, upgrade=True))
            except (OSError, subprocess.CalledProcessError) as e:
                logger.warning("Unable to update %s CLI using %s: %s", agent, method, e)
        return found

    if not method:
        raise AgentMissingError(
            f"Missing {agent} CLI. Provide --install-method to install automatically "
            "or --ai-cmd to specify path."
        )

    try:
        _run_package_manager(_package_command(agent, method, upgrade=False))
    except (OSError, subprocess.CalledProcessError) as e:
        raise AgentMissingError(f"Failed to install {agent} CLI with {method}: {e}") from e

    found = find_agent_binary(agent, hint)
    if not found:
        raise AgentMissingError(f"Installed {agent} CLI but command not found on PATH.")
    return found


def ensure_agent_auth(
    agent: str,
    env: Mapping[str, str] | None = None,
    home: Path | None = None,
) -> None:
    """Require an API key variable or a credentials file for ``agent``."""
    env = os.environ if env is None else env
    hints = AUTH_HINTS[agent]
    if any(env.get(name) for name in hints):
        return

    home = home or Path.home()
    for candidate in (home / ".config" / agent / "credentials", home / f".{agent}" / "credentials"):
        if candidate.exists():
            logger.debug("Using %s credentials from %s", agent, candidate)
            return

    pretty = ", ".join(f"`{name}`" for name in hints)
    raise AuthMissingError(
        f"Missing authentication for {agent} CLI. Ensure one of {pretty} is set "
        "or configure credentials."
    )
