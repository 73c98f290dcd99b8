"""Configuration loading from environment variables and persistency.toml."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib
from pathlib import Path

from persistency.errors import InvalidArgumentsError

_CONFIG_FILENAME = "persistency.toml"
_USER_CONFIG_DIR = Path.home() / ".config" / "persistency"

LAYER_MODES = ("seed", "strict")
INSTALL_METHODS = ("pnpm", "npm", "brew", "pipx", "skip")


@dataclass
class LayerConfig:
    """Where the layer lives and how a missing layer is treated."""

    default_dir: str = "ai"
    # "seed" creates a missing layer, "strict" refuses to start from nothing.
    mode: str = "seed"

    @property
    def require_existing(self) -> bool:
        return self.mode == "strict"


@dataclass
class AgentConfig:
    """Agent CLI defaults, used when the command line leaves them unset."""

    name: str | None = None
    command: str | None = None
    install_method: str = "skip"
    default_model: str | None = None
    check_auth: bool = True


@dataclass
class FreshnessConfig:
    """Staleness thresholds for the freshness check."""

    slo_days: int = 7
    slo_commits: int = 200


@dataclass
class PersistencyConfig:
    """Top-level configuration."""

    layer: LayerConfig = field(default_factory=LayerConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    freshness: FreshnessConfig = field(default_factory=FreshnessConfig)
    log_level: str = "INFO"


def _as_bool(value: str | bool) -> bool:
    if isinstance(value, bool):
        return value
    return value.strip().lower() in ("1", "true", "yes", "on")


def _read_toml(path: Path) -> dict:
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise InvalidArgumentsError(f"Invalid config file {path}: {e}") from e


def _setting(env_key: str, section: dict, key: str, default):
    """Environment value if set, else the TOML value, else ``default``."""
    value = os.getenv(env_key)
    return value if value is not None else section.get(key, default)


def _as_int(value, env_key: str) -> int:
    if isinstance(value, bool):
        raise InvalidArgumentsError(f"{env_key} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise InvalidArgumentsError(f"{env_key} must be an integer, got {value!r}") from e


def _as_text(value, env_key: str) -> str | None:
    if value is not None and not isinstance(value, str):
        raise InvalidArgumentsError(f"{env_key} must be a string, got {value!r}")
    return value


def load_config(config_path: Path | None = None) -> PersistencyConfig:
    """Load configuration from environment variables and optional persistency.toml.

    Priority: environment variables > persistency.toml > defaults. Unreadable
    TOML and wrong-typed values raise InvalidArgumentsError naming the key.
    """
    file_data: dict = {}
    if config_path and config_path.exists():
        file_data = _read_toml(config_path)
    else:
        for candidate in [Path.cwd() / _CONFIG_FILENAME, _USER_CONFIG_DIR / _CONFIG_FILENAME]:
            if candidate.exists():
                file_data = _read_toml(candidate)
                break

    layer_data = file_data.get("layer", {})
    agent_data = file_data.get("agent", {})
    freshness_data = file_data.get("freshness", {})
    for name, section in [("layer", layer_data), ("agent", agent_data), ("freshness", freshness_data)]:
        if not isinstance(section, dict):
            raise InvalidArgumentsError(f"[{name}] in persistency.toml must be a table")

    mode = _as_text(_setting("PERSISTENCY_MODE", layer_data, "mode", "seed"), "PERSISTENCY_MODE")
    install_method = _as_text(
        _setting("PERSISTENCY_INSTALL_METHOD", agent_data, "install_method", "skip"),
        "PERSISTENCY_INSTALL_METHOD",
    )
    check_auth = _setting("PERSISTENCY_CHECK_AUTH", agent_data, "check_auth", True)
    if not isinstance(check_auth, (str, bool)):
        raise InvalidArgumentsError(f"PERSISTENCY_CHECK_AUTH must be a boolean, got {check_auth!r}")

    config = PersistencyConfig(
        layer=LayerConfig(
            default_dir=_as_text(_setting("PERSISTENCY_DIR", layer_data, "default_dir", "ai"), "PERSISTENCY_DIR"),
            mode=mode.lower(),
        ),
        agent=AgentConfig(
            name=_as_text(_setting("PERSISTENCY_AGENT", agent_data, "name", None), "PERSISTENCY_AGENT"),
            command=_as_text(_setting("PERSISTENCY_AI_CMD", agent_data, "command", None), "PERSISTENCY_AI_CMD"),
            install_method=install_method.lower(),
            default_model=_as_text(
                _setting("PERSISTENCY_DEFAULT_MODEL", agent_data, "default_model", None),
                "PERSISTENCY_DEFAULT_MODEL",
            ),
            check_auth=_as_bool(check_auth),
        ),
        freshness=FreshnessConfig(
            slo_days=_as_int(
                _setting("PERSISTENCY_SLO_DAYS", freshness_data, "slo_days", 7), "PERSISTENCY_SLO_DAYS"
            ),
            slo_commits=_as_int(
                _setting("PERSISTENCY_SLO_COMMITS", freshness_data, "slo_commits", 200),
                "PERSISTENCY_SLO_COMMITS",
            ),
        ),
        log_level=_as_text(
            _setting("PERSISTENCY_LOG_LEVEL", file_data, "log_level", "INFO"), "PERSISTENCY_LOG_LEVEL"
        ),
    )

    if config.layer.mode not in LAYER_MODES:
        raise InvalidArgumentsError(
            f"Unsupported layer mode '{config.layer.mode}'. Use one of: {', '.join(LAYER_MODES)}"
        )
    if config.agent.install_method not in INSTALL_METHODS:
        raise InvalidArgumentsError(
            f"Unsupported install method '{config.agent.install_method}'. "
            f"Use one of: {', '.join(INSTALL_METHODS)}"
        )
    return config
