"""Command-line front end: ``init`` reconciles a layer, ``check`` reports freshness.

This is the only module that knows about exit codes. Everything below it
raises ``PersistencyError`` subclasses, which ``exit_code_for`` classifies.
"""

from __future__ import annotations

import argparse
import logging
import subprocess
import sys
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path

from persistency.agents import SUPPORTED_AGENTS, ensure_agent_auth, ensure_agent_cli, validate_agent
from persistency.config import INSTALL_METHODS, PersistencyConfig, load_config
from persistency.errors import (
    AgentMissingError,
    AuthMissingError,
    InvalidArgumentsError,
    NotARepositoryError,
    PersistencyError,
)
from persistency.git import GitInspector
from persistency.layer.engine import ReconciliationEngine, RunParameters, RunReport
from persistency.layer.metadata import compute_freshness
from persistency.layer.paths import (
    METADATA_FILE,
    START_SCRIPT,
    DefaultsProvider,
    FileDefaultsProvider,
    read_pointer,
    resolve_layer_dir,
)
from persistency.prompts import InputFn, confirm, prompt_for_layer_dir, prompt_for_missing_options

logger = logging.getLogger(__name__)


class ExitCode(IntEnum):
    SUCCESS = 0
    GENERIC_FAILURE = 1
    NOT_GIT_REPO = 2
    AGENT_MISSING = 3
    AUTH_MISSING = 4
    INVALID_ARGS = 5


def exit_code_for(exc: BaseException) -> ExitCode:
    if isinstance(exc, NotARepositoryError):
        return ExitCode.NOT_GIT_REPO
    if isinstance(exc, AgentMissingError):
        return ExitCode.AGENT_MISSING
    if isinstance(exc, AuthMissingError):
        return ExitCode.AUTH_MISSING
    if isinstance(exc, InvalidArgumentsError):
        return ExitCode.INVALID_ARGS
    return ExitCode.GENERIC_FAILURE


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


@dataclass
class InitOptions:
    """Raw ``init`` inputs before prompting and resolution."""

    project_name: str | None = None
    project_path: str | None = None
    persistency_dir: str | None = None
    prev_layer: str | None = None
    prod_branch: str | None = None
    agent: str | None = None
    ai_cmd: str | None = None
    install_method: str | None = None
    default_model: str | None = None
    assets: list[str] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)
    write_config: bool = False
    non_interactive: bool = False
    yes: bool = False
    force: bool = False
    keep_backup: bool = False
    log_history: bool = False
    require_existing: bool = False
    start_session: bool = False

    @property
    def interactive(self) -> bool:
        return not self.non_interactive


class _ArgumentParser(argparse.ArgumentParser):
    """argparse exits with 2 on bad usage, which would read as "not a repository"."""

    def error(self, message: str):
        raise InvalidArgumentsError(message)


def build_init_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="persistency init",
        description="Bootstrap or refresh an AI persistency layer inside a Git repository.",
    )
    parser.add_argument("--project-name", help="Project name.")
    parser.add_argument("--project-path", help="Path to the project repository.")
    parser.add_argument("--persistency-dir", help="Directory of the layer, relative to the project.")
    parser.add_argument("--prev-layer", help="Previous persistency layer to import.")
    parser.add_argument("--prod-branch", help="Production (truth) branch. Defaults to the current branch.")
    parser.add_argument("--agent", choices=SUPPORTED_AGENTS, help="AI agent CLI to use.")
    parser.add_argument("--ai-cmd", help="Explicit AI CLI command or path.")
    parser.add_argument("--install-method", choices=INSTALL_METHODS, help="Install or update the AI CLI.")
    parser.add_argument("--default-model", help="Default AI model identifier.")
    parser.add_argument("--asset", dest="assets", action="append", default=[], help="Additional asset (repeatable).")
    parser.add_argument("--note", dest="notes", action="append", default=[], help="Supplemental note (repeatable).")
    parser.add_argument("--write-config", action="store_true", help="Write ai-config.env and anti-drift scripts.")
    parser.add_argument("--non-interactive", action="store_true", help="Fail if required inputs are missing.")
    parser.add_argument("--yes", action="store_true", help="Assume yes for confirmations.")
    parser.add_argument("--force", action="store_true", help="Overwrite existing template files.")
    parser.add_argument("--keep-backup", action="store_true", help="Back up the existing layer first.")
    parser.add_argument("--log-history", action="store_true", help="Append refresh details to _bootstrap.log.")
    parser.add_argument("--require-existing", action="store_true", help="Refuse to create a missing layer.")
    parser.add_argument("--start-session", action="store_true", help="Start an AI session afterwards.")
    parser.add_argument("--config", type=Path, help="Path to persistency.toml.")
    return parser


def build_check_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="persistency check",
        description="Exit non-zero when the persistency layer is stale.",
    )
    parser.add_argument("--project-path", default=".", help="Path to the project repository.")
    parser.add_argument("--persistency-dir", help="Directory of the layer, relative to the project.")
    parser.add_argument("--slo-days", type=int, help="Maximum days since the last refresh.")
    parser.add_argument("--slo-commits", type=int, help="Maximum commits ahead of the truth branch.")
    parser.add_argument("--config", type=Path, help="Path to persistency.toml.")
    return parser


# ── Option resolution ────────────────────────────────────────


def apply_config_defaults(options: InitOptions, config: PersistencyConfig) -> InitOptions:
    """Fill options the command line left unset from configuration."""
    agent_cfg = config.agent
    options.agent = options.agent or agent_cfg.name
    options.ai_cmd = options.ai_cmd or agent_cfg.command
    options.default_model = options.default_model or agent_cfg.default_model
    if options.install_method is None and agent_cfg.install_method != "skip":
        options.install_method = agent_cfg.install_method
    options.require_existing = options.require_existing or config.layer.require_existing
    return options


def hydrate_from_metadata(options: InitOptions, provider: DefaultsProvider) -> InitOptions:
    """Reuse facts from a previous run's metadata record for anything still unset."""
    root = Path(options.project_path or Path.cwd()).expanduser().resolve()
    record = provider.load(root, options.persistency_dir).metadata
    if record is None:
        return options

    logger.debug("Hydrating options from metadata of %s", record.project_name)
    options.project_name = options.project_name or record.project_name or None
    options.project_path = options.project_path or record.project_path or None
    options.prod_branch = options.prod_branch or record.prod_branch
    options.agent = options.agent or record.agent or None
    options.ai_cmd = options.ai_cmd or record.ai_cmd
    options.default_model = options.default_model or record.default_model
    options.install_method = options.install_method or record.install_method
    if not options.notes:
        options.notes = list(record.intake_notes)
    return options


def _layer_known(root: Path, provider: DefaultsProvider, default_dir: str) -> bool:
    if read_pointer(root) or (root / default_dir).is_dir():
        return True
    return provider.load(root).metadata is not None


def _layer_dir_from_disk(root: Path, provider: DefaultsProvider, default_dir: str) -> str:
    return resolve_layer_dir(None, provider.load(root), default_dir)


# ── Output ───────────────────────────────────────────────────


def print_summary(report: RunReport) -> None:
    root = report.project_root
    print(f"Persistency directory: {report.layer_path}")
    if report.backup_path:
        print(f"Backup stored in: {report.backup_path}")
    for result in report.writes:
        try:
            shown = result.path.relative_to(root)
        except ValueError:
            shown = result.path
        print(f"  {result.status:<8} {shown}")
    freshness = report.freshness
    print(
        f"Freshness: {freshness.days_since_update} day(s) since last refresh, "
        f"{freshness.commits_since_truth} commit(s) ahead of {report.truth_branch}"
    )
    for warning in report.warnings:
        print(f"Warning: {warning}", file=sys.stderr)


def _start_session(report: RunReport, agent: str) -> None:
    script = report.layer_path / START_SCRIPT
    print(f"Launching {agent} via {START_SCRIPT}...")
    try:
        subprocess.run([str(script)], cwd=report.project_root, check=False)
    except OSError as e:
        print(f"Warning: unable to start session: {e}", file=sys.stderr)


# ── Commands ─────────────────────────────────────────────────


def run_init(argv: Sequence[str] | None = None, input_fn: InputFn = input) -> int:
    try:
        args = build_init_parser().parse_args(argv)
        config = load_config(args.config)
        setup_logging(config.log_level)

        options = InitOptions(**{k: v for k, v in vars(args).items() if k != "config"})
        apply_config_defaults(options, config)
        default_dir = config.layer.default_dir
        provider = FileDefaultsProvider(default_dir)
        hydrate_from_metadata(options, provider)
        prompt_for_missing_options(options, input_fn)
        agent = validate_agent(options.agent or "")

        root = Path(options.project_path or Path.cwd()).expanduser().resolve()
        vcs = GitInspector.open(root)

        if options.persistency_dir is None and options.interactive and not options.yes:
            if not _layer_known(root, provider, default_dir):
                options.persistency_dir = prompt_for_layer_dir(default_dir, input_fn)

        ai_cmd = ensure_agent_cli(agent, options.install_method, options.ai_cmd)
        if config.agent.check_auth:
            ensure_agent_auth(agent)

        params = RunParameters(
            project_name=options.project_name or root.name,
            project_path=root,
            agent=agent,
            ai_cmd=ai_cmd,
            persistency_dir=options.persistency_dir,
            prod_branch=options.prod_branch,
            default_model=options.default_model,
            install_method=options.install_method,
            prev_layer=options.prev_layer,
            assets=list(options.assets),
            intake_notes=list(options.notes),
            force=options.force,
            keep_backup=options.keep_backup,
            write_config=options.write_config or options.yes,
            log_history=options.log_history,
            require_existing=options.require_existing,
        )
        engine = ReconciliationEngine(
            vcs,
            provider,
            default_dir=default_dir,
            slo_days=config.freshness.slo_days,
            slo_commits=config.freshness.slo_commits,
        )
        report = engine.run(params)
        print_summary(report)

        if options.start_session:
            _start_session(report, agent)
        elif options.interactive and not options.yes:
            if confirm(f"Start {agent} session now?", False, input_fn):
                _start_session(report, agent)
    except PersistencyError as e:
        print(f"Error: {e}", file=sys.stderr)
        return exit_code_for(e)
    except (EOFError, KeyboardInterrupt):
        print("\nAborted.", file=sys.stderr)
        return ExitCode.GENERIC_FAILURE
    return ExitCode.SUCCESS


def run_check(argv: Sequence[str] | None = None) -> int:
    try:
        args = build_check_parser().parse_args(argv)
        config = load_config(args.config)
        setup_logging(config.log_level)
        slo_days = args.slo_days if args.slo_days is not None else config.freshness.slo_days
        slo_commits = args.slo_commits if args.slo_commits is not None else config.freshness.slo_commits

        root = Path(args.project_path).expanduser().resolve()
        vcs = GitInspector.open(root)
        provider = FileDefaultsProvider(config.layer.default_dir)
        layer_dir = args.persistency_dir or _layer_dir_from_disk(root, provider, config.layer.default_dir)
        record = provider.load(root, layer_dir).metadata
        if record is None:
            raise InvalidArgumentsError(
                f"No {METADATA_FILE} found in {root / layer_dir}; run `persistency init` first."
            )

        truth = vcs.resolve_truth_branch(record.prod_branch)
        freshness = compute_freshness(record, vcs.commit_distance(truth))
    except PersistencyError as e:
        print(f"Error: {e}", file=sys.stderr)
        return exit_code_for(e)

    print(f"Layer: {root / layer_dir}")
    print(f"Days since last refresh: {freshness.days_since_update} (target <= {slo_days})")
    print(f"Commits ahead of {truth}: {freshness.commits_since_truth} (target <= {slo_commits})")
    if freshness.is_stale(slo_days, slo_commits):
        print("Persistency layer is stale; run scripts/ai/refresh-layer.sh.")
        return ExitCode.GENERIC_FAILURE
    print("Persistency layer is fresh.")
    return ExitCode.SUCCESS
