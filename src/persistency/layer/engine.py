"""Reconciliation engine — one idempotent pass over a project's layer.

Stages run strictly in order:

    RESOLVE_PATH → LOAD_METADATA → ANALYZE → (BACKUP) → ENSURE_LAYOUT →
    (STAGE_LEGACY) → COPY_ASSETS → WRITE_FOUNDATIONS → WRITE_RUN_ARTIFACTS →
    WRITE_METADATA

An I/O or git failure in any stage aborts the run as ``ReconcileError``; asset copies
and legacy imports degrade to warnings instead. The metadata record is
written last so its timestamp never outruns the artifacts it describes.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from persistency.errors import GitCommandError, LayerMissingError, ReconcileError
from persistency.git import extension_histogram
from persistency.layer import templates
from persistency.layer.analyzer import LayoutAnalysis, analyze_layout
from persistency.layer.brief import BriefContext, compose_brief
from persistency.layer.metadata import Freshness, Metadata, compute_freshness, format_timestamp
from persistency.layer.paths import (
    ANTI_DRIFT_DIR,
    BOOTSTRAP_FILE,
    BRIEF_FILE,
    CANONICAL_DOMAINS,
    CONFIG_ENV_FILE,
    DEFAULT_LAYER_DIR,
    DOC_EXT,
    FOUNDATION_FILE,
    INDEX_FILE,
    LOG_FILE,
    SNAPSHOT_DIR,
    START_SCRIPT,
    UPSERT_PROMPT_FILE,
    UPSERT_SCRIPT,
    DefaultsProvider,
    FileDefaultsProvider,
    StoredDefaults,
    resolve_layer_dir,
)
from persistency.layer.writer import (
    WriteResult,
    backup_layer,
    copy_assets,
    ensure_layout,
    stage_legacy_layer,
    write_conditional,
    write_once,
    write_unconditional,
)

if TYPE_CHECKING:
    from persistency.git import VersionControl

logger = logging.getLogger(__name__)

RESOLVE_PATH = "RESOLVE_PATH"
LOAD_METADATA = "LOAD_METADATA"
ANALYZE = "ANALYZE"
BACKUP = "BACKUP"
ENSURE_LAYOUT = "ENSURE_LAYOUT"
STAGE_LEGACY = "STAGE_LEGACY"
COPY_ASSETS = "COPY_ASSETS"
WRITE_FOUNDATIONS = "WRITE_FOUNDATIONS"
WRITE_RUN_ARTIFACTS = "WRITE_RUN_ARTIFACTS"
WRITE_METADATA = "WRITE_METADATA"

EXECUTABLE = 0o755


@dataclass
class RunParameters:
    """Fully resolved inputs for one run; produced by the CLI layer."""

    project_name: str
    project_path: Path
    agent: str
    ai_cmd: str = ""
    persistency_dir: str | None = None
    prod_branch: str | None = None
    default_model: str | None = None
    install_method: str | None = None
    prev_layer: str | None = None
    assets: list[str] = field(default_factory=list)
    intake_notes: list[str] = field(default_factory=list)
    force: bool = False
    keep_backup: bool = False
    write_config: bool = False
    log_history: bool = False
    require_existing: bool = False


@dataclass
class RunReport:
    """What a run did, for the caller to print or inspect."""

    project_root: Path
    layer_dir: str = ""
    layer_path: Path | None = None
    analysis: LayoutAnalysis | None = None
    truth_branch: str = ""
    truth_commit: str = ""
    freshness: Freshness = field(default_factory=Freshness)
    backup_path: Path | None = None
    legacy_sources: list[str] = field(default_factory=list)
    unresolved_sources: list[str] = field(default_factory=list)
    assets: list[str] = field(default_factory=list)
    writes: list[WriteResult] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    stages: list[str] = field(default_factory=list)
    metadata: Metadata | None = None

    def status_of(self, path: Path) -> str | None:
        for result in self.writes:
            if result.path == path:
                return result.status
        return None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReconciliationEngine:
    """Brings a layer in line with the run parameters without clobbering owned content."""

    def __init__(
        self,
        vcs: VersionControl,
        defaults: DefaultsProvider | None = None,
        *,
        default_dir: str = DEFAULT_LAYER_DIR,
        slo_days: int = 7,
        slo_commits: int = 200,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.vcs = vcs
        self.defaults = defaults or FileDefaultsProvider(default_dir)
        self.default_dir = default_dir
        self.slo_days = slo_days
        self.slo_commits = slo_commits
        self.clock = clock

    @contextmanager
    def _stage(self, name: str, report: RunReport):
        logger.debug("Stage %s", name)
        try:
            yield
        except (OSError, GitCommandError) as e:
            logger.error("Stage %s failed: %s", name, e)
            raise ReconcileError(name, str(e)) from e
        report.stages.append(name)

    def run(self, params: RunParameters) -> RunReport:
        root = Path(params.project_path).expanduser().resolve()
        now = self.clock()
        report = RunReport(project_root=root)

        def rel(path: Path) -> str:
            return Path(os.path.relpath(path, root)).as_posix()

        with self._stage(RESOLVE_PATH, report):
            stored = self.defaults.load(root)
            layer_dir = resolve_layer_dir(params.persistency_dir, stored, self.default_dir)
            layer_path = (root / layer_dir).resolve()
            if params.require_existing and not layer_path.is_dir():
                raise LayerMissingError(
                    f"No existing persistency layer at {layer_path}; "
                    "strict mode refuses to start a migration from nothing."
                )
            self.defaults.save(root, StoredDefaults(pointer=layer_dir))
            report.layer_dir = layer_dir
            report.layer_path = layer_path

        with self._stage(LOAD_METADATA, report):
            previous = self.defaults.load(root, layer_dir).metadata
            truth = self.vcs.resolve_truth_branch(params.prod_branch)
            commits = self.vcs.commit_distance(truth)
            report.truth_branch = truth
            report.truth_commit = self.vcs.commit_for(truth)
            report.freshness = compute_freshness(previous, commits, now)

        with self._stage(ANALYZE, report):
            analysis = analyze_layout(layer_path)
            report.analysis = analysis
            if analysis.exists:
                report.legacy_sources.append(rel(layer_path))

        if params.keep_backup:
            with self._stage(BACKUP, report):
                backup = backup_layer(layer_path, now)
                if backup:
                    report.backup_path = backup
                    report.legacy_sources.append(rel(backup))

        with self._stage(ENSURE_LAYOUT, report):
            ensure_layout(layer_path)

        if params.prev_layer:
            with self._stage(STAGE_LEGACY, report):
                outcome = stage_legacy_layer(params.prev_layer, layer_path, now)
                if outcome.ok and outcome.target:
                    report.legacy_sources.append(rel(outcome.target))
                else:
                    report.warnings.append(outcome.warning or "")
                    report.unresolved_sources.append(params.prev_layer)

        with self._stage(COPY_ASSETS, report):
            for outcome in copy_assets(params.assets, layer_path):
                if outcome.ok and outcome.target:
                    report.assets.append(rel(outcome.target))
                else:
                    report.warnings.append(outcome.warning or "")

        snapshot_path = self._snapshot_path(layer_path, report)

        with self._stage(WRITE_FOUNDATIONS, report):
            report.writes += self._write_foundations(params, layer_path, snapshot_path, report, rel)

        with self._stage(WRITE_RUN_ARTIFACTS, report):
            report.writes += self._write_run_artifacts(params, layer_path, snapshot_path, report, rel, now)

        with self._stage(WRITE_METADATA, report):
            record = Metadata(
                project_name=params.project_name,
                project_path=str(root),
                agent=params.agent,
                ai_cmd=params.ai_cmd or None,
                default_model=params.default_model,
                persistency_dir=rel(layer_path),
                prod_branch=report.truth_branch,
                snapshot_ref=report.truth_commit,
                updated_at=format_timestamp(now),
                install_method=params.install_method,
                freshness=report.freshness,
                assets=list(report.assets),
                legacy_sources=list(report.legacy_sources),
                intake_notes=[n.strip() for n in params.intake_notes if n.strip()],
            )
            self.defaults.save(root, StoredDefaults(pointer=layer_dir, metadata=record))
            report.metadata = record

        logger.info(
            "Layer %s reconciled (%d writes, %d warnings)",
            layer_path,
            len(report.writes),
            len(report.warnings),
        )
        return report

    # ── Stage bodies ─────────────────────────────────────────

    def _snapshot_path(self, layer_path: Path, report: RunReport) -> Path | None:
        if not report.truth_commit:
            return None
        branch = report.truth_branch.replace("/", "_")
        return layer_path / SNAPSHOT_DIR / f"{branch}-{report.truth_commit[:7]}.{DOC_EXT}"

    def _write_foundations(
        self,
        params: RunParameters,
        layer_path: Path,
        snapshot_path: Path | None,
        report: RunReport,
        rel: Callable[[Path], str],
    ) -> list[WriteResult]:
        force = params.force
        ai_cmd = params.ai_cmd or params.agent
        writes: list[WriteResult] = []

        for domain in CANONICAL_DOMAINS:
            skeleton = templates.FOUNDATIONS[domain]
            values = {"projectName": params.project_name}
            if "agent" in templates.placeholders(skeleton):
                values["agent"] = params.agent
            content = templates.render_document(
                skeleton, values, description=f"{domain} foundation for {params.project_name}"
            )
            writes.append(write_conditional(layer_path / domain / FOUNDATION_FILE, content, force))

            index = templates.render_document(
                templates.INDEX,
                {"domain": domain, "projectName": params.project_name},
                description=f"{domain} index for {params.project_name}",
            )
            writes.append(write_once(layer_path / domain / INDEX_FILE, index))

        bootstrap = templates.render_document(
            templates.BOOTSTRAP,
            {
                "projectName": params.project_name,
                "agent": params.agent,
                "defaultModel": params.default_model or "unset",
                "truthBranch": report.truth_branch,
                "snapshotPath": rel(snapshot_path) if snapshot_path else "(none)",
                "daysSinceUpdate": str(report.freshness.days_since_update),
                "commitsSinceTruth": str(report.freshness.commits_since_truth),
                "sloDays": str(self.slo_days),
                "sloCommits": str(self.slo_commits),
            },
            description=f"Bootstrap for the {params.project_name} persistency layer",
        )
        writes.append(write_conditional(layer_path / BOOTSTRAP_FILE, bootstrap, force))

        if params.write_config:
            env = templates.render_template(
                templates.CONFIG_ENV,
                {
                    "projectName": params.project_name,
                    "projectPath": str(report.project_root),
                    "layerPath": str(layer_path),
                    "agent": params.agent,
                    "aiCmd": ai_cmd,
                    "functionalDir": rel(layer_path / "functional"),
                    "technicalDir": rel(layer_path / "technical"),
                    "aiMetaDir": rel(layer_path / "ai-meta"),
                    "defaultModel": params.default_model or "",
                },
            )
            writes.append(write_conditional(layer_path / CONFIG_ENV_FILE, env, force))

            scripts_dir = report.project_root / ANTI_DRIFT_DIR
            layer_rel = rel(layer_path)
            check = templates.render_template(
                templates.CHECK_STALE_SCRIPT,
                {
                    "persistencyDir": layer_rel,
                    "sloDays": str(self.slo_days),
                    "sloCommits": str(self.slo_commits),
                },
            )
            refresh = templates.render_template(templates.REFRESH_SCRIPT, {"persistencyDir": layer_rel})
            writes.append(write_conditional(scripts_dir / "check-stale.sh", check, force, EXECUTABLE))
            writes.append(write_conditional(scripts_dir / "refresh-layer.sh", refresh, force, EXECUTABLE))

        start = templates.render_template(templates.START_SCRIPT, {"aiCmd": ai_cmd})
        writes.append(write_conditional(layer_path / START_SCRIPT, start, force, EXECUTABLE))
        return writes

    def _write_run_artifacts(
        self,
        params: RunParameters,
        layer_path: Path,
        snapshot_path: Path | None,
        report: RunReport,
        rel: Callable[[Path], str],
        now: datetime,
    ) -> list[WriteResult]:
        writes: list[WriteResult] = []
        root = report.project_root
        layer_rel = rel(layer_path)

        if snapshot_path:
            writes.append(write_unconditional(snapshot_path, self._render_snapshot(report)))

        brief_path = layer_path / BRIEF_FILE
        prompt_path = root / UPSERT_PROMPT_FILE
        brief, prompt = compose_brief(
            BriefContext(
                project_name=params.project_name,
                project_path=str(root),
                agent=params.agent,
                layer_dir=layer_rel,
                brief_path=rel(brief_path),
                analysis=report.analysis or analyze_layout(layer_path),
                legacy_sources=list(report.legacy_sources),
                unresolved_sources=list(report.unresolved_sources),
                intake_notes=list(params.intake_notes),
            )
        )
        writes.append(write_unconditional(brief_path, brief))
        writes.append(write_unconditional(prompt_path, prompt))

        upsert = templates.render_template(
            templates.UPSERT_SCRIPT,
            {
                "rootFromLayer": Path(os.path.relpath(root, layer_path)).as_posix(),
                "promptPath": rel(prompt_path),
                "aiCmd": params.ai_cmd or params.agent,
            },
        )
        writes.append(write_unconditional(layer_path / UPSERT_SCRIPT, upsert, EXECUTABLE))

        log_path = layer_path / LOG_FILE
        if params.log_history:
            stamp = now.strftime("%Y-%m-%d %H:%M:%S")
            lines = [
                f"[{stamp}] Refreshed on {report.truth_branch} "
                f"(commit {report.truth_commit[:7] or 'none'})"
            ]
            if report.legacy_sources:
                lines.append(f"[{stamp}] Legacy sources to reconcile: {', '.join(report.legacy_sources)}")
            with log_path.open("a", encoding="utf-8") as f:
                f.write("\n".join(lines) + "\n")
        else:
            log_path.unlink(missing_ok=True)
        return writes

    def _render_snapshot(self, report: RunReport) -> str:
        ref = report.truth_commit
        top_level = self.vcs.list_tree(ref)
        histogram = extension_histogram(self.vcs.list_tree(ref, recursive=True))
        return templates.render_document(
            templates.SNAPSHOT,
            {
                "truthBranch": report.truth_branch,
                "commit": ref,
                "topLevel": "\n".join(f"- {name}" for name in top_level) or "- _(empty)_",
                "histogram": "\n".join(f"- {ext}: {count}" for ext, count in histogram)
                or "- _(empty)_",
            },
            description=f"Code snapshot of {report.truth_branch} at {ref[:7]}",
            alwaysApply=False,
        )
