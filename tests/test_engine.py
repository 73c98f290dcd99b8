"""Tests for the reconciliation engine."""

from __future__ import annotations

import json
from datetime import timedelta
from pathlib import Path
from unittest.mock import patch

import frontmatter
import pytest

from persistency.errors import GitCommandError, LayerMissingError, ReconcileError
from persistency.layer.engine import (
    BACKUP,
    ENSURE_LAYOUT,
    WRITE_METADATA,
    ReconciliationEngine,
)
from persistency.layer.metadata import Freshness, Metadata, format_timestamp, write_metadata
from persistency.layer.paths import FileDefaultsProvider

from conftest import NOW, InMemoryDefaultsProvider

CONDITIONAL = [
    "ai/functional/foundation.mdc",
    "ai/technical/foundation.mdc",
    "ai/ai-meta/foundation.mdc",
    "ai/ai-bootstrap.mdc",
    "ai/ai-start.sh",
]
WRITE_ONCE = [
    "ai/functional/index.mdc",
    "ai/technical/index.mdc",
    "ai/ai-meta/index.mdc",
]
UNCONDITIONAL = [
    "ai/technical/snapshots/main-0123456.mdc",
    "ai/ai-meta/migration-brief.mdc",
    "persistency.upsert.prompt.mdc",
    "ai/ai-upsert.sh",
    "ai/.persistency-meta.json",
]


def _read_all(root: Path, names: list[str]) -> dict[str, str]:
    return {name: (root / name).read_text(encoding="utf-8") for name in names}


class TestFirstRun:
    def test_creates_every_artifact(self, engine, make_params, project: Path):
        report = engine.run(make_params())

        for name in CONDITIONAL + WRITE_ONCE + UNCONDITIONAL:
            assert (project / name).is_file(), name
        assert report.layer_path == project / "ai"
        assert report.layer_dir == "ai"
        for result in report.writes:
            assert result.status == "created"

    def test_creates_layout_directories(self, engine, make_params, project: Path):
        engine.run(make_params())
        for name in ["functional", "technical", "ai-meta", "ai-meta/legacy", "ai-meta/assets", "technical/snapshots"]:
            assert (project / "ai" / name).is_dir()

    def test_stages_run_in_order(self, engine, make_params):
        report = engine.run(make_params())
        assert report.stages == [
            "RESOLVE_PATH",
            "LOAD_METADATA",
            "ANALYZE",
            "ENSURE_LAYOUT",
            "COPY_ASSETS",
            "WRITE_FOUNDATIONS",
            "WRITE_RUN_ARTIFACTS",
            "WRITE_METADATA",
        ]

    def test_scripts_are_executable(self, engine, make_params, project: Path):
        engine.run(make_params())
        for name in ["ai/ai-start.sh", "ai/ai-upsert.sh"]:
            assert (project / name).stat().st_mode & 0o777 == 0o755

    def test_documents_carry_front_matter(self, engine, make_params, project: Path):
        engine.run(make_params())
        post = frontmatter.loads((project / "ai/functional/foundation.mdc").read_text())
        assert post["alwaysApply"] is True
        assert "Demo" in post["description"]
        assert "# Functional foundation · Demo" in post.content

        brief = frontmatter.loads((project / "ai/ai-meta/migration-brief.mdc").read_text())
        assert brief["alwaysApply"] is False

    def test_start_script_execs_agent_command(self, engine, make_params, project: Path):
        engine.run(make_params(ai_cmd="/opt/bin/claude"))
        assert 'exec /opt/bin/claude "$@"' in (project / "ai/ai-start.sh").read_text()

    def test_upsert_script_points_at_prompt(self, engine, make_params, project: Path):
        engine.run(make_params())
        script = (project / "ai/ai-upsert.sh").read_text()
        assert 'PROJECT_ROOT="$(cd "$SCRIPT_DIR/.." && pwd)"' in script
        assert 'PROMPT_FILE="$PROJECT_ROOT/persistency.upsert.prompt.mdc"' in script

    def test_no_legacy_sources_for_new_layer(self, engine, make_params):
        report = engine.run(make_params())
        assert report.legacy_sources == []
        assert report.analysis.exists is False


class TestIdempotence:
    def test_second_run_skips_conditional_writes(self, engine, make_params, project: Path):
        engine.run(make_params())
        before = _read_all(project, CONDITIONAL + WRITE_ONCE)

        report = engine.run(make_params())

        for name in CONDITIONAL + WRITE_ONCE:
            assert report.status_of(project / name) == "skipped", name
        assert _read_all(project, CONDITIONAL + WRITE_ONCE) == before

    def test_unconditional_artifacts_stable_across_reruns(self, engine, make_params, project: Path):
        engine.run(make_params())
        engine.run(make_params())
        second = _read_all(project, UNCONDITIONAL)

        report = engine.run(make_params())

        assert _read_all(project, UNCONDITIONAL) == second
        for name in UNCONDITIONAL[:-1]:
            assert report.status_of(project / name) == "updated", name

    def test_rerun_tracks_new_commit(self, engine, make_params, project: Path, vcs):
        engine.run(make_params())
        vcs.commit = "fedcba9876543210fedcba9876543210fedcba98"
        engine.run(make_params())

        assert (project / "ai/technical/snapshots/main-fedcba9.mdc").is_file()
        meta = json.loads((project / "ai/.persistency-meta.json").read_text())
        assert meta["snapshotRef"] == vcs.commit


class TestPreservation:
    def test_hand_edits_survive_rerun(self, engine, make_params, project: Path):
        engine.run(make_params())
        foundation = project / "ai/functional/foundation.mdc"
        foundation.write_text("my own words\n")
        notes = project / "ai/functional/decisions.mdc"
        notes.write_text("decided things\n")
        extra = project / "ai/research"
        extra.mkdir()
        (extra / "paper.md").write_text("draft\n")

        engine.run(make_params())

        assert foundation.read_text() == "my own words\n"
        assert notes.read_text() == "decided things\n"
        assert (extra / "paper.md").read_text() == "draft\n"

    def test_force_overwrites_templates_but_not_indexes(self, engine, make_params, project: Path):
        engine.run(make_params())
        foundation = project / "ai/technical/foundation.mdc"
        index = project / "ai/technical/index.mdc"
        foundation.write_text("stale\n")
        index.write_text("- 2026-10-01: agent entry\n")

        report = engine.run(make_params(force=True))

        assert report.status_of(foundation) == "updated"
        assert "# Technical foundation · Demo" in foundation.read_text()
        assert report.status_of(index) == "skipped"
        assert index.read_text() == "- 2026-10-01: agent entry\n"

    def test_force_keeps_hand_written_documents(self, engine, make_params, project: Path):
        engine.run(make_params())
        notes = project / "ai/functional/decisions.mdc"
        notes.write_text("decided things\n")

        engine.run(make_params(force=True))

        assert notes.read_text() == "decided things\n"

    def test_missing_canonical_domain_is_recreated(self, engine, make_params, project: Path):
        (project / "ai" / "functional").mkdir(parents=True)

        report = engine.run(make_params())

        assert report.analysis.missing_canonical == ["technical", "ai-meta"]
        assert (project / "ai/technical/foundation.mdc").is_file()
        assert (project / "ai/ai-meta/index.mdc").is_file()
        brief = (project / "ai/ai-meta/migration-brief.mdc").read_text()
        assert "- `technical`\n- `ai-meta`" in brief


class TestLayoutFindings:
    def test_extras_classified_in_brief_and_prompt(self, engine, make_params, project: Path):
        layer = project / "ai"
        for name in ["functional", "legacy-docs", "scratch", ".git", "node_modules"]:
            (layer / name).mkdir(parents=True)
        (layer / "ai-bootstrap.mdc").write_text("See legacy-docs for the old notes.\n")

        report = engine.run(make_params())

        assert report.analysis.referenced_extras == ["legacy-docs"]
        assert report.analysis.unreferenced_extras == ["scratch"]
        brief = (layer / "ai-meta/migration-brief.mdc").read_text()
        assert "- `legacy-docs`" in brief
        assert "- `scratch`" in brief
        prompt = (project / "persistency.upsert.prompt.mdc").read_text()
        assert "- ai/legacy-docs" in prompt
        assert "- ai/scratch" in prompt
        assert "- Brief: ai/ai-meta/migration-brief.mdc" in prompt
        assert "node_modules" not in prompt


class TestLegacySources:
    def test_accumulates_layer_backup_and_import(self, engine, make_params, project: Path, tmp_path: Path):
        (project / "ai" / "functional").mkdir(parents=True)
        (project / "ai" / "functional" / "old.mdc").write_text("old\n")
        previous = tmp_path / "old-layer"
        previous.mkdir()
        (previous / "context.md").write_text("legacy context\n")

        report = engine.run(make_params(keep_backup=True, prev_layer=str(previous)))

        assert report.legacy_sources == [
            "ai",
            "ai-backup/20261019-120000",
            "ai/ai-meta/legacy/20261019-120000",
        ]
        assert (project / "ai-backup/20261019-120000/functional/old.mdc").read_text() == "old\n"
        assert (project / "ai/ai-meta/legacy/20261019-120000/context.md").is_file()
        brief = (project / "ai/ai-meta/migration-brief.mdc").read_text()
        for source in report.legacy_sources:
            assert f"- `{source}`" in brief
        meta = json.loads((project / "ai/.persistency-meta.json").read_text())
        assert meta["legacySources"] == report.legacy_sources

    def test_backup_skipped_without_existing_layer(self, engine, make_params, project: Path):
        report = engine.run(make_params(keep_backup=True))
        assert report.backup_path is None
        assert not (project / "ai-backup").exists()
        assert "BACKUP" in report.stages

    def test_failed_backup_leaves_live_layer_untouched(self, engine, make_params, project: Path):
        foundation = project / "ai/functional/foundation.mdc"
        foundation.parent.mkdir(parents=True)
        foundation.write_text("my own words\n")
        (project / "ai-backup").write_text("a file where the backup directory goes\n")

        with pytest.raises(ReconcileError) as excinfo:
            engine.run(make_params(keep_backup=True))

        assert excinfo.value.stage == BACKUP
        assert foundation.read_text() == "my own words\n"
        assert not (project / "ai/technical").exists()
        assert not (project / "ai/.persistency-meta.json").exists()

    def test_missing_previous_layer_is_unresolved(self, engine, make_params, project: Path, tmp_path: Path):
        missing = str(tmp_path / "nowhere")

        report = engine.run(make_params(prev_layer=missing))

        assert report.unresolved_sources == [missing]
        assert report.warnings == [f"Unable to import previous layer from {missing}: path not found"]
        brief = (project / "ai/ai-meta/migration-brief.mdc").read_text()
        assert f"- `{missing}`" in brief


class TestAssetsAndNotes:
    def test_assets_copied_and_missing_warned(self, engine, make_params, project: Path, tmp_path: Path):
        diagram = tmp_path / "diagram.png"
        diagram.write_bytes(b"\x89PNG")
        missing = str(tmp_path / "nope.csv")

        report = engine.run(make_params(assets=[str(diagram), missing]))

        assert (project / "ai/ai-meta/assets/diagram.png").read_bytes() == b"\x89PNG"
        assert report.assets == ["ai/ai-meta/assets/diagram.png"]
        assert report.warnings == [f"Asset not found: {missing}"]

    def test_notes_in_brief_and_metadata(self, engine, make_params, project: Path):
        engine.run(make_params(intake_notes=["Confluence: https://wiki/x", "  ", "export.csv"]))

        brief = (project / "ai/ai-meta/migration-brief.mdc").read_text()
        assert "- Confluence: https://wiki/x\n- export.csv" in brief
        meta = json.loads((project / "ai/.persistency-meta.json").read_text())
        assert meta["intakeNotes"] == ["Confluence: https://wiki/x", "export.csv"]

    def test_no_notes_placeholder(self, engine, make_params, project: Path):
        engine.run(make_params())
        assert "- _(none supplied)_" in (project / "ai/ai-meta/migration-brief.mdc").read_text()


class TestPointer:
    def test_pointer_convergence(self, engine, make_params, project: Path):
        engine.run(make_params(persistency_dir="custom-ai"))
        assert (project / ".persistency-path").read_text() == "custom-ai"

        report = engine.run(make_params())

        assert report.layer_dir == "custom-ai"
        assert not (project / "ai").exists()

    def test_explicit_dir_rewrites_pointer(self, engine, make_params, project: Path):
        (project / ".persistency-path").write_text("old-ai\n")
        engine.run(make_params(persistency_dir="new-ai"))
        assert (project / ".persistency-path").read_text() == "new-ai"

    def test_in_memory_defaults_leave_no_pointer(self, vcs, clock, make_params, project: Path):
        defaults = InMemoryDefaultsProvider()
        engine = ReconciliationEngine(vcs, defaults, clock=clock)

        engine.run(make_params(persistency_dir="kb"))

        assert not (project / ".persistency-path").exists()
        assert not (project / "kb/.persistency-meta.json").exists()
        assert defaults.stored[project.resolve()].pointer == "kb"
        assert engine.run(make_params()).layer_dir == "kb"


class TestFreshness:
    def test_days_and_commits_from_previous_record(self, engine, make_params, project: Path, vcs):
        write_metadata(
            project / "ai/.persistency-meta.json",
            Metadata(project_name="Demo", updated_at=format_timestamp(NOW - timedelta(days=10))),
        )
        vcs.distance = 42

        report = engine.run(make_params())

        assert report.freshness == Freshness(days_since_update=10, commits_since_truth=42)
        bootstrap = (project / "ai/ai-bootstrap.mdc").read_text()
        assert "Days since last refresh: 10 (target ≤ 7)" in bootstrap
        assert "Commits since truth branch: 42 (target ≤ 200)" in bootstrap

    def test_no_previous_record_is_zero_days(self, engine, make_params):
        report = engine.run(make_params())
        assert report.freshness.days_since_update == 0

    def test_clock_advance_counts_days(self, engine, make_params, clock):
        engine.run(make_params())
        clock.advance(days=3, hours=5)
        assert engine.run(make_params()).freshness.days_since_update == 3


class TestMetadataRecord:
    def test_record_written_last_with_camel_case_keys(self, engine, make_params, project: Path, vcs):
        report = engine.run(make_params(prod_branch="release", default_model="sonnet", install_method="npm"))

        meta = json.loads((project / "ai/.persistency-meta.json").read_text())
        assert meta["projectName"] == "Demo"
        assert meta["projectPath"] == str(project.resolve())
        assert meta["persistencyDir"] == "ai"
        assert meta["prodBranch"] == "release"
        assert meta["snapshotRef"] == vcs.commit
        assert meta["updatedAt"] == "2026-10-19T12:00:00.000Z"
        assert meta["defaultModel"] == "sonnet"
        assert meta["installMethod"] == "npm"
        assert meta["aiCmd"] == "claude"
        assert meta["freshness"] == {"daysSinceUpdate": 0, "commitsSinceTruth": 0}
        assert "assets" not in meta
        assert report.stages[-1] == WRITE_METADATA


class TestOptionalArtifacts:
    def test_config_and_anti_drift_only_with_write_config(self, engine, make_params, project: Path):
        engine.run(make_params())
        assert not (project / "ai/ai-config.env").exists()
        assert not (project / "scripts/ai").exists()

        engine.run(make_params(write_config=True, default_model="sonnet"))

        env = (project / "ai/ai-config.env").read_text()
        assert "PROJECT_NAME=Demo" in env
        assert "PERSISTENCY_FUNCTIONAL=ai/functional" in env
        assert "AI_DEFAULT_MODEL=sonnet" in env
        check = project / "scripts/ai/check-stale.sh"
        assert check.stat().st_mode & 0o777 == 0o755
        assert '--persistency-dir "ai"' in check.read_text()
        assert (project / "scripts/ai/refresh-layer.sh").is_file()

    def test_log_history_appends_then_removed(self, engine, make_params, project: Path):
        log = project / "ai/_bootstrap.log"
        engine.run(make_params(log_history=True))
        engine.run(make_params(log_history=True))

        lines = log.read_text().splitlines()
        assert lines[0] == "[2026-10-19 12:00:00] Refreshed on main (commit 0123456)"
        assert lines[-1] == "[2026-10-19 12:00:00] Legacy sources to reconcile: ai"
        assert len(lines) == 3

        engine.run(make_params())
        assert not log.exists()

    def test_snapshot_lists_tree_and_histogram(self, engine, make_params, project: Path):
        engine.run(make_params())
        snapshot = (project / "ai/technical/snapshots/main-0123456.mdc").read_text()
        assert "- Commit: 0123456789abcdef0123456789abcdef01234567" in snapshot
        assert "- src\n" in snapshot
        assert "- py: 2\n- <none>: 1\n- md: 1" in snapshot

    def test_no_snapshot_without_commits(self, engine, make_params, project: Path, vcs):
        vcs.commit = ""
        engine.run(make_params())
        assert list((project / "ai/technical/snapshots").iterdir()) == []
        assert "- Code snapshot: (none)" in (project / "ai/ai-bootstrap.mdc").read_text()


class TestFailures:
    def test_strict_mode_refuses_missing_layer(self, engine, make_params, project: Path):
        with pytest.raises(LayerMissingError):
            engine.run(make_params(require_existing=True))
        assert list(project.iterdir()) == []

    def test_strict_mode_accepts_existing_layer(self, engine, make_params, project: Path):
        (project / "ai").mkdir()
        report = engine.run(make_params(require_existing=True))
        assert report.analysis.exists is True

    def test_io_failure_names_stage_and_skips_metadata(self, engine, make_params, project: Path):
        (project / "ai").write_text("not a directory\n")

        with pytest.raises(ReconcileError) as excinfo:
            engine.run(make_params())

        assert excinfo.value.stage == ENSURE_LAYOUT
        assert isinstance(excinfo.value.__cause__, OSError)
        assert not (project / "persistency.upsert.prompt.mdc").exists()

    def test_default_provider_is_file_based(self, vcs):
        engine = ReconciliationEngine(vcs, default_dir="kb")
        assert isinstance(engine.defaults, FileDefaultsProvider)
        assert engine.defaults.default_dir == "kb"

    def test_git_failure_names_stage(self, engine, make_params, vcs):
        error = GitCommandError(command=["git", "rev-list"], returncode=128, stderr="bad revision")
        with patch.object(vcs, "commit_distance", side_effect=error):
            with pytest.raises(ReconcileError, match="LOAD_METADATA failed") as excinfo:
                engine.run(make_params())
        assert excinfo.value.__cause__ is error
