"""Shared fakes for engine tests."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from persistency.layer.engine import ReconciliationEngine, RunParameters
from persistency.layer.paths import FileDefaultsProvider, StoredDefaults

NOW = datetime(2026, 10, 19, 12, 0, 0, tzinfo=timezone.utc)


@dataclass
class FakeVersionControl:
    """In-memory stand-in for GitInspector."""

    branch: str = "main"
    commit: str = "0123456789abcdef0123456789abcdef01234567"
    distance: int = 0
    files: list[str] = field(
        default_factory=lambda: ["Makefile", "README.md", "src/app.py", "src/util.py"]
    )

    def current_branch(self) -> str:
        return self.branch

    def resolve_truth_branch(self, preferred: str | None = None) -> str:
        return preferred or self.branch

    def commit_distance(self, truth_branch: str) -> int:
        return self.distance

    def commit_for(self, ref: str) -> str:
        return self.commit

    def list_tree(self, ref: str, recursive: bool = False) -> list[str]:
        if recursive:
            return list(self.files)
        return sorted({f.split("/", 1)[0] for f in self.files})


class InMemoryDefaultsProvider:
    """Keeps pointer and metadata in a dict instead of on disk."""

    def __init__(self) -> None:
        self.stored: dict[Path, StoredDefaults] = {}

    def load(self, project_root: Path, layer_dir: str | None = None) -> StoredDefaults:
        current = self.stored.get(project_root, StoredDefaults())
        metadata = current.metadata
        if layer_dir and metadata and metadata.persistency_dir != layer_dir:
            metadata = None
        return StoredDefaults(pointer=current.pointer, metadata=metadata)

    def save(self, project_root: Path, defaults: StoredDefaults) -> None:
        current = self.stored.setdefault(project_root, StoredDefaults())
        if defaults.pointer:
            current.pointer = defaults.pointer
        if defaults.metadata is not None:
            current.metadata = defaults.metadata


class Clock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def project(tmp_path: Path) -> Path:
    root = tmp_path / "repo"
    root.mkdir()
    return root.resolve()


@pytest.fixture
def vcs() -> FakeVersionControl:
    return FakeVersionControl()


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def engine(vcs: FakeVersionControl, clock: Clock) -> ReconciliationEngine:
    return ReconciliationEngine(vcs, FileDefaultsProvider(), clock=clock)


@pytest.fixture
def make_params(project: Path):
    def _make(**overrides) -> RunParameters:
        values = {
            "project_name": "Demo",
            "project_path": project,
            "agent": "claude",
            "ai_cmd": "claude",
        }
        values.update(overrides)
        return RunParameters(**values)

    return _make
