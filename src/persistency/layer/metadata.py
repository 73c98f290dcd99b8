"""Metadata record — the last run's parameters plus freshness numbers.

The record lives at ``<layer>/.persistency-meta.json`` with camelCase keys so
layers written by earlier releases stay readable. It is replaced wholesale on
every run, never merged.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass
class Freshness:
    """Raw staleness numbers; thresholds are applied by the caller."""

    days_since_update: int = 0
    commits_since_truth: int = 0

    def is_stale(self, slo_days: int, slo_commits: int) -> bool:
        return self.days_since_update > slo_days or self.commits_since_truth > slo_commits

    def to_dict(self) -> dict:
        return {
            "daysSinceUpdate": self.days_since_update,
            "commitsSinceTruth": self.commits_since_truth,
        }


@dataclass
class Metadata:
    """Persisted facts about the most recent successful run."""

    project_name: str = ""
    project_path: str = ""
    agent: str = ""
    persistency_dir: str = ""
    prod_branch: str = ""
    snapshot_ref: str = ""
    updated_at: str = ""
    ai_cmd: str | None = None
    default_model: str | None = None
    install_method: str | None = None
    freshness: Freshness | None = None
    assets: list[str] = field(default_factory=list)
    legacy_sources: list[str] = field(default_factory=list)
    intake_notes: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        data: dict = {
            "projectName": self.project_name,
            "projectPath": self.project_path,
            "agent": self.agent,
            "aiCmd": self.ai_cmd,
            "defaultModel": self.default_model,
            "persistencyDir": self.persistency_dir,
            "prodBranch": self.prod_branch,
            "snapshotRef": self.snapshot_ref,
            "updatedAt": self.updated_at,
            "installMethod": self.install_method,
            "freshness": self.freshness.to_dict() if self.freshness else None,
            "assets": self.assets or None,
            "legacySources": self.legacy_sources or None,
            "intakeNotes": self.intake_notes or None,
        }
        return {k: v for k, v in data.items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict) -> Metadata:
        """Build a record from parsed JSON. Wrong-typed fields raise TypeError."""
        freshness = None
        raw_freshness = data.get("freshness")
        if isinstance(raw_freshness, dict):
            freshness = Freshness(
                days_since_update=int(raw_freshness.get("daysSinceUpdate", 0)),
                commits_since_truth=int(raw_freshness.get("commitsSinceTruth", 0)),
            )
        notes = data.get("intakeNotes")
        # Older layers stored notes as one newline-separated string.
        if isinstance(notes, str):
            notes = [line.strip() for line in notes.splitlines() if line.strip()]
        return cls(
            project_name=_text(data, "projectName"),
            project_path=_text(data, "projectPath"),
            agent=_text(data, "agent"),
            persistency_dir=_text(data, "persistencyDir"),
            prod_branch=_text(data, "prodBranch"),
            snapshot_ref=_text(data, "snapshotRef"),
            updated_at=_text(data, "updatedAt"),
            ai_cmd=_optional_text(data, "aiCmd"),
            default_model=_optional_text(data, "defaultModel"),
            install_method=_optional_text(data, "installMethod"),
            freshness=freshness,
            assets=_text_list(data.get("assets"), "assets"),
            legacy_sources=_text_list(data.get("legacySources"), "legacySources"),
            intake_notes=_text_list(notes, "intakeNotes"),
        )


def _text(data: dict, key: str) -> str:
    value = data.get(key, "")
    if not isinstance(value, str):
        raise TypeError(f"{key} must be a string, got {type(value).__name__}")
    return value


def _optional_text(data: dict, key: str) -> str | None:
    value = data.get(key)
    if value is not None and not isinstance(value, str):
        raise TypeError(f"{key} must be a string, got {type(value).__name__}")
    return value


def _text_list(value, key: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise TypeError(f"{key} must be a list of strings")
    return list(value)


def read_metadata(path: Path) -> Metadata | None:
    """Read a metadata record. Missing or malformed files yield None."""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError):
        return None
    if not isinstance(data, dict):
        logger.warning("Ignoring malformed metadata at %s", path)
        return None
    try:
        return Metadata.from_dict(data)
    except (TypeError, ValueError):
        logger.warning("Ignoring malformed metadata at %s", path)
        return None


def write_metadata(path: Path, record: Metadata) -> None:
    """Replace the metadata file with ``record``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(record.to_dict(), indent=2, ensure_ascii=False) + "\n",
        encoding="utf-8",
    )


def format_timestamp(moment: datetime) -> str:
    """ISO-8601 in UTC with a ``Z`` suffix, millisecond precision."""
    utc = moment.astimezone(timezone.utc)
    return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}Z"


def parse_timestamp(value: str) -> datetime | None:
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        moment = datetime.fromisoformat(text)
    except ValueError:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def compute_freshness(
    previous: Metadata | None,
    commits_since_truth: int,
    now: datetime | None = None,
) -> Freshness:
    """Whole days since the previous record plus the supplied commit distance."""
    days = 0
    updated_at = parse_timestamp(previous.updated_at) if previous else None
    if updated_at:
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        days = max((now - updated_at).days, 0)
    return Freshness(days_since_update=days, commits_since_truth=commits_since_truth)
