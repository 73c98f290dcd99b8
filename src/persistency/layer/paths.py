"""Layer location: names, the pointer file, and the defaults provider."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

from persistency.layer.metadata import Metadata, read_metadata, write_metadata

logger = logging.getLogger(__name__)

DEFAULT_LAYER_DIR = "ai"
DOC_EXT = "mdc"

CANONICAL_DOMAINS = ("functional", "technical", "ai-meta")

POINTER_FILE = ".persistency-path"
METADATA_FILE = ".persistency-meta.json"
BOOTSTRAP_FILE = f"ai-bootstrap.{DOC_EXT}"
CONFIG_ENV_FILE = "ai-config.env"
START_SCRIPT = "ai-start.sh"
UPSERT_SCRIPT = "ai-upsert.sh"
LOG_FILE = "_bootstrap.log"
FOUNDATION_FILE = f"foundation.{DOC_EXT}"
INDEX_FILE = f"index.{DOC_EXT}"
BRIEF_FILE = f"ai-meta/migration-brief.{DOC_EXT}"
UPSERT_PROMPT_FILE = f"persistency.upsert.prompt.{DOC_EXT}"
LEGACY_DIR = "ai-meta/legacy"
ASSETS_DIR = "ai-meta/assets"
SNAPSHOT_DIR = "technical/snapshots"
ANTI_DRIFT_DIR = "scripts/ai"


@dataclass
class StoredDefaults:
    """What previous runs left on disk to seed the next one."""

    pointer: str | None = None
    metadata: Metadata | None = None


@runtime_checkable
class DefaultsProvider(Protocol):
    """Loads and saves run defaults (pointer + metadata record) for a project."""

    def load(self, project_root: Path, layer_dir: str | None = None) -> StoredDefaults:
        """Return stored defaults; ``layer_dir`` pins where metadata is read from."""
        ...

    def save(self, project_root: Path, defaults: StoredDefaults) -> None:
        """Persist the pointer, and the metadata record when one is given."""
        ...


def read_pointer(project_root: Path) -> str | None:
    """Return the recorded layer dir, or None when the pointer is absent or blank."""
    path = project_root / POINTER_FILE
    try:
        value = path.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    return value or None


def write_pointer(project_root: Path, layer_dir: str) -> None:
    (project_root / POINTER_FILE).write_text(layer_dir, encoding="utf-8")


class FileDefaultsProvider:
    """Defaults kept as files: the pointer at the project root, metadata in the layer."""

    def __init__(self, default_dir: str = DEFAULT_LAYER_DIR) -> None:
        self.default_dir = default_dir

    def load(self, project_root: Path, layer_dir: str | None = None) -> StoredDefaults:
        pointer = read_pointer(project_root)
        if layer_dir:
            candidates = [project_root / layer_dir / METADATA_FILE]
        else:
            dirs = [d for d in (pointer, self.default_dir) if d]
            candidates = [project_root / d / METADATA_FILE for d in dict.fromkeys(dirs)]
            # Early versions kept the record next to the pointer.
            candidates.append(project_root / METADATA_FILE)

        metadata = None
        for candidate in candidates:
            metadata = read_metadata(candidate)
            if metadata:
                logger.debug("Loaded metadata from %s", candidate)
                break
        return StoredDefaults(pointer=pointer, metadata=metadata)

    def save(self, project_root: Path, defaults: StoredDefaults) -> None:
        if defaults.pointer:
            write_pointer(project_root, defaults.pointer)
        if defaults.metadata is not None:
            layer_dir = defaults.pointer or defaults.metadata.persistency_dir
            write_metadata(project_root / layer_dir / METADATA_FILE, defaults.metadata)


def resolve_layer_dir(
    explicit: str | None,
    defaults: StoredDefaults,
    fallback: str = DEFAULT_LAYER_DIR,
) -> str:
    """Pick the layer dir: explicit > pointer file > stored metadata > fallback."""
    if explicit:
        return explicit
    if defaults.pointer:
        return defaults.pointer
    if defaults.metadata and defaults.metadata.persistency_dir:
        return defaults.metadata.persistency_dir
    return fallback
