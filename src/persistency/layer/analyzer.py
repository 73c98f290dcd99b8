"""Layout analysis — classify the layer's top-level directories.

An extraneous directory counts as "referenced" when its name occurs anywhere
in the bootstrap document. This is plain substring matching; the result
only feeds the migration brief, which a human or agent reviews.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from persistency.layer.paths import BOOTSTRAP_FILE, CANONICAL_DOMAINS

logger = logging.getLogger(__name__)

PACKAGE_METADATA_DIRS = frozenset({"node_modules", "__pycache__", "bower_components", "jspm_packages"})


@dataclass
class LayoutAnalysis:
    """Snapshot of a layer directory at analysis time."""

    layer_path: Path
    exists: bool
    directories: list[str] = field(default_factory=list)
    canonical: list[str] = field(default_factory=list)
    missing_canonical: list[str] = field(default_factory=lambda: list(CANONICAL_DOMAINS))
    extras: list[str] = field(default_factory=list)
    referenced_extras: list[str] = field(default_factory=list)
    unreferenced_extras: list[str] = field(default_factory=list)
    bootstrap_found: bool = False


def _is_ignored(name: str) -> bool:
    return name.startswith(".") or name in PACKAGE_METADATA_DIRS


def _read_bootstrap(layer_path: Path) -> str | None:
    path = layer_path / BOOTSTRAP_FILE
    try:
        return path.read_text(encoding="utf-8")
    except OSError:
        return None
    except UnicodeDecodeError:
        logger.warning("Bootstrap document %s is not UTF-8; treating as absent", path)
        return None


def analyze_layout(layer_path: Path) -> LayoutAnalysis:
    """List and classify the immediate subdirectories of ``layer_path``."""
    if not layer_path.is_dir():
        return LayoutAnalysis(layer_path=layer_path, exists=False)

    directories = sorted(
        entry.name for entry in layer_path.iterdir() if entry.is_dir() and not _is_ignored(entry.name)
    )
    canonical = [name for name in directories if name in CANONICAL_DOMAINS]
    missing = [name for name in CANONICAL_DOMAINS if name not in canonical]
    extras = [name for name in directories if name not in CANONICAL_DOMAINS]

    bootstrap = _read_bootstrap(layer_path)
    text = bootstrap or ""
    referenced = [name for name in extras if name in text]
    unreferenced = [name for name in extras if name not in text]

    logger.debug(
        "Layout of %s: %d canonical, %d missing, %d extra (%d referenced)",
        layer_path,
        len(canonical),
        len(missing),
        len(extras),
        len(referenced),
    )
    return LayoutAnalysis(
        layer_path=layer_path,
        exists=True,
        directories=directories,
        canonical=canonical,
        missing_canonical=missing,
        extras=extras,
        referenced_extras=referenced,
        unreferenced_extras=unreferenced,
        bootstrap_found=bootstrap is not None,
    )
