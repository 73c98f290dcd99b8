"""File materialization primitives used by the reconciliation engine.

Three write disciplines:
- conditional:   create if missing, overwrite only with ``force``
- write-once:    create if missing, never overwrite
- unconditional: always overwrite (run-derived artifacts)

Copies of operator-supplied content (assets, previous layers) are best
effort: they return a ``CopyOutcome`` instead of raising.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Literal

from persistency.layer.paths import ASSETS_DIR, CANONICAL_DOMAINS, LEGACY_DIR, SNAPSHOT_DIR

logger = logging.getLogger(__name__)

WriteStatus = Literal["created", "skipped", "updated"]

STAMP_FORMAT = "%Y%m%d-%H%M%S"


@dataclass
class WriteResult:
    """Outcome of a single artifact write."""

    path: Path
    status: WriteStatus


@dataclass
class CopyOutcome:
    """Outcome of a best-effort copy: a target on success, a warning otherwise."""

    source: str
    target: Path | None = None
    warning: str | None = None

    @property
    def ok(self) -> bool:
        return self.warning is None


def _write(path: Path, content: str, mode: int | None) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    if mode is not None:
        path.chmod(mode)


def write_conditional(path: Path, content: str, force: bool, mode: int | None = None) -> WriteResult:
    """Create ``path``; overwrite an existing file only when ``force`` is set."""
    if path.exists():
        if not force:
            logger.debug("Skipped existing %s", path)
            return WriteResult(path, "skipped")
        _write(path, content, mode)
        logger.info("Updated %s", path)
        return WriteResult(path, "updated")
    _write(path, content, mode)
    logger.info("Created %s", path)
    return WriteResult(path, "created")


def write_once(path: Path, content: str) -> WriteResult:
    """Create ``path`` if missing; an existing file is never replaced."""
    return write_conditional(path, content, force=False)


def write_unconditional(path: Path, content: str, mode: int | None = None) -> WriteResult:
    existed = path.exists()
    _write(path, content, mode)
    status: WriteStatus = "updated" if existed else "created"
    logger.info("%s %s", status.capitalize(), path)
    return WriteResult(path, status)


def ensure_layout(layer_path: Path) -> list[Path]:
    """Create the layer skeleton. Existing directories are left as they are."""
    dirs = [layer_path]
    dirs += [layer_path / name for name in CANONICAL_DOMAINS]
    dirs += [layer_path / LEGACY_DIR, layer_path / ASSETS_DIR, layer_path / SNAPSHOT_DIR]
    for d in dirs:
        d.mkdir(parents=True, exist_ok=True)
    return dirs


def unique_stamped_dir(parent: Path, moment: datetime) -> Path:
    """Return ``parent/<stamp>``, suffixed ``-2``, ``-3``... if already taken."""
    stamp = moment.strftime(STAMP_FORMAT)
    candidate = parent / stamp
    counter = 2
    while candidate.exists():
        candidate = parent / f"{stamp}-{counter}"
        counter += 1
    return candidate


def _copy_tree(source: Path, target: Path) -> None:
    """Copy ``source`` into ``target``, skipping ``target`` if it lies inside ``source``."""
    target_resolved = target.resolve()

    def ignore(directory: str, names: list[str]) -> list[str]:
        base = Path(directory).resolve()
        return [name for name in names if (base / name) == target_resolved]

    shutil.copytree(source, target, ignore=ignore, dirs_exist_ok=True)


def backup_layer(layer_path: Path, moment: datetime) -> Path | None:
    """Copy the whole layer to the sibling ``<layer>-backup/<stamp>``.

    Returns None when there is no layer to back up. Errors propagate: a failed
    backup must stop the run before the live layer is touched.
    """
    if not layer_path.is_dir():
        return None
    backup_root = layer_path.parent / f"{layer_path.name}-backup"
    backup_root.mkdir(parents=True, exist_ok=True)
    target = unique_stamped_dir(backup_root, moment)
    _copy_tree(layer_path, target)
    logger.info("Backed up %s to %s", layer_path, target)
    return target


def copy_assets(assets: list[str], layer_path: Path, base_dir: Path | None = None) -> list[CopyOutcome]:
    """Stage each asset under ``ai-meta/assets``; failures become warnings."""
    outcomes: list[CopyOutcome] = []
    assets_dir = layer_path / ASSETS_DIR
    for asset in assets:
        source = Path(asset).expanduser()
        if not source.is_absolute() and base_dir is not None:
            source = base_dir / source
        if not source.exists():
            warning = f"Asset not found: {asset}"
            logger.warning(warning)
            outcomes.append(CopyOutcome(source=asset, warning=warning))
            continue
        target = assets_dir / source.name
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            if source.is_dir():
                _copy_tree(source, target)
            else:
                shutil.copy2(source, target)
        except OSError as e:
            warning = f"Could not copy asset {asset}: {e}"
            logger.warning(warning)
            outcomes.append(CopyOutcome(source=asset, warning=warning))
            continue
        logger.info("Copied asset %s -> %s", asset, target)
        outcomes.append(CopyOutcome(source=asset, target=target))
    return outcomes


def stage_legacy_layer(
    source: str,
    layer_path: Path,
    moment: datetime,
    base_dir: Path | None = None,
) -> CopyOutcome:
    """Copy a previous layer into ``ai-meta/legacy/<stamp>``; failures become warnings."""
    prev = Path(source).expanduser()
    if not prev.is_absolute() and base_dir is not None:
        prev = base_dir / prev
    if not prev.exists():
        warning = f"Unable to import previous layer from {source}: path not found"
        logger.warning(warning)
        return CopyOutcome(source=source, warning=warning)

    legacy_root = layer_path / LEGACY_DIR
    target = unique_stamped_dir(legacy_root, moment)
    try:
        legacy_root.mkdir(parents=True, exist_ok=True)
        if prev.is_dir():
            _copy_tree(prev, target)
        else:
            target.mkdir(parents=True)
            shutil.copy2(prev, target / prev.name)
    except OSError as e:
        warning = f"Unable to import previous layer from {source}: {e}"
        logger.warning(warning)
        return CopyOutcome(source=source, warning=warning)

    logger.info("Staged previous layer %s at %s", source, target)
    return CopyOutcome(source=source, target=target)
