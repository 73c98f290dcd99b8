"""Read-only Git inspection used for truth-branch and freshness facts."""

from __future__ import annotations

import logging
import os
import subprocess
from collections import Counter
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from persistency.errors import GitCommandError, NotARepositoryError

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger(__name__)


@runtime_checkable
class VersionControl(Protocol):
    """What the reconciliation engine needs to know about the repository."""

    def current_branch(self) -> str: ...

    def resolve_truth_branch(self, preferred: str | None = None) -> str: ...

    def commit_distance(self, truth_branch: str) -> int: ...

    def commit_for(self, ref: str) -> str: ...

    def list_tree(self, ref: str, recursive: bool = False) -> list[str]: ...


@dataclass
class CommandResult:
    command: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str


class GitInspector:
    """Subprocess wrapper around the ``git`` CLI for one working tree."""

    def __init__(self, repo_path: Path, timeout: int = 30) -> None:
        self.repo_path = repo_path
        self.timeout = timeout

    @classmethod
    def open(cls, repo_path: Path) -> GitInspector:
        """Return an inspector, raising NotARepositoryError outside a work tree."""
        inspector = cls(repo_path)
        if not inspector.is_repository():
            raise NotARepositoryError(f"Directory {repo_path} is not a Git repository.")
        return inspector

    def is_repository(self) -> bool:
        if not self.repo_path.is_dir():
            return False
        try:
            result = self._run_git(["rev-parse", "--is-inside-work-tree"], check=False)
        except FileNotFoundError:
            logger.error("git executable not found on PATH")
            return False
        return result.returncode == 0 and result.stdout.strip() == "true"

    def has_commits(self) -> bool:
        return self._run_git(["rev-parse", "--verify", "--quiet", "HEAD"], check=False).returncode == 0

    def current_branch(self) -> str:
        branch = self._run_git(["branch", "--show-current"], check=False).stdout.strip()
        return branch or "HEAD"

    def branch_exists(self, branch: str) -> bool:
        ref = f"refs/heads/{branch}"
        return self._run_git(["show-ref", "--verify", "--quiet", ref], check=False).returncode == 0

    def resolve_truth_branch(self, preferred: str | None = None) -> str:
        """Use ``preferred`` when it exists locally, else the current branch."""
        if preferred:
            if self.branch_exists(preferred):
                return preferred
            logger.warning(
                "Branch '%s' not found locally, falling back to the current branch", preferred
            )
        return self.current_branch()

    def commit_distance(self, truth_branch: str) -> int:
        """Number of commits on HEAD that are not on ``truth_branch``."""
        if not self.has_commits():
            return 0
        try:
            raw = self._run_git(["rev-list", "--count", f"{truth_branch}..HEAD"]).stdout
        except GitCommandError:
            if truth_branch == "HEAD":
                return 0
            raise
        try:
            return int(raw.strip())
        except ValueError:
            return 0

    def commit_for(self, ref: str) -> str:
        """Full hash of ``ref``, or an empty string in a repository without commits."""
        if not self.has_commits():
            return ""
        return self._run_git(["rev-parse", ref]).stdout.strip()

    def list_tree(self, ref: str, recursive: bool = False) -> list[str]:
        if not self.has_commits():
            return []
        args = ["ls-tree", "--name-only"]
        if recursive:
            args.append("-r")
        args.append(ref)
        return [line for line in self._run_git(args).stdout.splitlines() if line]

    def _run_git(self, args: Sequence[str], *, check: bool = True) -> CommandResult:
        command = ("git", *args)
        env = os.environ.copy()
        env["GIT_TERMINAL_PROMPT"] = "0"

        completed = subprocess.run(
            command,
            cwd=self.repo_path,
            env=env,
            text=True,
            capture_output=True,
            timeout=self.timeout,
            check=False,
        )
        result = CommandResult(
            command=command,
            returncode=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
        )
        if check and result.returncode != 0:
            raise GitCommandError(
                command=result.command,
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return result


def extension_histogram(paths: list[str], limit: int = 30) -> list[tuple[str, int]]:
    """Count file extensions, most common first; files without one count as ``<none>``."""
    counts: Counter[str] = Counter()
    for path in paths:
        suffix = PurePosixPath(path).suffix
        counts[suffix[1:] if suffix else "<none>"] += 1
    return sorted(counts.items(), key=lambda item: (-item[1], item[0]))[:limit]
