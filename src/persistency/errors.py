"""Exception hierarchy shared by the engine and its collaborators.

The engine never deals in exit codes; ``persistency.cli`` maps these types
onto process exit codes.
"""

from __future__ import annotations

from collections.abc import Sequence


class PersistencyError(Exception):
    """Base error for the persistency layer tooling."""


class PreconditionError(PersistencyError):
    """A fatal condition detected before anything was written."""


class NotARepositoryError(PreconditionError):
    """The project path is not inside a Git working tree."""


class InvalidArgumentsError(PreconditionError):
    """A required parameter is missing or has an unsupported value."""


class LayerMissingError(InvalidArgumentsError):
    """Strict mode requires an existing layer but none was found."""


class AgentMissingError(PreconditionError):
    """The agent CLI could not be located (or installed)."""


class AuthMissingError(PreconditionError):
    """The agent CLI has no credentials configured."""


class TemplateError(PersistencyError):
    """A document skeleton and its value mapping do not match."""


class ReconcileError(PersistencyError):
    """A non best-effort stage failed; remaining stages were not run."""

    def __init__(self, stage: str, message: str) -> None:
        self.stage = stage
        super().__init__(f"{stage} failed: {message}")


class GitCommandError(PersistencyError):
    """Raised when a git subprocess command exits non-zero."""

    def __init__(
        self,
        *,
        command: Sequence[str],
        returncode: int,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        self.command = tuple(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        message = f"git command failed ({returncode}): {' '.join(command)}"
        if stderr.strip():
            message = f"{message}: {stderr.strip()}"
        super().__init__(message)
