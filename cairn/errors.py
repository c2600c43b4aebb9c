"""Error types shared by the cairn build and sync tooling.

Every fatal condition in cairn is raised as one of these exceptions and turned
into a process exit by the CLI. Nothing here is retried automatically.
"""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path


class CairnError(Exception):
    """Base class for cairn failures that should be shown to the user."""


class ContentStoreError(CairnError, OSError):
    """A stash or restore step failed.

    The content directory and the cache mirror may now be in an indeterminate
    state; the message names the step and the path involved so a human can
    inspect both.

    Attributes:
        step: Either ``"stash"`` or ``"restore"``.
        path: Path that was being manipulated when the step failed.
        message: Human-readable error message.
    """

    def __init__(self, step: str, path: Path, message: str):
        self.step = step
        self.path = path
        self.message = message
        super().__init__(f"{step} failed for {path}: {message}")


class GitError(CairnError):
    """A git subcommand exited non-zero or could not be started.

    Attributes:
        args: Argument vector passed to git (without the executable).
        returncode: Exit status, or None when git never ran.
        message: Human-readable error message.
    """

    def __init__(
        self,
        args: Sequence[str],
        message: str,
        returncode: int | None = None,
    ):
        self.args_list = list(args)
        self.returncode = returncode
        self.message = message
        super().__init__(message)

    @property
    def command(self) -> str:
        return " ".join(["git", *self.args_list])


class CompileError(CairnError):
    """Compiling the site build sources failed.

    Attributes:
        source_path: Path to the source file that caused the error.
        message: Human-readable error message.
        lineno: Line in ``source_path`` where the error was found, if known.
        original_error: The original exception that was caught.
    """

    def __init__(
        self,
        source_path: Path,
        message: str,
        lineno: int | None = None,
        original_error: Exception | None = None,
    ):
        self.source_path = source_path
        self.message = message
        self.lineno = lineno
        self.original_error = original_error
        location = f"{source_path}:{lineno}" if lineno else str(source_path)
        super().__init__(f"{location}: {message}")
