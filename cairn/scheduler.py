"""Debounced, serialized rebuilds of the site build.

``BuildScheduler`` owns the incremental compile context for the process.
File-change notifications call ``request_rebuild`` from any thread:

- every call records a new logical timestamp before waiting on the rebuild
  lock;
- once it holds the lock, a call whose timestamp has been overtaken by a newer
  request returns without compiling, so a burst queued behind an in-flight
  build collapses into a single follow-up build;
- the lock is released as soon as the compile succeeds, letting the next
  request compile while this result is loaded and run;
- a result that a newer request has overtaken by the time it finishes loading
  is disposed instead of published; the newer request publishes instead.

A ``CompileError`` propagates to the caller, which terminates the process.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import click

from .artifact import LoadedArtifact, load_artifact
from .compiler import BundleCompiler, CompiledBundle
from .config import CairnConfig


class IncrementalCompiler(Protocol):
    def rebuild(self) -> CompiledBundle: ...

    def dispose(self) -> None: ...


@dataclass
class BuildContext:
    """Passed to the build entry point of the loaded bundle.

    Attributes:
        project_root: Root directory of the project.
        content_dir: Content directory to read from.
        output_dir: Directory the build writes into.
        notify_clients: Signals preview clients that new output is ready.
        rebuild_lock: The scheduler's rebuild lock, for builds that watch
            content on their own and must not overlap a compile.
        verbose: Whether extra output was requested.
    """

    project_root: Path
    content_dir: Path
    output_dir: Path
    notify_clients: Callable[[], None]
    rebuild_lock: threading.Lock
    verbose: bool = False


def _noop() -> None:
    return None


def format_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "kB", "MB"):
        if value < 1000 or unit == "MB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1000
    return f"{value:.1f} MB"


class BuildScheduler:
    """Serialize and debounce rebuild requests.

    Attributes:
        config: Resolved project configuration.
        compiler: Incremental compile context kept for the process lifetime.
        compile_count: Number of compiles that succeeded.
    """

    def __init__(
        self,
        config: CairnConfig,
        compiler: IncrementalCompiler | None = None,
        loader: Callable[[CompiledBundle], LoadedArtifact] = load_artifact,
        bundle_info: bool = False,
        verbose: bool = False,
        echo: Callable[..., None] = click.echo,
    ):
        self.config = config
        self.compiler = compiler or BundleCompiler(
            config.build_entry, config.build_sources, config.bundle_path
        )
        self.loader = loader
        self.bundle_info = bundle_info
        self.verbose = verbose
        self.echo = echo
        self.compile_count = 0

        self._rebuild_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._clock = 0
        self._last_requested = 0
        self._published = 0
        self._artifact: LoadedArtifact | None = None
        self._cleanup: Callable[[], Any] | None = None

    @property
    def last_requested(self) -> int:
        return self._last_requested

    @property
    def artifact(self) -> LoadedArtifact | None:
        return self._artifact

    def request_rebuild(self, notify_clients: Callable[[], None] = _noop) -> bool:
        """Compile, load and run the build unless a newer request supersedes this one.

        Returns:
            True if this call produced and published a build.

        Raises:
            CompileError: If the build sources fail to compile or load.
        """
        ticket = self._tick()
        started = time.perf_counter()

        with self._rebuild_lock:
            if self._last_requested > ticket:
                return False
            self._dispose_current()
            bundle = self.compiler.rebuild()
            self.compile_count += 1
            generation = self.compile_count

        if self.bundle_info:
            self.echo(
                f"Successfully transpiled {bundle.input_count} files "
                f"({format_size(bundle.size)})"
            )

        artifact = self.loader(bundle)
        cleanup = artifact.run(self._context(notify_clients))
        if not self._publish(ticket, generation, artifact, cleanup):
            return False

        if self.verbose:
            elapsed = (time.perf_counter() - started) * 1000
            self.echo(click.style(f"Done rebuilding in {elapsed:.0f}ms", fg="green"))
        notify_clients()
        return True

    def close(self) -> None:
        """Run the current cleanup hook and drop the compile context."""
        with self._rebuild_lock:
            self._dispose_current(announce=False)
            self.compiler.dispose()

    def _tick(self) -> int:
        with self._state_lock:
            self._clock += 1
            self._last_requested = self._clock
            return self._clock

    def _context(self, notify_clients: Callable[[], None]) -> BuildContext:
        return BuildContext(
            project_root=self.config.project_root,
            content_dir=self.config.content_dir,
            output_dir=self.config.output_dir,
            notify_clients=notify_clients,
            rebuild_lock=self._rebuild_lock,
            verbose=self.verbose,
        )

    def _publish(
        self,
        ticket: int,
        generation: int,
        artifact: LoadedArtifact,
        cleanup: Callable[[], Any] | None,
    ) -> bool:
        with self._state_lock:
            superseded = generation < self._published or self._last_requested > ticket
            if superseded:
                previous_artifact, previous_cleanup = artifact, cleanup
            else:
                previous_artifact, previous_cleanup = self._artifact, self._cleanup
                self._artifact, self._cleanup = artifact, cleanup
                self._published = generation
        # A build that finished loading after the current one was disposed.
        if previous_cleanup is not None:
            previous_cleanup()
        if previous_artifact is not None and previous_artifact is not self._artifact:
            previous_artifact.unload()
        return not superseded

    def _dispose_current(self, announce: bool = True) -> None:
        with self._state_lock:
            artifact, cleanup = self._artifact, self._cleanup
            self._artifact, self._cleanup = None, None
        if cleanup is not None:
            cleanup()
            if announce:
                self.echo(
                    click.style(
                        "Detected a source code change, doing a hard rebuild...",
                        fg="yellow",
                    )
                )
        if artifact is not None:
            artifact.unload()
