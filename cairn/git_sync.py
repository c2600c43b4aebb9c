"""Commit, pull and push the site repository.

``GitSyncCoordinator`` runs the ``cairn sync`` session. Phases run in the
fixed order commit, pull, push and each can be switched off. The pull phase
and the symlink dereference in the commit phase run with the content directory
detached through ``ContentVersionStore``, so the content is back in place
before any failure reaches the caller. The push phase never touches the
content directory.

Session states::

    IDLE -> COMMITTING -> PULLING -> PUSHING -> DONE
                 \\            |           /
                  +------> FAILED <------+
"""

from __future__ import annotations

import enum
import os
import shutil
import subprocess
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import click

from .config import CairnConfig
from .content_store import ContentVersionStore
from .errors import CairnError, ContentStoreError, GitError

# Merge instead of rebase, stash tracked changes around the merge, keep our
# side on conflicts and never open an editor for the merge message.
PULL_FLAGS = (
    "--no-rebase",
    "--autostash",
    "-s",
    "recursive",
    "-X",
    "ours",
    "--no-edit",
)


class GitClient:
    """Thin wrapper over the git executable for one work tree.

    Attributes:
        cwd: Work tree the commands run in.
        runner: Callable with the ``subprocess.run`` signature.
    """

    def __init__(
        self,
        cwd: Path,
        runner: Callable[..., subprocess.CompletedProcess] | None = None,
        git_bin: str | None = None,
    ):
        self.cwd = cwd
        self.runner = runner or subprocess.run
        self.git_bin = git_bin

    def run(
        self, *args: str, capture: bool = False, check: bool = True
    ) -> subprocess.CompletedProcess:
        git = self.git_bin or shutil.which("git")
        if not git:
            raise GitError(args, "git executable not found on PATH")
        try:
            result = self.runner(
                [git, *args], cwd=self.cwd, capture_output=capture, text=True
            )
        except OSError as exc:
            raise GitError(args, f"could not run git: {exc}") from exc
        if check and result.returncode != 0:
            raise GitError(
                args,
                f"git {args[0]} exited with status {result.returncode}",
                result.returncode,
            )
        return result

    def add_all(self) -> None:
        self.run("add", ".")

    def commit(self, message: str) -> bool:
        """Commit staged changes; returns False when git refused (e.g. nothing to commit)."""
        return self.run("commit", "-m", message, check=False).returncode == 0

    def pull(self, remote: str, branch: str) -> None:
        self.run("pull", *PULL_FLAGS, remote, branch)

    def push(self, remote: str, branch: str) -> None:
        self.run("push", "-u", "-f", remote, branch)

    def current_branch(self) -> str:
        result = self.run("rev-parse", "--abbrev-ref", "HEAD", capture=True)
        return result.stdout.strip()

    def has_remote(self, name: str) -> bool:
        result = self.run("remote", "get-url", name, capture=True, check=False)
        return result.returncode == 0

    def add_remote(self, name: str, url: str) -> None:
        self.run("remote", "add", name, url)


class SyncPhase(enum.Enum):
    IDLE = "idle"
    COMMITTING = "committing"
    PULLING = "pulling"
    PUSHING = "pushing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class SyncOptions:
    """Which phases a sync session runs.

    Attributes:
        commit: Stage and commit all changes first.
        pull: Merge the remote branch into the work tree.
        push: Force-push the current branch to the remote.
        message: Commit message; a timestamped default is used when None.
    """

    commit: bool = True
    pull: bool = True
    push: bool = True
    message: str | None = None


@dataclass
class SyncSession:
    options: SyncOptions
    was_symlink: bool = False
    phase: SyncPhase = SyncPhase.IDLE
    committed: bool = False
    error: CairnError | None = None


def default_commit_message(now: datetime | None = None) -> str:
    now = now or datetime.now()
    return f"Site sync: {now.strftime('%c')}"


class GitSyncCoordinator:
    """Run commit/pull/push against the project's git remote.

    Attributes:
        config: Resolved project configuration.
        git: Git client bound to the project root.
        store: Content store guarding the content directory.
        session: The most recent sync session, including failed ones.
    """

    def __init__(
        self,
        config: CairnConfig,
        git: GitClient | None = None,
        store: ContentVersionStore | None = None,
        echo: Callable[..., None] = click.echo,
    ):
        self.config = config
        self.git = git or GitClient(config.project_root)
        self.store = store or ContentVersionStore(
            config.content_dir, config.content_cache
        )
        self.echo = echo
        self.session: SyncSession | None = None

    def sync(self, options: SyncOptions) -> SyncSession:
        """Run the enabled phases in order.

        Raises:
            CairnError: The first fatal failure; the content directory has
                already been restored when this propagates.
        """
        session = SyncSession(options, was_symlink=self.store.is_symlink())
        self.session = session
        remote = self.config["origin"]
        try:
            if options.commit:
                session.phase = SyncPhase.COMMITTING
                session.committed = self.commit(options.message)
            if options.pull:
                session.phase = SyncPhase.PULLING
                self.pull(remote, self.config["source_branch"])
            if options.push:
                session.phase = SyncPhase.PUSHING
                self.push(remote)
        except CairnError as exc:
            session.phase = SyncPhase.FAILED
            session.error = exc
            raise
        session.phase = SyncPhase.DONE
        self.echo(click.style("Done!", fg="green"))
        return session

    def commit(self, message: str | None = None) -> bool:
        """Stage everything and commit, dereferencing a symlinked content directory."""
        message = message or default_commit_message()
        if not self.store.is_symlink():
            return self._commit(message)

        target = self._link_target()
        self.echo(
            click.style(
                "Detected symlink, trying to dereference before committing",
                fg="yellow",
            )
        )
        with self.store.detached():
            try:
                shutil.copytree(target, self.store.content_dir, symlinks=True)
            except OSError as exc:
                raise ContentStoreError("dereference", target, str(exc)) from exc
            return self._commit(message)

    def pull(self, remote: str, branch: str) -> None:
        self.echo("Backing up your content")
        try:
            with self.store.detached():
                self.echo(f"Pulling updates from {remote}/{branch}...")
                self.git.pull(remote, branch)
        except GitError:
            self.echo(
                click.style(
                    "An error occurred above while pulling updates.", fg="red"
                ),
                err=True,
            )
            raise

    def push(self, remote: str) -> None:
        branch = self.git.current_branch()
        self.echo(f"Pushing your changes to {remote}/{branch}")
        self.git.push(remote, branch)

    def update(self) -> None:
        """Pull the upstream template branch with the content detached."""
        upstream = self.config["upstream"]
        self.ensure_upstream()
        self.pull(upstream, self.config["source_branch"])
        self.echo(click.style("Done!", fg="green"))

    def ensure_upstream(self) -> None:
        upstream = self.config["upstream"]
        url = self.config["upstream_url"]
        if url and not self.git.has_remote(upstream):
            self.git.add_remote(upstream, url)

    def restore(self) -> None:
        self.echo(f"Restoring content from {self.store.mirror_dir}")
        self.store.restore()
        self.echo(click.style("Done!", fg="green"))

    def _commit(self, message: str) -> bool:
        self.git.add_all()
        committed = self.git.commit(message)
        if not committed:
            self.echo(click.style("Nothing to commit", fg="yellow"))
        return committed

    def _link_target(self) -> Path:
        content = self.store.content_dir
        target = Path(os.readlink(content))
        if not target.is_absolute():
            target = content.parent / target
        return target
