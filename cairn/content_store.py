"""Reversible relocation of the content directory.

Some operations must never see the user's content: a git pull that merges
upstream changes into the work tree, or a dereference of a symlinked content
directory before committing. ``ContentVersionStore`` moves the content
directory into a single-slot cache mirror and back again.

The mirror holds a full copy of the content directory if and only if the
content directory is currently absent. Stashing into an occupied slot discards
the old mirror first.

Each copy is written to a staging path and renamed into place, so a failure
while copying never destroys the only copy of the content. The sequence is
still not crash-atomic: a crash after the rename but before the source is
removed leaves both populated, and ``cairn restore`` is the manual recovery.
"""

from __future__ import annotations

import os
import shutil
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from .errors import ContentStoreError


class ContentVersionStore:
    """Stash and restore a content directory through a cache mirror.

    Attributes:
        content_dir: The user-owned content directory (may be a symlink).
        mirror_dir: The single-slot holding area.
    """

    def __init__(self, content_dir: Path, mirror_dir: Path):
        self.content_dir = content_dir
        self.mirror_dir = mirror_dir

    @property
    def has_stash(self) -> bool:
        return os.path.lexists(self.mirror_dir)

    @property
    def is_present(self) -> bool:
        return os.path.lexists(self.content_dir)

    def is_symlink(self) -> bool:
        return self.content_dir.is_symlink()

    def stash(self) -> None:
        """Move the content directory into the cache mirror.

        Raises:
            ContentStoreError: If the content directory is missing or any
                filesystem step fails.
        """
        if not self.is_present:
            raise ContentStoreError(
                "stash", self.content_dir, "content directory does not exist"
            )
        staging = _staging_path(self.mirror_dir)
        try:
            _remove(staging)
            self.mirror_dir.parent.mkdir(parents=True, exist_ok=True)
            _copy(self.content_dir, staging)
            _remove(self.mirror_dir)
            os.replace(staging, self.mirror_dir)
            _remove(self.content_dir)
        except OSError as exc:
            raise ContentStoreError("stash", self.content_dir, str(exc)) from exc

    def restore(self) -> None:
        """Move the cache mirror back into the content directory.

        Raises:
            ContentStoreError: If the mirror is empty or any filesystem step
                fails.
        """
        if not self.has_stash:
            raise ContentStoreError(
                "restore", self.mirror_dir, "nothing to restore, the cache mirror is empty"
            )
        staging = _staging_path(self.content_dir)
        try:
            _remove(staging)
            self.content_dir.parent.mkdir(parents=True, exist_ok=True)
            _copy(self.mirror_dir, staging)
            _remove(self.content_dir)
            os.replace(staging, self.content_dir)
            _remove(self.mirror_dir)
        except OSError as exc:
            raise ContentStoreError("restore", self.content_dir, str(exc)) from exc

    @contextmanager
    def detached(self) -> Iterator[ContentVersionStore]:
        """Keep the content directory absent for the duration of the block.

        The content is restored on every exit path, including exceptions and
        ``SystemExit`` raised inside the block.
        """
        self.stash()
        try:
            yield self
        finally:
            self.restore()


def _staging_path(path: Path) -> Path:
    return path.with_name(f".{path.name}.cairn-staging")


def _copy(source: Path, dest: Path) -> None:
    """Copy a tree keeping symlinks as links and file timestamps intact."""
    if source.is_symlink():
        os.symlink(os.readlink(source), dest)
        shutil.copystat(source, dest, follow_symlinks=False)
        return
    if source.is_dir():
        shutil.copytree(source, dest, symlinks=True)
    else:
        shutil.copy2(source, dest)


def _remove(path: Path) -> None:
    """Force-remove a file, symlink or tree; missing paths are ignored."""
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.is_dir():
        shutil.rmtree(path)
