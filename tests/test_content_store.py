import os
from pathlib import Path

import pytest

from cairn.content_store import ContentVersionStore
from cairn.errors import ContentStoreError

M1 = 1_600_000_000_000_000_000
M2 = 1_650_000_000_123_456_789


def make_store(tmp_path: Path) -> ContentVersionStore:
    return ContentVersionStore(
        tmp_path / "content", tmp_path / ".cairn-cache" / "content-cache"
    )


def write(path: Path, data: bytes, mtime_ns: int | None = None) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    if mtime_ns is not None:
        os.utime(path, ns=(mtime_ns, mtime_ns))


def test_stash_then_restore_keeps_bytes_and_mtimes(tmp_path):
    store = make_store(tmp_path)
    write(store.content_dir / "a.md", b"0123456789", M1)
    write(store.content_dir / "b" / "c.md", b"x" * 20, M2)

    store.stash()
    assert not store.content_dir.exists()
    assert store.has_stash
    assert (store.mirror_dir / "b" / "c.md").read_bytes() == b"x" * 20

    store.restore()
    assert not store.has_stash
    a = store.content_dir / "a.md"
    c = store.content_dir / "b" / "c.md"
    assert a.read_bytes() == b"0123456789"
    assert c.read_bytes() == b"x" * 20
    assert a.stat().st_mtime_ns == M1
    assert c.stat().st_mtime_ns == M2


def test_nested_symlinks_survive_round_trip(tmp_path):
    store = make_store(tmp_path)
    write(store.content_dir / "notes" / "real.md", b"real")
    (store.content_dir / "alias.md").symlink_to("notes/real.md")
    (store.content_dir / "dangling.md").symlink_to("missing.md")

    store.stash()
    store.restore()

    alias = store.content_dir / "alias.md"
    assert alias.is_symlink()
    assert os.readlink(alias) == "notes/real.md"
    assert alias.read_bytes() == b"real"
    assert os.readlink(store.content_dir / "dangling.md") == "missing.md"


def test_symlinked_content_dir_is_stashed_as_link(tmp_path):
    target = tmp_path / "vault"
    write(target / "index.md", b"hello")
    store = make_store(tmp_path)
    store.content_dir.symlink_to(target, target_is_directory=True)

    store.stash()
    assert store.mirror_dir.is_symlink()
    assert not os.path.lexists(store.content_dir)
    assert (target / "index.md").exists()

    store.restore()
    assert store.content_dir.is_symlink()
    assert Path(os.readlink(store.content_dir)) == target


def test_stash_discards_previous_mirror(tmp_path):
    store = make_store(tmp_path)
    write(store.mirror_dir / "stale.md", b"old")
    write(store.content_dir / "fresh.md", b"new")

    store.stash()
    assert not (store.mirror_dir / "stale.md").exists()
    assert (store.mirror_dir / "fresh.md").read_bytes() == b"new"


def test_restore_without_stash_fails(tmp_path):
    store = make_store(tmp_path)
    write(store.content_dir / "a.md", b"a")
    with pytest.raises(ContentStoreError) as excinfo:
        store.restore()
    assert excinfo.value.step == "restore"
    assert isinstance(excinfo.value, OSError)
    assert (store.content_dir / "a.md").exists()


def test_stash_missing_content_fails(tmp_path):
    store = make_store(tmp_path)
    with pytest.raises(ContentStoreError) as excinfo:
        store.stash()
    assert "does not exist" in excinfo.value.message
    assert not store.has_stash


def test_stash_copy_failure_keeps_content(monkeypatch, tmp_path):
    store = make_store(tmp_path)
    write(store.content_dir / "a.md", b"a")

    def broken_copytree(*args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr("cairn.content_store.shutil.copytree", broken_copytree)
    with pytest.raises(ContentStoreError, match="disk full"):
        store.stash()
    assert (store.content_dir / "a.md").read_bytes() == b"a"
    assert not store.has_stash


def test_detached_restores_after_exception(tmp_path):
    store = make_store(tmp_path)
    write(store.content_dir / "a.md", b"a", M1)

    with pytest.raises(RuntimeError):
        with store.detached():
            assert not store.content_dir.exists()
            raise RuntimeError("merge blew up")

    assert (store.content_dir / "a.md").read_bytes() == b"a"
    assert (store.content_dir / "a.md").stat().st_mtime_ns == M1
    assert not store.has_stash


def test_detached_restores_on_system_exit(tmp_path):
    store = make_store(tmp_path)
    write(store.content_dir / "a.md", b"a")

    with pytest.raises(SystemExit):
        with store.detached():
            raise SystemExit(1)

    assert (store.content_dir / "a.md").exists()
