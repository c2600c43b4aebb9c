import os
import subprocess
from pathlib import Path

import yaml
from click.testing import CliRunner

from cairn.cli import _escape_path, cli

BUILD_ENTRY = """from pathlib import Path


def build(context):
    out = Path(context.output_dir)
    out.mkdir(parents=True, exist_ok=True)
    names = sorted(p.name for p in Path(context.content_dir).rglob("*.md"))
    (out / "index.html").write_text(",".join(names), encoding="utf-8")
"""


def make_project(tmp_path: Path) -> Path:
    (tmp_path / "content").mkdir()
    (tmp_path / "content" / "index.md").write_text("# Home\n", encoding="utf-8")
    (tmp_path / "cairn_build.py").write_text(BUILD_ENTRY, encoding="utf-8")
    return tmp_path


def fake_git(status):
    calls = []

    def run(cmd, cwd=None, capture_output=False, text=False):
        args = list(cmd[1:])
        calls.append(args)
        stdout = "main\n" if args[0] == "rev-parse" else ""
        return subprocess.CompletedProcess(cmd, status(args), stdout=stdout, stderr="")

    run.calls = calls
    return run


def test_create_new_writes_starter_files(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "content").mkdir()
    (tmp_path / "content" / ".gitkeep").write_text("", encoding="utf-8")

    result = CliRunner().invoke(cli, ["create", "-X", "new", "-l", "absolute"])
    assert result.exit_code == 0, result.output
    assert (tmp_path / "content" / "index.md").exists()
    assert not (tmp_path / "content" / ".gitkeep").exists()
    assert (tmp_path / "cairn_build.py").exists()
    config = yaml.safe_load((tmp_path / "cairn.yaml").read_text(encoding="utf-8"))
    assert config["link_resolution"] == "absolute"
    assert ".cairn-cache/" in (tmp_path / ".gitignore").read_text(encoding="utf-8").splitlines()


def test_create_copy_preserves_timestamps(monkeypatch, tmp_path):
    source = tmp_path / "vault"
    source.mkdir()
    note = source / "note.md"
    note.write_text("hi", encoding="utf-8")
    os.utime(note, ns=(1_600_000_000_000_000_000, 1_600_000_000_000_000_000))
    project = tmp_path / "site"
    (project / "content").mkdir(parents=True)
    monkeypatch.chdir(project)

    result = CliRunner().invoke(
        cli, ["create", "-X", "copy", "-s", str(source), "-l", "shortest"]
    )
    assert result.exit_code == 0, result.output
    copied = project / "content" / "note.md"
    assert not (project / "content").is_symlink()
    assert copied.stat().st_mtime_ns == 1_600_000_000_000_000_000


def test_create_symlink(monkeypatch, tmp_path):
    source = tmp_path / "vault"
    source.mkdir()
    project = tmp_path / "site"
    project.mkdir()
    monkeypatch.chdir(project)

    result = CliRunner().invoke(
        cli, ["create", "-X", "symlink", "-s", str(source), "-l", "shortest"]
    )
    assert result.exit_code == 0, result.output
    assert (project / "content").is_symlink()
    assert Path(os.readlink(project / "content")) == source.resolve()


def test_create_rejects_bad_sources(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()

    result = runner.invoke(cli, ["create", "-X", "copy", "-l", "shortest"])
    assert result.exit_code == 1
    assert "requires a source directory" in result.output

    result = runner.invoke(
        cli, ["create", "-X", "copy", "-s", str(tmp_path / "nope"), "-l", "shortest"]
    )
    assert result.exit_code == 1
    assert "not found" in result.output

    (tmp_path / "file.md").write_text("x", encoding="utf-8")
    result = runner.invoke(
        cli, ["create", "-X", "symlink", "-s", str(tmp_path / "file.md"), "-l", "shortest"]
    )
    assert result.exit_code == 1
    assert "not a directory" in result.output


def test_build_runs_entry_point(monkeypatch, tmp_path):
    project = make_project(tmp_path)
    monkeypatch.chdir(project)

    result = CliRunner().invoke(cli, ["build", "--bundle-info"])
    assert result.exit_code == 0, result.output
    assert "Successfully transpiled 1 files" in result.output
    assert (project / "public" / "index.html").read_text(encoding="utf-8") == "index.md"
    assert (project / ".cairn-cache" / "transpiled-build.py.map").exists()


def test_build_output_override(monkeypatch, tmp_path):
    project = make_project(tmp_path)
    monkeypatch.chdir(project)

    result = CliRunner().invoke(cli, ["build", "-o", "dist"])
    assert result.exit_code == 0, result.output
    assert (project / "dist" / "index.html").exists()


def test_build_compile_error_exits_1(monkeypatch, tmp_path):
    project = make_project(tmp_path)
    (project / "plugins").mkdir()
    (project / "plugins" / "broken.py").write_text("def oops(:\n", encoding="utf-8")
    monkeypatch.chdir(project)

    result = CliRunner().invoke(cli, ["build"])
    assert result.exit_code == 1
    assert "Couldn't parse the site build" in result.output
    assert "plugins/broken.py:1" in result.output


def test_build_undecodable_source_exits_1(monkeypatch, tmp_path):
    project = make_project(tmp_path)
    (project / "plugins").mkdir()
    (project / "plugins" / "latin.py").write_bytes(b"NAME = '\xff'\n")
    monkeypatch.chdir(project)

    result = CliRunner().invoke(cli, ["build"])
    assert result.exit_code == 1
    assert "Couldn't parse the site build" in result.output
    assert "plugins/latin.py" in result.output
    assert "Could not read build source" in result.output


def test_build_missing_content_exits_1(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    result = CliRunner().invoke(cli, ["build"])
    assert result.exit_code == 1
    assert "Content directory not found" in result.output


def test_build_serve_uses_dev_server(monkeypatch, tmp_path):
    project = make_project(tmp_path)
    monkeypatch.chdir(project)
    called = {}

    class DummyServer:
        def __init__(self, config, scheduler, http_port=None, ws_port=None):
            called["port"] = http_port
            called["ws_port"] = ws_port
            called["scheduler"] = scheduler

        def start(self):
            called["started"] = True

    monkeypatch.setattr("cairn.server.DevServer", DummyServer)
    result = CliRunner().invoke(
        cli, ["build", "--serve", "--port", "5050", "--ws-port", "5051"]
    )
    assert result.exit_code == 0, result.output
    assert called["port"] == 5050
    assert called["ws_port"] == 5051
    assert called["started"]


def test_sync_failed_pull_exits_1_and_restores(monkeypatch, tmp_path):
    project = make_project(tmp_path)
    monkeypatch.chdir(project)
    runner = fake_git(lambda args: 1 if args[0] == "pull" else 0)
    monkeypatch.setattr("cairn.git_sync.subprocess.run", runner)
    monkeypatch.setattr("cairn.git_sync.shutil.which", lambda name: "/usr/bin/git")

    result = CliRunner().invoke(cli, ["sync", "-m", "notes"])
    assert result.exit_code == 1
    assert "Sync failed" in result.output
    assert (project / "content" / "index.md").read_text(encoding="utf-8") == "# Home\n"
    assert not (project / ".cairn-cache" / "content-cache").exists()
    assert [call[0] for call in runner.calls] == ["add", "commit", "pull"]


def test_sync_failed_push_exits_1(monkeypatch, tmp_path):
    project = make_project(tmp_path)
    monkeypatch.chdir(project)
    runner = fake_git(lambda args: 2 if args[0] == "push" else 0)
    monkeypatch.setattr("cairn.git_sync.subprocess.run", runner)
    monkeypatch.setattr("cairn.git_sync.shutil.which", lambda name: "/usr/bin/git")

    result = CliRunner().invoke(cli, ["sync", "--no-commit", "--no-pull"])
    assert result.exit_code == 1
    assert "git push -u -f origin main" in result.output
    assert "Done!" not in result.output


def test_sync_success(monkeypatch, tmp_path):
    project = make_project(tmp_path)
    monkeypatch.chdir(project)
    runner = fake_git(lambda args: 0)
    monkeypatch.setattr("cairn.git_sync.subprocess.run", runner)
    monkeypatch.setattr("cairn.git_sync.shutil.which", lambda name: "/usr/bin/git")

    result = CliRunner().invoke(cli, ["sync", "-v"])
    assert result.exit_code == 0, result.output
    assert "Done!" in result.output
    assert "Sync finished (done" in result.output


def test_restore_without_stash_exits_1(monkeypatch, tmp_path):
    make_project(tmp_path)
    monkeypatch.chdir(tmp_path)
    result = CliRunner().invoke(cli, ["restore"])
    assert result.exit_code == 1
    assert "nothing to restore" in result.output


def test_restore_after_interrupted_stash(monkeypatch, tmp_path):
    project = make_project(tmp_path)
    monkeypatch.chdir(project)
    mirror = project / ".cairn-cache" / "content-cache"
    mirror.parent.mkdir()
    (project / "content").rename(mirror)

    result = CliRunner().invoke(cli, ["restore"])
    assert result.exit_code == 0, result.output
    assert (project / "content" / "index.md").exists()
    assert not mirror.exists()


def test_escape_path():
    assert _escape_path("/Users/me/My\\ Notes ") == "/Users/me/My Notes"
    assert _escape_path("'/tmp/vault'") == "/tmp/vault"
    assert _escape_path('"/tmp/vault"') == "/tmp/vault"


def test_version_option():
    result = CliRunner().invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert "cairn" in result.output


def test_module_main_entrypoint():
    from cairn.__main__ import main

    assert callable(main)
