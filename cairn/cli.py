"""Command-line interface for cairn.

This module defines the CLI commands using the Click framework.

Commands:
- create: Initialise the content directory of a new site.
- build: Build the site, optionally serving it with live reload.
- sync: Commit, pull and push the site repository.
- update: Pull the upstream template with the content set aside.
- restore: Put the content directory back from the cache mirror.
"""

from __future__ import annotations

import os
import shutil
from contextlib import contextmanager
from pathlib import Path

import click
import questionary

from . import __version__
from .config import CairnConfig, update_config
from .errors import CompileError, ContentStoreError, GitError

_TEMPLATES_DIR = Path(__file__).parent / "templates" / "default"

STARTER_INDEX = """---
title: Welcome to cairn
---

This is a blank cairn site. Edit the files in this folder and run
`cairn build --serve` to preview it.
"""

LINK_CHOICES = ["shortest", "absolute", "relative"]
STRATEGY_CHOICES = ["new", "copy", "symlink"]


def directory_option(func):
    return click.option(
        "-d",
        "--directory",
        default=None,
        help="Directory to look for content files (defaults to cairn.yaml content_dir)",
    )(func)


def verbose_option(func):
    return click.option(
        "-v", "--verbose", is_flag=True, help="Print out extra logging information"
    )(func)


@click.group()
@click.version_option(version=__version__, prog_name="cairn")
def cli():
    """cairn static site tooling."""


@cli.command()
@directory_option
@click.option(
    "-X",
    "--strategy",
    type=click.Choice(STRATEGY_CHOICES, case_sensitive=False),
    help="How to initialise the content directory",
)
@click.option(
    "-s", "--source", default=None, help="Directory to copy or symlink content from"
)
@click.option(
    "-l",
    "--links",
    type=click.Choice(LINK_CHOICES, case_sensitive=False),
    help="How markdown links are resolved",
)
def create(directory: str | None, strategy: str | None, source: str | None, links: str | None):
    """Initialise the content directory of a new site."""
    project_root = Path.cwd()
    config = CairnConfig.load(project_root, directory)
    content_dir = config.content_dir
    strategy = strategy.lower() if strategy else None

    if strategy and strategy != "new":
        if not source:
            raise click.ClickException(
                f"Setup strategy '{strategy}' requires a source directory (-s)"
            )
        _validate_source(Path(source))

    if not strategy:
        strategy = _ask(
            questionary.select(
                f"Choose how to initialize the content in `{content_dir}`",
                choices=[
                    questionary.Choice("Empty site", value="new"),
                    questionary.Choice("Copy an existing folder", value="copy"),
                    questionary.Choice("Symlink an existing folder", value="symlink"),
                ],
                style=_questionary_style(),
            )
        )

    gitkeep = content_dir / ".gitkeep"
    if gitkeep.exists():
        gitkeep.unlink()

    if strategy in ("copy", "symlink"):
        if not source:
            source = _escape_path(
                _ask(
                    questionary.text(
                        "Enter the full path to an existing content folder",
                        validate=_source_prompt_error,
                        style=_questionary_style(),
                    )
                )
            )
        source_path = Path(source).resolve()
        _remove_content(content_dir)
        content_dir.parent.mkdir(parents=True, exist_ok=True)
        if strategy == "copy":
            shutil.copytree(source_path, content_dir, symlinks=True)
        else:
            os.symlink(source_path, content_dir, target_is_directory=True)
    else:
        content_dir.mkdir(parents=True, exist_ok=True)
        (content_dir / "index.md").write_text(STARTER_INDEX, encoding="utf-8")

    if not links:
        links = _ask(
            questionary.select(
                "Choose how links in your content should be resolved",
                choices=LINK_CHOICES,
                default="shortest",
                style=_questionary_style(),
            )
        )
    update_config(project_root, link_resolution=links.lower())

    entry = config.build_entry
    if not entry.exists():
        shutil.copy2(_TEMPLATES_DIR / "cairn_build.py", entry)

    _ensure_gitignored(project_root, config["cache_dir"])
    _try_ensure_upstream(config)
    click.echo(
        "You're all set! Next, try:\n"
        "  - editing cairn.yaml and cairn_build.py\n"
        "  - running `cairn build --serve` to preview your site locally"
    )


@cli.command()
@directory_option
@verbose_option
@click.option("-o", "--output", default=None, help="Output folder for files")
@click.option("--serve", is_flag=True, help="Run a local server to preview the site")
@click.option("--port", type=int, default=None, help="Port to serve on (overrides cairn.yaml)")
@click.option(
    "--ws-port",
    type=int,
    default=None,
    help="Port for the live reload websocket (overrides cairn.yaml)",
)
@click.option(
    "--bundle-info", is_flag=True, help="Show detailed bundle information"
)
def build(
    directory: str | None,
    verbose: bool,
    output: str | None,
    serve: bool,
    port: int | None,
    ws_port: int | None,
    bundle_info: bool,
):
    """Build the site, optionally serving it with live reload."""
    from .scheduler import BuildScheduler

    config = CairnConfig.load(Path.cwd(), directory, output)
    if not config.content_dir.exists():
        raise click.ClickException(f"Content directory not found: {config.content_dir}")
    scheduler = BuildScheduler(config, bundle_info=bundle_info, verbose=verbose)

    try:
        if serve:
            from .server import DevServer

            DevServer(config, scheduler, http_port=port, ws_port=ws_port).start()
        else:
            scheduler.request_rebuild()
            scheduler.close()
    except CompileError as exc:
        _report_compile_error(exc, config.project_root)
        raise SystemExit(1) from None
    if not serve:
        click.echo(f"Built site into {config.output_dir}")


@cli.command()
@directory_option
@verbose_option
@click.option("--commit/--no-commit", default=True, help="Create a git commit for your unsaved changes")
@click.option("-m", "--message", default=None, help="Override the default commit message")
@click.option("--pull/--no-pull", default=True, help="Pull updates from your remote")
@click.option("--push/--no-push", default=True, help="Push updates to your remote")
def sync(
    directory: str | None,
    verbose: bool,
    commit: bool,
    message: str | None,
    pull: bool,
    push: bool,
):
    """Commit, pull and push the site repository."""
    from .git_sync import GitSyncCoordinator, SyncOptions

    coordinator = GitSyncCoordinator(CairnConfig.load(Path.cwd(), directory))
    options = SyncOptions(commit=commit, pull=pull, push=push, message=message)
    with _fatal_errors():
        session = coordinator.sync(options)
    if verbose:
        click.echo(f"Sync finished ({session.phase.value}, committed={session.committed})")


@cli.command()
@directory_option
def update(directory: str | None):
    """Pull the upstream template with the content set aside."""
    from .git_sync import GitSyncCoordinator

    coordinator = GitSyncCoordinator(CairnConfig.load(Path.cwd(), directory))
    with _fatal_errors():
        coordinator.update()


@cli.command()
@directory_option
def restore(directory: str | None):
    """Put the content directory back from the cache mirror."""
    from .git_sync import GitSyncCoordinator

    coordinator = GitSyncCoordinator(CairnConfig.load(Path.cwd(), directory))
    with _fatal_errors():
        coordinator.restore()


@contextmanager
def _fatal_errors():
    """Report git and content store failures, then exit with status 1."""
    try:
        yield
    except GitError as exc:
        click.echo(click.style("Sync failed:", fg="red", bold=True), err=True)
        click.echo(click.style(f"  Command: {exc.command}", fg="yellow"), err=True)
        click.echo(click.style(f"  Error: {exc.message}", fg="white"), err=True)
        raise SystemExit(1) from None
    except ContentStoreError as exc:
        click.echo(click.style("Content backup failed:", fg="red", bold=True), err=True)
        click.echo(click.style(f"  Path: {exc.path}", fg="yellow"), err=True)
        click.echo(click.style(f"  Error: {exc.message}", fg="white"), err=True)
        click.echo("  Inspect the content directory and the cache mirror; `cairn restore` puts the mirror back.", err=True)
        raise SystemExit(1) from None


def _report_compile_error(exc: CompileError, project_root: Path) -> None:
    try:
        rel_path = exc.source_path.relative_to(project_root)
    except ValueError:
        rel_path = exc.source_path
    location = f"{rel_path}:{exc.lineno}" if exc.lineno else str(rel_path)
    click.echo(click.style("Couldn't parse the site build:", fg="red", bold=True), err=True)
    click.echo(click.style(f"  File: {location}", fg="yellow"), err=True)
    click.echo(click.style(f"  Reason: {exc.message}", fg="white"), err=True)


def _validate_source(source: Path) -> None:
    if not source.exists():
        raise click.ClickException(f"Source directory not found: {source}")
    if not source.is_dir():
        raise click.ClickException(f"Source is not a directory: {source}")


def _source_prompt_error(value: str) -> bool | str:
    path = Path(_escape_path(value))
    if not path.exists():
        return "The given path doesn't exist"
    if not path.is_dir():
        return "The given path is not a folder"
    return True


def _escape_path(value: str) -> str:
    """Undo shell escaping of a pasted or dragged-in path."""
    value = value.replace("\\ ", " ").strip()
    for quote in ('"', "'"):
        if len(value) >= 2 and value.startswith(quote) and value.endswith(quote):
            value = value[1:-1]
    return value.strip()


def _ensure_gitignored(project_root: Path, entry: str) -> None:
    """Keep the cache directory (and the content stashed in it) out of git."""
    gitignore = project_root / ".gitignore"
    line = entry.rstrip("/") + "/"
    existing = gitignore.read_text(encoding="utf-8") if gitignore.exists() else ""
    if line in existing.splitlines():
        return
    prefix = "" if not existing or existing.endswith("\n") else "\n"
    gitignore.write_text(f"{existing}{prefix}{line}\n", encoding="utf-8")


def _remove_content(content_dir: Path) -> None:
    if content_dir.is_symlink():
        content_dir.unlink()
    elif content_dir.is_dir():
        shutil.rmtree(content_dir)


def _ask(question):
    answer = question.ask()
    if answer is None:
        raise click.Abort()
    return answer


def _try_ensure_upstream(config: CairnConfig) -> None:
    """Add the upstream remote when one is configured and missing."""
    from .git_sync import GitSyncCoordinator

    try:
        GitSyncCoordinator(config).ensure_upstream()
    except GitError as exc:
        click.echo(click.style(f"Could not add upstream remote: {exc.message}", fg="yellow"))


def _questionary_style():
    """Return consistent questionary style."""
    return questionary.Style(
        [
            ("qmark", "fg:cyan bold"),
            ("question", "bold"),
            ("answer", "fg:cyan"),
            ("pointer", "fg:cyan bold"),
            ("highlighted", "fg:cyan bold"),
            ("selected", "fg:cyan"),
        ]
    )


def main():
    """Entry point for the CLI application."""
    cli()
