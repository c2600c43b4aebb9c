"""cairn static site tooling.

This package orchestrates builds and content syncing for a static site:

- content_store: stash and restore the content directory through a cache mirror.
- git_sync: commit, pull and push the site repository with the content set aside.
- scheduler: debounced, serialized incremental rebuilds of the site build.
- server: preview server with live reload, driven by the scheduler.

The main entry point is the CLI module, which provides the create, build,
sync, update and restore commands.
"""

__all__ = ["__version__"]
__version__ = "0.1.0"
