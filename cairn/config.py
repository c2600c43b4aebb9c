"""Project configuration for cairn.

Configuration is read from ``cairn.yaml`` in the project root and merged over
``DEFAULT_CONFIG``. ``CairnConfig`` resolves the fixed filesystem layout
(content directory, cache mirror, compiled bundle) from those values.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

CONFIG_FILENAME = "cairn.yaml"
CONTENT_CACHE_NAME = "content-cache"
BUNDLE_NAME = "transpiled-build.py"

DEFAULT_CONFIG: dict[str, Any] = {
    "content_dir": "content",
    "cache_dir": ".cairn-cache",
    "output_dir": "public",
    "port": 8080,
    "ws_port": 3001,
    "origin": "origin",
    "upstream": "upstream",
    "upstream_url": "",
    "source_branch": "main",
    "build_entry": "cairn_build.py",
    "build_sources": ["plugins"],
    "link_resolution": "shortest",
}


def load_config(project_root: Path) -> dict[str, Any]:
    """Load project configuration from cairn.yaml.

    Args:
        project_root: Root directory of the project.

    Returns:
        Dictionary containing configuration values, with defaults applied.
    """
    config_path = project_root / CONFIG_FILENAME
    config = DEFAULT_CONFIG.copy()
    if config_path.exists():
        with open(config_path, encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
            if isinstance(loaded, dict):
                config.update(loaded)
    return config


def update_config(project_root: Path, **values: Any) -> None:
    """Write ``values`` into cairn.yaml, keeping any keys already present."""
    config_path = project_root / CONFIG_FILENAME
    current: dict[str, Any] = {}
    if config_path.exists():
        with open(config_path, encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
        if isinstance(loaded, dict):
            current = loaded
    current.update(values)
    with open(config_path, "w", encoding="utf-8") as f:
        yaml.safe_dump(current, f, sort_keys=False)


def resolve_content_path(project_root: Path, directory: str | Path) -> Path:
    """Resolve a ``--directory`` value against the project root."""
    path = Path(directory)
    if path.is_absolute():
        return path
    return project_root / path


@dataclass
class CairnConfig:
    """Resolved paths and settings for one project.

    Attributes:
        project_root: Root directory of the project (the git work tree).
        values: Raw configuration mapping after defaults were applied.
        content_dir: The user-owned content directory.
        output_dir: Where the site build writes its output.
    """

    project_root: Path
    values: dict[str, Any] = field(default_factory=dict)
    content_dir: Path | None = None
    output_dir: Path | None = None

    @classmethod
    def load(
        cls,
        project_root: Path,
        directory: str | None = None,
        output: str | None = None,
    ) -> CairnConfig:
        values = load_config(project_root)
        content = resolve_content_path(
            project_root, directory or values["content_dir"]
        )
        out = resolve_content_path(project_root, output or values["output_dir"])
        return cls(project_root, values, content, out)

    @property
    def cache_dir(self) -> Path:
        return self.project_root / self.values["cache_dir"]

    @property
    def content_cache(self) -> Path:
        return self.cache_dir / CONTENT_CACHE_NAME

    @property
    def bundle_path(self) -> Path:
        return self.cache_dir / BUNDLE_NAME

    @property
    def build_entry(self) -> Path:
        return self.project_root / self.values["build_entry"]

    @property
    def build_sources(self) -> list[Path]:
        sources = self.values.get("build_sources") or []
        if isinstance(sources, str):
            sources = [sources]
        return [self.project_root / s for s in sources]

    def __getitem__(self, key: str) -> Any:
        return self.values[key]
