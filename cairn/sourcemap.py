"""Map locations in the compiled build bundle back to the original sources.

The bundle is loaded through a reference carrying a cache-busting query
(``transpiled-build.py?update=<token>``). The companion map is found by
stripping the query and appending ``.map``.
"""

from __future__ import annotations

import json
import traceback
from dataclasses import asdict, dataclass, field
from pathlib import Path

MAP_SUFFIX = ".map"


@dataclass
class SourceSpan:
    """One original file inside the bundle.

    Attributes:
        path: Original source file.
        start: First bundle line (1-based) holding this file's line 1.
        lines: Number of lines contributed.
    """

    path: str
    start: int
    lines: int


@dataclass
class SourceMap:
    file: str
    sources: list[SourceSpan] = field(default_factory=list)

    def lookup(self, bundle_line: int) -> tuple[Path, int] | None:
        """Return the original ``(path, line)`` for a bundle line, if mapped."""
        for span in self.sources:
            if span.start <= bundle_line < span.start + span.lines:
                return Path(span.path), bundle_line - span.start + 1
        return None

    def write(self, path: Path) -> None:
        payload = {"version": 1, "file": self.file, "sources": [asdict(s) for s in self.sources]}
        path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")

    @classmethod
    def read(cls, path: Path) -> SourceMap:
        payload = json.loads(path.read_text(encoding="utf-8"))
        spans = [SourceSpan(**item) for item in payload.get("sources", [])]
        return cls(file=payload.get("file", ""), sources=spans)


def strip_load_suffix(reference: str) -> str:
    return reference.split("?", 1)[0]


def map_path_for(reference: str) -> Path:
    return Path(strip_load_suffix(reference) + MAP_SUFFIX)


def original_location(reference: str, bundle_line: int) -> tuple[Path, int] | None:
    """Resolve a bundle line through the map next to ``reference``."""
    map_path = map_path_for(reference)
    if not map_path.exists():
        return None
    return SourceMap.read(map_path).lookup(bundle_line)


def locate_exception(
    exc: BaseException, reference: str, source_map: SourceMap | None = None
) -> tuple[Path, int] | None:
    """Find the innermost traceback frame inside the bundle and map it back.

    ``source_map`` is the map captured with the bundle; without it the map
    beside ``reference`` is read from disk.
    """
    bundle_file = strip_load_suffix(reference)

    def resolve(line: int) -> tuple[Path, int] | None:
        if source_map is not None:
            return source_map.lookup(line)
        return original_location(reference, line)

    if isinstance(exc, SyntaxError) and exc.filename == bundle_file and exc.lineno:
        return resolve(exc.lineno)
    for frame in reversed(traceback.extract_tb(exc.__traceback__)):
        if frame.filename == bundle_file and frame.lineno:
            return resolve(frame.lineno)
    return None
