"""Incremental compile context for the site build sources.

The build sources are the project's build entry (``cairn_build.py``) plus the
Python files under the configured ``build_sources`` directories. They are
syntax-checked and concatenated into one bundle under the cache directory,
with a JSON source map beside it. Build sources share the bundle namespace,
so they should not import each other; stdlib and third-party imports work as
usual.

The context is kept for the lifetime of the process. Each ``rebuild()`` only
re-reads and re-checks the inputs whose modification time or size changed.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from .errors import CompileError
from .sourcemap import MAP_SUFFIX, SourceMap, SourceSpan

FUTURE_IMPORT_RE = re.compile(r"^from\s+__future__\s+import\s+.+$")


@dataclass
class CompiledBundle:
    """Output of one successful compile.

    The bundle text and source map are kept with the result; the copies on
    disk are rewritten by the next compile, which may overlap this one's load.

    Attributes:
        path: The bundle file.
        inputs: Source files that went into the bundle, in bundle order.
        size: Bundle size in bytes.
        text: Bundle source as compiled.
        source_map: Bundle line to original source mapping.
    """

    path: Path
    inputs: list[Path]
    size: int
    text: str = ""
    source_map: SourceMap | None = None

    @property
    def input_count(self) -> int:
        return len(self.inputs)

    @property
    def map_path(self) -> Path:
        return self.path.with_name(self.path.name + MAP_SUFFIX)


class BundleCompiler:
    """Compile build sources into a single loadable bundle.

    Attributes:
        entry: The build entry file; always last in the bundle.
        source_dirs: Directories whose ``*.py`` files are bundled before the entry.
        bundle_path: Where the bundle is written.
        recompiled: Inputs re-read during the most recent rebuild.
    """

    def __init__(self, entry: Path, source_dirs: list[Path], bundle_path: Path):
        self.entry = entry
        self.source_dirs = source_dirs
        self.bundle_path = bundle_path
        self.recompiled: list[Path] = []
        self._cache: dict[Path, tuple[tuple[int, int], str]] = {}

    def collect_inputs(self) -> list[Path]:
        if not self.entry.is_file():
            raise CompileError(self.entry, "Build entry not found")
        inputs: list[Path] = []
        for folder in self.source_dirs:
            if not folder.is_dir():
                continue
            for path in sorted(folder.rglob("*.py")):
                if "__pycache__" in path.parts or path == self.entry:
                    continue
                inputs.append(path)
        inputs.append(self.entry)
        return inputs

    def rebuild(self) -> CompiledBundle:
        """Recompile changed inputs and write a fresh bundle.

        Raises:
            CompileError: If an input is missing or fails to compile.
        """
        inputs = self.collect_inputs()
        self.recompiled = []
        sources = [self._source_for(path) for path in inputs]
        for stale in set(self._cache) - set(inputs):
            del self._cache[stale]

        text, source_map = self._assemble(inputs, sources)
        try:
            compile(text, str(self.bundle_path), "exec", dont_inherit=True)
        except SyntaxError as exc:
            location = source_map.lookup(exc.lineno or 0)
            path, line = location if location else (self.bundle_path, exc.lineno)
            raise CompileError(path, exc.msg, line, exc) from exc

        self.bundle_path.parent.mkdir(parents=True, exist_ok=True)
        self.bundle_path.write_text(text, encoding="utf-8")
        source_map.write(self.bundle_path.with_name(self.bundle_path.name + MAP_SUFFIX))
        return CompiledBundle(
            path=self.bundle_path,
            inputs=inputs,
            size=len(text.encode("utf-8")),
            text=text,
            source_map=source_map,
        )

    def dispose(self) -> None:
        self._cache.clear()

    def _source_for(self, path: Path) -> str:
        try:
            stat = path.stat()
        except OSError as exc:
            raise CompileError(path, f"Could not read build source: {exc}") from exc
        signature = (stat.st_mtime_ns, stat.st_size)
        cached = self._cache.get(path)
        if cached and cached[0] == signature:
            return cached[1]

        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise CompileError(path, f"Could not read build source: {exc}", None, exc) from exc
        try:
            compile(text, str(path), "exec", dont_inherit=True)
        except SyntaxError as exc:
            raise CompileError(path, exc.msg, exc.lineno, exc) from exc
        except ValueError as exc:
            raise CompileError(path, str(exc), None, exc) from exc
        self._cache[path] = (signature, text)
        self.recompiled.append(path)
        return text

    def _assemble(self, inputs: list[Path], sources: list[str]) -> tuple[str, SourceMap]:
        futures: list[str] = []
        bodies: list[list[str]] = []
        for text in sources:
            body = []
            for line in text.splitlines():
                if FUTURE_IMPORT_RE.match(line):
                    if line not in futures:
                        futures.append(line)
                    line = ""
                body.append(line)
            bodies.append(body)

        lines = ["# Generated by cairn from the build sources; do not edit.", *futures]
        source_map = SourceMap(file=self.bundle_path.name)
        for path, body in zip(inputs, bodies):
            lines.append(f"# --- {path.name}")
            source_map.sources.append(SourceSpan(str(path), len(lines) + 1, len(body)))
            lines.extend(body)
        return "\n".join(lines) + "\n", source_map
