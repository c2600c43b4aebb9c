"""Load the compiled build bundle.

Every load imports the bundle under a fresh module name derived from a
``?update=<token>`` reference, so a rebuilt bundle is always executed anew and
never served from the import cache.
"""

from __future__ import annotations

import importlib.abc
import importlib.util
import sys
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from types import ModuleType
from typing import Any

from .compiler import CompiledBundle
from .errors import CompileError
from .sourcemap import locate_exception

ENTRY_POINT = "build"


@dataclass
class LoadedArtifact:
    """A bundle imported under its own load identity.

    Attributes:
        reference: Bundle path plus the cache-busting query.
        module: The imported module.
        bundle: The compile result this module came from.
    """

    reference: str
    module: ModuleType
    bundle: CompiledBundle

    @property
    def entry_point(self) -> Callable[[Any], Any]:
        entry = getattr(self.module, ENTRY_POINT, None)
        if not callable(entry):
            raise CompileError(
                self.bundle.inputs[-1],
                f"Build entry does not define a callable '{ENTRY_POINT}(context)'",
            )
        return entry

    def run(self, context: Any) -> Callable[[], Any] | None:
        """Call the entry point; returns the cleanup hook it hands back, if any."""
        entry = self.entry_point
        try:
            cleanup = entry(context)
        except Exception as exc:
            raise _mapped_error(exc, self.reference, self.bundle) from exc
        return cleanup if callable(cleanup) else None

    def unload(self) -> None:
        sys.modules.pop(self.module.__name__, None)


class _BundleLoader(importlib.abc.Loader):
    """Executes a bundle from the text captured when it was compiled."""

    def __init__(self, bundle: CompiledBundle):
        self.bundle = bundle

    def create_module(self, spec):
        return None

    def exec_module(self, module: ModuleType) -> None:
        code = compile(self.bundle.text, str(self.bundle.path), "exec", dont_inherit=True)
        exec(code, module.__dict__)


def new_reference(path: Path) -> str:
    return f"{path}?update={uuid.uuid4().hex}"


def load_artifact(bundle: CompiledBundle) -> LoadedArtifact:
    """Import ``bundle`` under a unique module name.

    The module is built from ``bundle.text``, never from the file on disk,
    which a later compile may already have replaced.

    Raises:
        CompileError: If executing the bundle fails; the location is mapped
            back to the original build source.
    """
    reference = new_reference(bundle.path)
    token = reference.rsplit("=", 1)[1]
    module_name = f"_cairn_build_{token}"
    spec = importlib.util.spec_from_loader(
        module_name, _BundleLoader(bundle), origin=str(bundle.path)
    )
    if spec is None or spec.loader is None:
        raise CompileError(bundle.path, "Could not load compiled bundle")
    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
    except Exception as exc:
        sys.modules.pop(module_name, None)
        raise _mapped_error(exc, reference, bundle) from exc
    return LoadedArtifact(reference=reference, module=module, bundle=bundle)


def _mapped_error(exc: Exception, reference: str, bundle: CompiledBundle) -> CompileError:
    location = locate_exception(exc, reference, bundle.source_map)
    path, line = location if location else (bundle.path, None)
    return CompileError(path, f"{type(exc).__name__}: {exc}", line, exc)
