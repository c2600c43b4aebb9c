"""Preview server for ``cairn build --serve``.

Serves the build output with live reload:
- Injects a reload script into HTML responses.
- Resolves ``/page`` to ``page.html`` and ``/dir/`` to ``dir/index.html``;
  anything else, including directory listings, is a 404 (serving 404.html
  when present).
- Watches the build sources, cairn.yaml and the content directory and routes
  every change to the ``BuildScheduler``, broadcasting a reload to websocket
  clients after each published build.

Key classes:
- DevServer: Runs the HTTP, websocket and watcher threads.
- _ReloadHandler: HTTP request handler that injects the reload script.
- _ChangeHandler: File system event handler feeding the scheduler.
"""

from __future__ import annotations

import asyncio
import functools
import json
import threading
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path

import click
import websockets
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .config import CONFIG_FILENAME, CairnConfig
from .errors import CompileError
from .scheduler import BuildScheduler

IGNORED_PARTS = {".git", "__pycache__", "node_modules"}


class _ReloadHandler(SimpleHTTPRequestHandler):
    """HTTP request handler that injects the live reload script into HTML pages."""

    reload_script_template = """
    <script>
    (() => {{
      const ws = new WebSocket('ws://' + location.hostname + ':{ws_port}');
      ws.onmessage = (event) => {{
        const data = JSON.parse(event.data || '{{}}');
        if (data.type === 'reload') location.reload();
      }};
    }})();
    </script>
    """
    reload_script = reload_script_template.format(ws_port=3001)

    def end_headers(self):
        self.send_header("Cache-Control", "no-cache, no-store, must-revalidate")
        super().end_headers()

    def list_directory(self, path):  # pragma: no cover - exercised via send_head
        return self._serve_html(Path(self.directory) / "404.html", 404)

    def send_head(self):
        target = self._resolve(Path(self.translate_path(self.path)))
        if target is None:
            return self._serve_html(Path(self.directory) / "404.html", 404)
        if target.suffix == ".html":
            return self._serve_html(target, 200)
        self.path = "/" + target.relative_to(self.directory).as_posix()
        return super().send_head()

    def _resolve(self, path: Path) -> Path | None:
        if path.is_dir():
            index = path / "index.html"
            return index if index.exists() else None
        if path.is_file():
            return path
        with_suffix = path.with_name(path.name + ".html")
        if with_suffix.is_file():
            return with_suffix
        return None

    def _serve_html(self, page: Path, status: int):
        if not page.exists():
            self.send_error(404, "File not found")
            return None
        content = page.read_text(encoding="utf-8")
        if "</body>" in content:
            content = content.replace("</body>", f"{self.reload_script}</body>")
        else:
            content += self.reload_script
        encoded = content.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(encoded)))
        self.end_headers()
        self.wfile.write(encoded)
        return None


class DevServer:
    """Preview server driven by a ``BuildScheduler``.

    Attributes:
        config: Resolved project configuration.
        scheduler: Scheduler that owns all rebuilds.
        http_port: Port for the HTTP server.
        ws_port: Port for websocket connections.
        fatal: The compile error that stopped the server, if any.
    """

    def __init__(
        self,
        config: CairnConfig,
        scheduler: BuildScheduler,
        http_port: int | None = None,
        ws_port: int | None = None,
    ):
        self.config = config
        self.scheduler = scheduler
        self.output_dir = config.output_dir
        self.http_port = int(http_port or config["port"])
        self.ws_port = int(ws_port or config["ws_port"])
        self._reload_script = _ReloadHandler.reload_script_template.format(
            ws_port=self.ws_port
        )
        self._observer: Observer | None = None
        self._ws_clients: set = set()
        self._loop = asyncio.new_event_loop()
        self._stopped = threading.Event()
        self.fatal: CompileError | None = None

    def start(self) -> None:  # pragma: no cover - integration path
        """Build once, then serve until interrupted or a compile fails.

        Raises:
            CompileError: If a rebuild triggered by a file change fails.
        """
        self.scheduler.request_rebuild(self._broadcast_reload)
        threading.Thread(target=self._start_http, daemon=True).start()
        threading.Thread(target=self._start_ws, daemon=True).start()
        self._start_watcher()
        try:
            while not self._stopped.wait(0.5):
                pass
        except KeyboardInterrupt:
            pass
        finally:
            self.stop()
        if self.fatal is not None:
            raise self.fatal

    def stop(self) -> None:
        self._stopped.set()
        if self._observer:
            self._observer.stop()
            self._observer.join()
            self._observer = None
        self._loop.call_soon_threadsafe(self._loop.stop)

    def fail(self, exc: CompileError) -> None:
        """Record a fatal compile error and wake the serve loop."""
        self.fatal = exc
        self._stopped.set()

    def rebuild(self) -> None:
        """Hand a change notification to the scheduler without blocking the watcher."""
        threading.Thread(target=self._rebuild_worker, daemon=True).start()

    def _rebuild_worker(self) -> None:
        try:
            self.scheduler.request_rebuild(self._broadcast_reload)
        except CompileError as exc:
            self.fail(exc)

    def _start_http(self) -> None:  # pragma: no cover - integration path
        handler_cls = type(
            "_ReloadHandlerWithPort",
            (_ReloadHandler,),
            {"reload_script": self._reload_script},
        )
        handler = functools.partial(handler_cls, directory=str(self.output_dir))
        httpd = ThreadingHTTPServer(("", self.http_port), handler)
        click.echo(
            click.style(
                f"Started a server at http://localhost:{self.http_port}", fg="cyan"
            )
        )
        httpd.serve_forever()

    def _start_ws(self) -> None:  # pragma: no cover - integration path
        asyncio.set_event_loop(self._loop)
        try:
            self._loop.run_until_complete(self._run_ws_server())
        except OSError as exc:
            click.echo(f"WebSocket server failed to start (port {self.ws_port}): {exc}")
            return

    async def _run_ws_server(self) -> None:  # pragma: no cover - integration path
        async with websockets.serve(self._ws_handler, "0.0.0.0", self.ws_port):
            await asyncio.Future()

    async def _ws_handler(self, websocket):
        self._ws_clients.add(websocket)
        try:
            await websocket.wait_closed()
        finally:
            self._ws_clients.discard(websocket)

    def _broadcast_reload(self) -> None:
        message = json.dumps({"type": "reload"})
        asyncio.run_coroutine_threadsafe(self._async_broadcast(message), self._loop)

    async def _async_broadcast(self, message: str):
        stale = set()
        for ws in list(self._ws_clients):
            try:
                await ws.send(message)
            except Exception:
                stale.add(ws)
        for ws in stale:
            self._ws_clients.discard(ws)

    def watched_paths(self) -> list[tuple[Path, bool]]:
        """Paths to observe, as ``(path, recursive)`` pairs."""
        root = self.config.project_root
        paths = [(root, False)]
        for folder in [*self.config.build_sources, self.config.content_dir]:
            if folder.exists():
                paths.append((folder, True))
        return paths

    def is_relevant(self, path: Path) -> bool:
        for ignored in (self.config.cache_dir, self.output_dir):
            try:
                path.relative_to(ignored)
                return False
            except ValueError:
                pass
        if IGNORED_PARTS.intersection(path.parts):
            return False
        if path.parent == self.config.project_root:
            return path == self.config.build_entry or path.name == CONFIG_FILENAME
        return True

    def _start_watcher(self) -> None:
        handler = _ChangeHandler(self)
        observer = Observer()
        for path, recursive in self.watched_paths():
            observer.schedule(handler, str(path), recursive=recursive)
        observer.start()
        self._observer = observer


class _ChangeHandler(FileSystemEventHandler):
    def __init__(self, server: DevServer):
        super().__init__()
        self.server = server

    def on_any_event(self, event):
        if event.is_directory:
            return
        if self.server.is_relevant(Path(event.src_path)):
            self.server.rebuild()
