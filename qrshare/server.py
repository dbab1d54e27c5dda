import logging
import socket
import threading
from collections.abc import Callable

from flask import Flask, abort, render_template_string, send_file
from werkzeug.exceptions import HTTPException
from werkzeug.serving import BaseWSGIServer, make_server
from werkzeug.wsgi import ClosingIterator

from .config import ServerConfig
from .errors import TransferError
from .netaddr import BoundAddress
from .registry import FileRegistry

logger = logging.getLogger(__name__)


def format_bytes(num: int) -> str:
    units = ["B", "KB", "MB", "GB", "TB", "PB"]
    size = float(num)
    for unit in units:
        if size < 1024 or unit == units[-1]:
            if unit == "B":
                return f"{int(size)} {unit}"
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{num} B"


LISTING_HTML = r'''
<!doctype html>
<html>
<head>
    <title>qrshare</title>
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <style>
        body { font-family: Arial; margin: 40px; }
        table { border-collapse: collapse; width: 100%; }
        th, td { padding: 10px; border: 1px solid #ccc; }
        th { text-align: left; }
        td.mono { font-family: ui-monospace, Menlo, Consolas, "Liberation Mono", monospace; }
        td.size { white-space: nowrap; text-align: right; }
        tr.dead td { color: #999; }
    </style>
</head>
<body>
<h1>Shared files</h1>
<table>
    <tr><th>Filename</th><th>Size</th><th>Download</th></tr>
    {% for f in files %}
    <tr{% if not f.alive %} class="dead"{% endif %}>
        <td class="mono">{{ f.name }}</td>
        <td class="size">{{ f.size }}</td>
        <td>
            {% if f.alive %}<a href="{{ url_for('serve_file', route=f.route) }}">{{ f.route }}</a>
            {% else %}unavailable{% endif %}
        </td>
    </tr>
    {% else %}
    <tr><td colspan="3">No files shared.</td></tr>
    {% endfor %}
</table>
</body>
</html>
'''


# ----------------------------
# Flask app
# ----------------------------

def create_app(
    registry: FileRegistry,
    config: ServerConfig,
    on_failure: Callable[[TransferError], None] | None = None,
) -> Flask:
    app = Flask(__name__)

    def plain(error: HTTPException):
        return f"{error.code} {error.name}\n", error.code, {"Content-Type": "text/plain; charset=utf-8"}

    for code in (404, 405, 500):
        app.register_error_handler(code, plain)

    @app.after_request
    def one_response_per_connection(response):
        response.headers["Connection"] = "close"
        return response

    @app.route("/", methods=["GET"], endpoint="index")
    def index():
        entries = [
            {"name": f.name, "route": f.route, "size": format_bytes(f.size), "alive": f.alive}
            for f in registry
        ]
        return render_template_string(LISTING_HTML, files=entries)

    @app.route("/<route>", methods=["GET"], endpoint="serve_file")
    def serve_file(route):
        entry = registry.get(route)
        if entry is None:
            abort(404)
        if not entry.alive:
            abort(500)

        try:
            # stat happens here, so Content-Length is the size right now
            return send_file(
                entry.path,
                mimetype=entry.content_type,
                as_attachment=True,
                download_name=entry.name,
                conditional=False,
                etag=False,
            )
        except OSError as e:
            error = TransferError(route, e)
            if entry.mark_dead() and (config.strict or not config.quiet):
                logger.error("%s; no longer serving it", error)
            if on_failure is not None:
                on_failure(error)
            abort(500)

    return app


# ----------------------------
# Threaded server on a pre-bound socket
# ----------------------------

class FileServer:
    """
    Serves a registry over HTTP on a listening socket from the resolver.

    Each connection gets its own thread. In strict mode the first read
    failure stops the accept loop once its 500 response has been written,
    and serve_forever() raises it.
    """

    def __init__(
        self,
        registry: FileRegistry,
        config: ServerConfig,
        address: BoundAddress,
        sock: socket.socket,
    ) -> None:
        self.registry = registry
        self.config = config
        self.address = address
        self.fatal: TransferError | None = None
        self._fatal_lock = threading.Lock()
        self._stopping = threading.Event()

        self.app = create_app(registry, config, on_failure=self._on_failure)
        self._httpd: BaseWSGIServer = make_server(
            address.host,
            address.port,
            self._wsgi,
            threaded=True,
            fd=sock.fileno(),
        )
        # werkzeug holds its own duplicate of the descriptor
        sock.close()

    def _on_failure(self, error: TransferError) -> None:
        if not self.config.strict:
            return
        with self._fatal_lock:
            if self.fatal is not None:
                return
            self.fatal = error
        logger.error("strict mode: shutting down")

    def _wsgi(self, environ, start_response):
        # close() runs after the body is on the wire
        return ClosingIterator(self.app(environ, start_response), self._stop_if_fatal)

    def _stop_if_fatal(self) -> None:
        if self.fatal is not None and not self._stopping.is_set():
            self._stopping.set()
            self.shutdown()

    def serve_forever(self) -> None:
        try:
            self._httpd.serve_forever()
        finally:
            self.close()
        if self.fatal is not None:
            raise self.fatal

    def shutdown(self) -> None:
        """Stop the accept loop. Safe to call from any thread, including handlers."""
        threading.Thread(target=self._httpd.shutdown, daemon=True).start()

    def close(self) -> None:
        self._httpd.server_close()
