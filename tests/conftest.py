import contextlib
import threading
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from qrshare.config import ServerConfig
from qrshare.errors import TransferError
from qrshare.netaddr import bind_listener
from qrshare.registry import FileRegistry
from qrshare.server import FileServer


@pytest.fixture
def make_file(tmp_path: Path) -> Callable[..., Path]:
    """Create a file under tmp_path, optionally in a subdirectory."""

    def _make(name: str, content: bytes = b"hello\n", subdir: str | None = None) -> Path:
        directory = tmp_path / subdir if subdir else tmp_path
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / name
        path.write_bytes(content)
        return path

    return _make


@pytest.fixture
def running_server() -> Iterator[Callable[..., tuple[FileServer, threading.Thread]]]:
    """Start a FileServer on 127.0.0.1 in a background thread."""
    started: list[tuple[FileServer, threading.Thread]] = []

    def _start(
        registry: FileRegistry, config: ServerConfig | None = None
    ) -> tuple[FileServer, threading.Thread]:
        address, sock = bind_listener("127.0.0.1", 0)
        server = FileServer(registry, config or ServerConfig(), address, sock)

        def _serve() -> None:
            # strict-mode failures are inspected through server.fatal
            with contextlib.suppress(TransferError):
                server.serve_forever()

        thread = threading.Thread(target=_serve, daemon=True)
        thread.start()
        started.append((server, thread))
        return server, thread

    yield _start

    for server, thread in started:
        if thread.is_alive():
            server.shutdown()
        thread.join(timeout=5)
