"""Tests for qrshare.cli: argument handling and startup order."""

import http.client
import logging
import os
import signal
import threading
import time
from collections.abc import Callable, Iterator
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from qrshare.cli import build_parser, config_from_args, main, run
from qrshare.config import CodeFormat, ServerConfig
from qrshare.errors import EncodingCapacityExceeded, NoFilesError
from qrshare.netaddr import AddressResolver
from qrshare.server import FileServer


class LoopbackResolver(AddressResolver):
    def select_host(self) -> str:
        return "127.0.0.1"


class UnroutableResolver(AddressResolver):
    def select_host(self) -> str:
        return "203.0.113.77"


@pytest.fixture
def restore_sigterm() -> Iterator[None]:
    previous = signal.getsignal(signal.SIGTERM)
    yield
    signal.signal(signal.SIGTERM, previous)


def _when_serving(resolver: AddressResolver, action: Callable[[int], None]) -> threading.Thread:
    """Run action(port) in a thread once the listing page answers."""

    def _wait_then_act() -> None:
        deadline = time.monotonic() + 10
        while time.monotonic() < deadline:
            if resolver.bound is not None:
                conn = http.client.HTTPConnection("127.0.0.1", resolver.bound.port, timeout=5)
                try:
                    conn.request("GET", "/")
                    if conn.getresponse().status == 200:
                        break
                except OSError:
                    pass
                finally:
                    conn.close()
            time.sleep(0.05)
        action(resolver.bound.port)

    thread = threading.Thread(target=_wait_then_act, daemon=True)
    thread.start()
    return thread


@pytest.fixture
def no_serving(monkeypatch: pytest.MonkeyPatch) -> None:
    """Return from serve_forever right away and leave SIGTERM alone."""
    monkeypatch.setattr(FileServer, "serve_forever", lambda self: self.close())
    monkeypatch.setattr("qrshare.cli.signal.signal", lambda *args: None)


class TestArguments:
    def test_defaults(self, make_file) -> None:
        args = build_parser().parse_args([str(make_file("a.txt"))])
        cfg = config_from_args(args)

        assert cfg == ServerConfig()

    def test_flags(self) -> None:
        args = build_parser().parse_args(["-p", "8080", "-s", "-q", "--svg", "-b", "10.0.0.1", "f"])
        cfg = config_from_args(args)

        assert cfg.port == 8080
        assert cfg.strict and cfg.quiet
        assert cfg.bind == "10.0.0.1"
        assert cfg.code_format is CodeFormat.VECTOR
        assert cfg.code_required is True

    def test_no_qrcode(self) -> None:
        cfg = config_from_args(build_parser().parse_args(["--no-qrcode", "f"]))
        assert cfg.code_format is CodeFormat.NONE
        assert cfg.code_required is False

    def test_png_and_svg_conflict(self) -> None:
        with pytest.raises(SystemExit) as exc:
            build_parser().parse_args(["--png", "--svg", "f"])
        assert exc.value.code == 2

    def test_requires_files(self) -> None:
        with pytest.raises(SystemExit) as exc:
            build_parser().parse_args([])
        assert exc.value.code == 2

    def test_command_line_overrides_config_file(self, tmp_path: Path) -> None:
        cfg_file = tmp_path / "qrshare.toml"
        cfg_file.write_text('port = 9000\nquiet = true\nimage = "none"\n')
        args = build_parser().parse_args(["-c", str(cfg_file), "-p", "1234", "f"])
        cfg = config_from_args(args)

        assert cfg.port == 1234
        assert cfg.quiet is True
        assert cfg.code_format is CodeFormat.NONE


class TestMain:
    @patch("qrshare.cli.AddressResolver")
    def test_strict_invalid_file_exits_before_binding(
        self, resolver: MagicMock, make_file, tmp_path: Path
    ) -> None:
        good = make_file("good.txt")
        with pytest.raises(SystemExit) as exc:
            main(["--strict", "--no-qrcode", str(good), str(tmp_path / "missing.txt")])

        assert str(exc.value.code).startswith("Error: no such file")
        resolver.assert_not_called()

    @patch("qrshare.cli.AddressResolver")
    def test_no_valid_files(self, resolver: MagicMock, tmp_path: Path) -> None:
        with pytest.raises(SystemExit) as exc:
            main(["--quiet", str(tmp_path / "missing.txt")])

        assert exc.value.code == "Error: no valid files to serve"
        resolver.assert_not_called()

    def test_bad_config_file(self, tmp_path: Path) -> None:
        with pytest.raises(SystemExit) as exc:
            main(["-c", str(tmp_path / "absent.toml"), "f"])
        assert str(exc.value.code).startswith("Error: cannot read config file")

    def test_sigterm_exits_cleanly(
        self, make_file, monkeypatch: pytest.MonkeyPatch, restore_sigterm: None
    ) -> None:
        resolver = LoopbackResolver()
        monkeypatch.setattr("qrshare.cli.AddressResolver", lambda: resolver)
        killer = _when_serving(resolver, lambda port: os.kill(os.getpid(), signal.SIGTERM))

        assert main(["--no-qrcode", str(make_file("a.txt"))]) == 0
        killer.join(timeout=5)

    def test_strict_read_failure_while_serving_exits_with_error(
        self, make_file, monkeypatch: pytest.MonkeyPatch, restore_sigterm: None
    ) -> None:
        path = make_file("a.txt")
        resolver = LoopbackResolver()
        monkeypatch.setattr("qrshare.cli.AddressResolver", lambda: resolver)
        statuses: list[int] = []

        def fail_download(port: int) -> None:
            path.unlink()
            conn = http.client.HTTPConnection("127.0.0.1", port, timeout=5)
            try:
                conn.request("GET", "/a.txt")
                resp = conn.getresponse()
                resp.read()
                statuses.append(resp.status)
            finally:
                conn.close()

        client = _when_serving(resolver, fail_download)
        with pytest.raises(SystemExit) as exc:
            main(["--strict", "--no-qrcode", str(path)])
        client.join(timeout=5)

        assert str(exc.value.code).startswith("Error: cannot read /a.txt")
        assert statuses == [500]

    def test_bind_failure(self, make_file, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("qrshare.cli.AddressResolver", UnroutableResolver)
        with pytest.raises(SystemExit) as exc:
            main(["--no-qrcode", str(make_file("a.txt"))])
        assert str(exc.value.code).startswith("Error: cannot listen on 203.0.113.77")


class TestRun:
    def test_banner_and_code(self, make_file, no_serving, capsys: pytest.CaptureFixture[str]) -> None:
        files = [make_file("a.txt"), make_file("b.txt")]
        resolver = LoopbackResolver()

        run(ServerConfig(code_format=CodeFormat.VECTOR), [str(f) for f in files], resolver)

        out = capsys.readouterr().out
        url = resolver.bound.url_for("a.txt")
        assert url in out
        assert resolver.bound.url_for("b.txt") in out
        assert f'curl -L -o "a.txt" "{url}"' in out

        code_path = Path(out.split(f"QR code for {url}:\n")[1].split()[0])
        assert code_path.suffix == ".svg"
        assert code_path.exists()

    def test_no_code_requested(self, make_file, no_serving, capsys: pytest.CaptureFixture[str]) -> None:
        run(ServerConfig(code_format=CodeFormat.NONE), [str(make_file("a.txt"))], LoopbackResolver())
        assert "QR code" not in capsys.readouterr().out

    def test_optional_code_overflow_is_skipped(
        self, make_file, no_serving, caplog: pytest.LogCaptureFixture
    ) -> None:
        def overflow(url, fmt):
            raise EncodingCapacityExceeded(url)

        with patch("qrshare.cli.encode", overflow), caplog.at_level(logging.WARNING):
            run(ServerConfig(), [str(make_file("a.txt"))], LoopbackResolver())

        assert "not showing a QR code" in caplog.text

    def test_optional_code_overflow_is_silent_when_quiet(
        self, make_file, no_serving, caplog: pytest.LogCaptureFixture
    ) -> None:
        def overflow(url, fmt):
            raise EncodingCapacityExceeded(url)

        with patch("qrshare.cli.encode", overflow), caplog.at_level(logging.DEBUG):
            run(ServerConfig(quiet=True), [str(make_file("a.txt"))], LoopbackResolver())

        assert "not showing a QR code" not in caplog.text

    def test_required_code_overflow_is_fatal(self, make_file, no_serving) -> None:
        def overflow(url, fmt):
            raise EncodingCapacityExceeded(url)

        with patch("qrshare.cli.encode", overflow), pytest.raises(EncodingCapacityExceeded):
            run(ServerConfig(code_required=True), [str(make_file("a.txt"))], LoopbackResolver())

    def test_bind_is_ignored_with_warning(
        self, make_file, no_serving, caplog: pytest.LogCaptureFixture
    ) -> None:
        resolver = LoopbackResolver()
        with caplog.at_level(logging.WARNING):
            run(
                ServerConfig(bind="10.1.2.3", code_format=CodeFormat.NONE),
                [str(make_file("a.txt"))],
                resolver,
            )

        assert resolver.bound.host == "127.0.0.1"
        assert "--bind is not implemented" in caplog.text

    def test_empty_registry(self, tmp_path: Path) -> None:
        resolver = LoopbackResolver()
        with pytest.raises(NoFilesError):
            run(ServerConfig(quiet=True), [str(tmp_path / "nope")], resolver)
        assert resolver.bound is None
