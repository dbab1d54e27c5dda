import argparse
import atexit
import logging
import shutil
import signal
import sys
import tempfile
import webbrowser
from collections.abc import Sequence
from pathlib import Path

from . import __version__
from .config import CodeFormat, ServerConfig, load_config_file
from .errors import (
    EncodingCapacityExceeded,
    NoFilesError,
    QrShareError,
)
from .netaddr import AddressResolver, BoundAddress
from .qr import OpticalCode, encode
from .registry import FileRegistry
from .server import FileServer

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="qrshare",
        description="Share files on the local network and show a QR code for the first one.",
    )
    parser.add_argument("files", nargs="+", help="Files to serve")
    parser.add_argument("-b", "--bind", default=None, help="Address to bind to (not implemented; ignored)")
    parser.add_argument("-p", "--port", type=int, default=None, help="Port to listen on (default: any free port)")
    parser.add_argument("-q", "--quiet", action="store_true", default=None, help="Do not warn about skipped files")
    parser.add_argument("-s", "--strict", action="store_true", default=None,
                        help="Exit on any invalid file or read failure")
    parser.add_argument("-c", "--config", default=None, help="TOML config file")
    parser.add_argument("--open", dest="open_code", action="store_true", help="Open the QR image in a viewer")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    image = parser.add_mutually_exclusive_group()
    image.add_argument("--png", dest="code_format", action="store_const", const=CodeFormat.RASTER,
                       help="Render the QR code as PNG (default)")
    image.add_argument("--svg", dest="code_format", action="store_const", const=CodeFormat.VECTOR,
                       help="Render the QR code as SVG")
    image.add_argument("--no-qrcode", dest="code_format", action="store_const", const=CodeFormat.NONE,
                       help="Do not produce a QR code")
    return parser


def config_from_args(args: argparse.Namespace) -> ServerConfig:
    """Merge the config file (if any) with the command line; flags win."""
    values = load_config_file(args.config) if args.config else {}
    for key in ("bind", "port", "quiet", "strict"):
        value = getattr(args, key)
        if value is not None:
            values[key] = value
    if args.code_format is not None:
        values["code_format"] = args.code_format
        values["code_required"] = args.code_format is not CodeFormat.NONE
    values["open_code"] = args.open_code
    return ServerConfig(**values)


# ----------------------------
# Output
# ----------------------------

def save_code(code: OpticalCode) -> Path:
    tmpdir = Path(tempfile.mkdtemp(prefix="qrshare_"))
    atexit.register(lambda: shutil.rmtree(tmpdir, ignore_errors=True))
    path = tmpdir / f"qrshare.{code.format.extension}"
    path.write_bytes(code.image)
    return path


def print_banner(address: BoundAddress, registry: FileRegistry, code_path: Path | None) -> None:
    first = registry.first()
    url = address.url_for(first.route)

    print("\n=== qrshare ===")
    print(f"Listing: {address.base_url}/")
    for entry in registry:
        print(f"  {address.url_for(entry.route)}")

    print(f"\nDownload commands for {first.name}:")
    print(f'  curl -L -o "{first.name}" "{url}"')
    print(f'  wget -O "{first.name}" "{url}"')
    print(f'  Invoke-WebRequest -Uri "{url}" -OutFile "{first.name}"')

    if code_path is not None:
        print(f"\nQR code for {url}:")
        print(f"  {code_path}")
    print()


# ----------------------------
# Main
# ----------------------------

def run(
    config: ServerConfig,
    files: Sequence[str],
    resolver: AddressResolver | None = None,
) -> None:
    if config.bind is not None and not config.quiet:
        logger.warning("--bind is not implemented; selecting a LAN address automatically")

    registry = FileRegistry.build(files, config)
    if not registry:
        raise NoFilesError()

    resolver = resolver or AddressResolver()
    address, sock = resolver.resolve(config.port)
    server = FileServer(registry, config, address, sock)

    code_path = None
    try:
        code = encode(address.url_for(registry.first().route), config.code_format)
    except EncodingCapacityExceeded as e:
        if config.code_required:
            server.close()
            raise
        if not config.quiet:
            logger.warning("%s; not showing a QR code", e)
    else:
        if code is not None:
            code_path = save_code(code)
            if config.open_code:
                webbrowser.open(code_path.as_uri())

    print_banner(address, registry, code_path)
    signal.signal(signal.SIGTERM, lambda signum, frame: server.shutdown())
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

    try:
        config = config_from_args(args)
        run(config, args.files)
    except QrShareError as e:
        raise SystemExit(f"Error: {e}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
