from pathlib import Path


class QrShareError(Exception):
    """Base class for every error raised by qrshare."""


# ----------------------------
# Registry construction
# ----------------------------

class ValidationError(QrShareError):
    reason = "invalid file"

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        super().__init__(f"{self.reason}: {self.path}")


class NotFound(ValidationError):
    reason = "no such file"


class NotRegularFile(ValidationError):
    reason = "not a regular file"


class Unreadable(ValidationError):
    reason = "permission denied"


class NoFilesError(QrShareError):
    def __init__(self) -> None:
        super().__init__("no valid files to serve")


# ----------------------------
# Startup and serving
# ----------------------------

class ConfigError(QrShareError):
    pass


class BindError(QrShareError):
    pass


class TransferError(QrShareError):
    """A served file could not be read after startup."""

    def __init__(self, route: str, cause: OSError) -> None:
        self.route = route
        self.cause = cause
        super().__init__(f"cannot read /{route}: {cause.strerror or cause}")


class EncodingCapacityExceeded(QrShareError):
    def __init__(self, url: str) -> None:
        self.url = url
        super().__init__(
            f"URL is too long for a QR code ({len(url.encode('utf-8'))} bytes)"
        )
