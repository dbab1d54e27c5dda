import tomllib
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from .errors import ConfigError


class CodeFormat(Enum):
    """How the QR code for the first file is rendered, if at all."""

    NONE = "none"
    RASTER = "png"
    VECTOR = "svg"

    @property
    def extension(self) -> str:
        return self.value


@dataclass(frozen=True)
class ServerConfig:
    bind: str | None = None  # accepted but not used for address selection
    port: int = 0
    strict: bool = False
    quiet: bool = False
    code_format: CodeFormat = CodeFormat.RASTER
    code_required: bool = False
    open_code: bool = False

    def __post_init__(self) -> None:
        if not 0 <= self.port <= 65535:
            raise ConfigError(f"port out of range: {self.port}")


# ----------------------------
# TOML config file
# ----------------------------

_FILE_KEYS: dict[str, type] = {
    "port": int,
    "bind": str,
    "strict": bool,
    "quiet": bool,
    "image": str,
}


def load_config_file(path: str | Path) -> dict[str, Any]:
    """
    Read a TOML config file and return its values keyed like ServerConfig.

    Only a flat table is accepted: port, bind, strict, quiet and image
    ("png", "svg" or "none").
    """
    path = Path(path).expanduser()
    try:
        with open(path, "rb") as f:
            raw = tomllib.load(f)
    except OSError as e:
        raise ConfigError(f"cannot read config file {path}: {e.strerror}") from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"invalid config file {path}: {e}") from e

    values: dict[str, Any] = {}
    for key, value in raw.items():
        expected = _FILE_KEYS.get(key)
        if expected is None:
            raise ConfigError(f"unknown key in {path}: {key}")
        # bool is a subclass of int; a port of `true` is still wrong
        if not isinstance(value, expected) or (expected is int and isinstance(value, bool)):
            raise ConfigError(f"{key} in {path} must be {expected.__name__}")
        values[key] = value

    if "image" in values:
        try:
            values["code_format"] = CodeFormat(values.pop("image"))
        except ValueError:
            raise ConfigError(f"image in {path} must be one of png, svg, none") from None
        values["code_required"] = values["code_format"] is not CodeFormat.NONE
    return values
