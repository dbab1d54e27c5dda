import logging
import mimetypes
import os
import stat
import threading
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path

from .config import ServerConfig
from .errors import NotFound, NotRegularFile, Unreadable, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"


@dataclass(eq=False)
class ServedFile:
    path: Path
    route: str
    size: int
    content_type: str
    _alive: bool = field(default=True, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def alive(self) -> bool:
        with self._lock:
            return self._alive

    def mark_dead(self) -> bool:
        """Flag the entry as failed. Returns True only for the call that flipped it."""
        with self._lock:
            was_alive = self._alive
            self._alive = False
        return was_alive


def validate_path(candidate: str | os.PathLike) -> tuple[Path, int]:
    """Canonicalize a candidate and return (path, size), or raise a ValidationError."""
    try:
        path = Path(candidate).expanduser().resolve(strict=True)
    except (OSError, RuntimeError):
        # RuntimeError: symlink loop or unknown ~user before Python 3.13
        raise NotFound(candidate) from None

    try:
        st = path.stat()
    except FileNotFoundError:
        raise NotFound(candidate) from None
    except PermissionError:
        raise Unreadable(candidate) from None

    if not stat.S_ISREG(st.st_mode):
        raise NotRegularFile(candidate)
    if not os.access(path, os.R_OK):
        raise Unreadable(candidate)
    return path, st.st_size


def guess_content_type(path: Path) -> str:
    mimetype, _ = mimetypes.guess_type(path.name)
    return mimetype or DEFAULT_CONTENT_TYPE


def dedupe_route(name: str, taken: set[str]) -> str:
    """Return 'name', or 'stem-1.ext', 'stem-2.ext', ... whichever is free first."""
    if name not in taken:
        return name
    path = Path(name)
    stem, suffix = path.stem, path.suffix
    i = 1
    while True:
        candidate = f"{stem}-{i}{suffix}"
        if candidate not in taken:
            return candidate
        i += 1


class FileRegistry:
    """Ordered, route-indexed set of files fixed at startup."""

    def __init__(self, entries: Iterable[ServedFile] = ()) -> None:
        self._entries: dict[str, ServedFile] = {}
        for entry in entries:
            if entry.route in self._entries:
                raise ValueError(f"duplicate route: {entry.route}")
            self._entries[entry.route] = entry

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[ServedFile]:
        return iter(self._entries.values())

    def __contains__(self, route: object) -> bool:
        return route in self._entries

    def get(self, route: str) -> ServedFile | None:
        return self._entries.get(route)

    def first(self) -> ServedFile | None:
        return next(iter(self._entries.values()), None)

    @property
    def routes(self) -> list[str]:
        return list(self._entries)

    @classmethod
    def build(cls, candidates: Iterable[str | os.PathLike], config: ServerConfig) -> "FileRegistry":
        """
        Validate each candidate in order and assign it a route.

        strict: the first failure is raised and nothing is returned.
        quiet:  failures are dropped without a word.
        default: failures are dropped and logged as warnings.
        """
        entries: list[ServedFile] = []
        taken: set[str] = set()
        for candidate in candidates:
            try:
                path, size = validate_path(candidate)
            except ValidationError as e:
                if config.strict:
                    raise
                if not config.quiet:
                    logger.warning("skipping %s", e)
                continue

            route = dedupe_route(path.name, taken)
            taken.add(route)
            entries.append(
                ServedFile(
                    path=path,
                    route=route,
                    size=size,
                    content_type=guess_content_type(path),
                )
            )
        return cls(entries)


def build_registry(candidates: Iterable[str | os.PathLike], config: ServerConfig) -> FileRegistry:
    return FileRegistry.build(candidates, config)
