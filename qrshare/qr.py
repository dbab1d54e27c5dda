import io
from dataclasses import dataclass

import qrcode
from qrcode.constants import ERROR_CORRECT_L, ERROR_CORRECT_M
from qrcode import util
from qrcode.exceptions import DataOverflowError
from qrcode.image.pil import PilImage
from qrcode.image.svg import SvgPathImage

from .config import CodeFormat
from .errors import EncodingCapacityExceeded

# Tried in order; the first level the URL fits at wins.
ERROR_CORRECTION_LEVELS = (ERROR_CORRECT_M, ERROR_CORRECT_L)

_IMAGE_FACTORIES = {
    CodeFormat.RASTER: PilImage,
    CodeFormat.VECTOR: SvgPathImage,
}


@dataclass(frozen=True)
class OpticalCode:
    url: str
    format: CodeFormat
    version: int
    error_correction: int
    modules: tuple[tuple[bool, ...], ...]
    image: bytes

    @property
    def size(self) -> int:
        return len(self.modules)


MAX_VERSION = 40


def fits_largest_symbol(data: bytes, level: int) -> bool:
    """Whether byte-mode data fits a version 40 symbol at the given level."""
    length_bits = util.mode_sizes_for_version(MAX_VERSION)[util.MODE_8BIT_BYTE]
    needed = 4 + length_bits + 8 * len(data)
    return needed <= util.BIT_LIMIT_TABLE[level][MAX_VERSION]


def build_qr(url: str) -> qrcode.QRCode:
    """Fit the URL, as raw bytes, into the smallest QR symbol that holds it."""
    data = url.encode("utf-8")
    for level in ERROR_CORRECTION_LEVELS:
        if not fits_largest_symbol(data, level):
            continue
        qr = qrcode.QRCode(version=None, error_correction=level, box_size=10, border=4)
        qr.add_data(data, optimize=0)
        try:
            qr.make(fit=True)
        except (DataOverflowError, ValueError):
            # newer qrcode releases reject the overflow as "version 41"
            continue
        return qr
    raise EncodingCapacityExceeded(url)


def render(qr: qrcode.QRCode, fmt: CodeFormat) -> bytes:
    img = qr.make_image(image_factory=_IMAGE_FACTORIES[fmt])
    buf = io.BytesIO()
    if fmt is CodeFormat.RASTER:
        img.save(buf, format="PNG")
    else:
        img.save(buf)
    return buf.getvalue()


def encode(url: str, fmt: CodeFormat) -> OpticalCode | None:
    if fmt is CodeFormat.NONE:
        return None
    qr = build_qr(url)
    return OpticalCode(
        url=url,
        format=fmt,
        version=qr.version,
        error_correction=qr.error_correction,
        modules=tuple(tuple(bool(m) for m in row) for row in qr.modules),
        image=render(qr, fmt),
    )
