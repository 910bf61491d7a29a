# -*- coding: utf-8 -*-
import io
from typing import List, Tuple

from PIL import Image, UnidentifiedImageError

from bulkgen.domain.errors import ImageProcessingError


def sniff_extension(data: bytes, default: str = "png") -> str:
    """
    Guess a file extension from magic bytes (PNG, JPEG, WEBP, GIF).
    """
    if data[0:8] == b"\x89PNG\r\n\x1a\n":
        return "png"
    if data[0:2] == b"\xff\xd8":
        return "jpg"
    if data[0:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "webp"
    if data[0:6] in (b"GIF87a", b"GIF89a"):
        return "gif"
    return default


def _open(data: bytes) -> Image.Image:
    if not data:
        raise ImageProcessingError("empty image data")
    try:
        im = Image.open(io.BytesIO(data))
        im.load()
        return im
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise ImageProcessingError(f"couldn't decode image: {e}")


def _encode(im: Image.Image, fmt: str) -> bytes:
    buf = io.BytesIO()
    if fmt == "JPEG" and im.mode not in ("RGB", "L"):
        im = im.convert("RGB")
    im.save(buf, format=fmt)
    return buf.getvalue()


def image_size(data: bytes) -> Tuple[int, int]:
    return _open(data).size


def resize(factor: int, data: bytes) -> bytes:
    """
    Downscale by 1/factor and return JPEG bytes (used for thumbnails).
    """
    if factor < 1:
        raise ImageProcessingError(f"invalid scale factor: {factor}")
    im = _open(data)
    w, h = im.size
    size = (max(1, w // factor), max(1, h // factor))
    return _encode(im.resize(size, Image.Resampling.LANCZOS), "JPEG")


def split_grid(data: bytes) -> List[bytes]:
    """
    Split a 2x2 composite into four PNG images ordered
    top-left, top-right, bottom-left, bottom-right.
    """
    im = _open(data)
    w, h = im.size
    if w < 2 or h < 2:
        raise ImageProcessingError(f"image too small to split: {w}x{h}")
    half_w, half_h = w // 2, h // 2
    boxes = [
        (0, 0, half_w, half_h),
        (half_w, 0, w, half_h),
        (0, half_h, half_w, h),
        (half_w, half_h, w, h),
    ]
    return [_encode(im.crop(box), "PNG") for box in boxes]
