"""Turn selected frames into image bytes, data URLs or files with Pillow."""

import base64
import io
import logging
from pathlib import Path

import numpy as np
from PIL import Image

from .config import ImageFormat
from .extractor import Frame

logger = logging.getLogger(__name__)


def to_pil(frame: Frame) -> Image.Image:
    """Wrap a frame's pixels in a PIL image (RGB or RGBA)."""
    return Image.fromarray(np.ascontiguousarray(frame.pixels))


def encode_frame(
    frame: Frame,
    image_format: ImageFormat = ImageFormat.PNG,
    quality: int = 92,
) -> bytes:
    """Encode a frame as PNG or JPEG bytes."""
    img = to_pil(frame)
    if image_format == ImageFormat.JPEG and img.mode == "RGBA":
        img = img.convert("RGB")  # JPEG has no alpha channel

    buf = io.BytesIO()
    if image_format == ImageFormat.JPEG:
        img.save(buf, format=image_format.pil_format, quality=quality)
    else:
        img.save(buf, format=image_format.pil_format)
    return buf.getvalue()


def to_data_url(frame: Frame, image_format: ImageFormat = ImageFormat.PNG) -> str:
    """Encode a frame as a ``data:`` URL suitable for embedding in HTML."""
    payload = base64.b64encode(encode_frame(frame, image_format)).decode("ascii")
    return f"data:{image_format.mime_type};base64,{payload}"


def save_frame(
    frame: Frame,
    path: Path,
    image_format: ImageFormat = ImageFormat.PNG,
    quality: int = 92,
) -> Path:
    """Write a frame to disk and return the path written."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(encode_frame(frame, image_format, quality))
    logger.debug("Wrote %s (%dx%d)", path, frame.width, frame.height)
    return path
