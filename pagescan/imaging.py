"""
Raster conversion helpers: decoding camera bytes, OpenCV/PIL bridging
and thumbnails.
"""

import io
from typing import Optional, Tuple

import cv2
import numpy as np
from PIL import Image

from .models import Frame

THUMBNAIL_SIZE = (300, 300)


def decode_image(image_bytes: bytes) -> Optional[np.ndarray]:
    """Decode encoded image bytes (JPEG/PNG/...) to a BGR array."""
    nparr = np.frombuffer(image_bytes, np.uint8)
    return cv2.imdecode(nparr, cv2.IMREAD_COLOR)


def frame_from_bytes(image_bytes: bytes, device_id: str = "default", timestamp: Optional[float] = None) -> Optional[Frame]:
    """Wrap an encoded camera snapshot as a Frame, or None if undecodable."""
    image = decode_image(image_bytes)
    if image is None:
        return None
    if timestamp is None:
        return Frame(image=image, device_id=device_id)
    return Frame(image=image, timestamp=timestamp, device_id=device_id)


def to_gray(image: np.ndarray) -> np.ndarray:
    """Single intensity channel, leaving gray input untouched."""
    if image.ndim == 2:
        return image
    if image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
    return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)


def cv2_to_pil(image: np.ndarray) -> Image.Image:
    """Convert an OpenCV (BGR or gray) array to a PIL image."""
    if image.ndim == 2:
        return Image.fromarray(image)
    return Image.fromarray(cv2.cvtColor(image, cv2.COLOR_BGR2RGB))


def pil_to_bytes(image: Image.Image, format: str = "JPEG", quality: int = 90) -> bytes:
    buffer = io.BytesIO()
    if format.upper() == "JPEG":
        if image.mode not in ("RGB", "L"):
            image = image.convert("RGB")
        image.save(buffer, format="JPEG", quality=quality)
    else:
        image.save(buffer, format=format.upper())
    return buffer.getvalue()


def create_thumbnail(image: np.ndarray, max_size: Tuple[int, int] = THUMBNAIL_SIZE) -> Image.Image:
    """
    Create a thumbnail of a page raster.

    Args:
        image: OpenCV image (BGR or gray)
        max_size: Maximum dimensions

    Returns:
        Thumbnail as a PIL image
    """
    thumbnail = cv2_to_pil(image)
    thumbnail.thumbnail(max_size, Image.Resampling.LANCZOS)
    return thumbnail


def thumbnail_bytes(image: np.ndarray, max_size: Tuple[int, int] = THUMBNAIL_SIZE) -> bytes:
    """JPEG-encoded thumbnail, as stored on session pages."""
    return pil_to_bytes(create_thumbnail(image, max_size), "JPEG", quality=85)


def resize_to_dpi(image: np.ndarray, source_dpi: float, target_dpi: float) -> np.ndarray:
    """Resample so the physical size is kept when moving between resolutions."""
    if abs(source_dpi - target_dpi) < 1e-6:
        return image
    scale = target_dpi / source_dpi
    h, w = image.shape[:2]
    size = (max(1, int(round(w * scale))), max(1, int(round(h * scale))))
    interpolation = cv2.INTER_AREA if scale < 1 else cv2.INTER_LINEAR
    if is_two_level(image):
        # keep binarized pages strictly black and white
        interpolation = cv2.INTER_NEAREST
    return cv2.resize(image, size, interpolation=interpolation)


def is_two_level(image: np.ndarray) -> bool:
    """True for single-channel images holding only 0 and 255."""
    if image.ndim != 2:
        return False
    return bool(np.all((image == 0) | (image == 255)))
