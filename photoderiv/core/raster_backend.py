"""
OpenCV driver: the simple single-frame raster backend.

Pixels live in one numpy array (BGR, BGRA or grayscale). Only the first
frame of an animated file is kept, and GIF cannot be written. Embedded
orientation is neither applied on decode nor exposed; the orientation
corrector reads it from the source bytes instead.
"""

import math
from typing import List, Optional, Tuple

import cv2
import numpy as np

from .backend import ImageBackend, ImageHandle, clamp_box
from .errors import TransformFailure, UnsupportedFormat
from .formats import backend_format_for, normalize_mime, is_supported
from ..utils.config import JPEG_QUALITY, PNG_QUALITY
from ..utils.logging import get_logger

logger = get_logger(__name__)

_RIGHT_ANGLES = {
    90: cv2.ROTATE_90_COUNTERCLOCKWISE,
    180: cv2.ROTATE_180,
    270: cv2.ROTATE_90_CLOCKWISE,
}


class RasterHandle(ImageHandle):
    """A single decoded raster buffer."""

    backend_name = "raster"

    def __init__(self, pixels: np.ndarray, mime_type: str):
        super().__init__(orientation=None)
        self.pixels = pixels
        self.mime_type = mime_type


def _to_uint8(pixels: np.ndarray) -> np.ndarray:
    if pixels.dtype == np.uint8:
        return pixels
    if pixels.dtype == np.uint16:
        return (pixels // 257).astype(np.uint8)
    return cv2.convertScaleAbs(pixels)


def _channels(pixels: np.ndarray) -> int:
    return 1 if pixels.ndim == 2 else pixels.shape[2]


def _with_alpha(pixels: np.ndarray) -> np.ndarray:
    channels = _channels(pixels)
    if channels == 4:
        return pixels
    if channels == 1:
        return cv2.cvtColor(pixels, cv2.COLOR_GRAY2BGRA)
    return cv2.cvtColor(pixels, cv2.COLOR_BGR2BGRA)


def _expanded_size(width: int, height: int, degrees: float) -> Tuple[int, int]:
    """Bounding box of the rotated image, computed from its corners."""
    radians = math.radians(degrees)
    cos, sin = math.cos(radians), math.sin(radians)
    cx, cy = width / 2.0, height / 2.0
    xs, ys = [], []
    for x, y in ((0, 0), (width, 0), (width, height), (0, height)):
        dx, dy = x - cx, y - cy
        xs.append(dx * cos + dy * sin)
        ys.append(-dx * sin + dy * cos)
    new_width = math.ceil(max(xs)) - math.floor(min(xs))
    new_height = math.ceil(max(ys)) - math.floor(min(ys))
    return new_width, new_height


class RasterBackend(ImageBackend):
    """OpenCV implementation of the backend contract."""

    name = "raster"

    def decode(self, data: bytes, mime_type: str) -> Tuple[Optional[RasterHandle], bool]:
        if not data:
            return None, False

        buffer = np.frombuffer(data, dtype=np.uint8)
        try:
            # IMREAD_UNCHANGED keeps alpha and ignores EXIF orientation
            pixels = cv2.imdecode(buffer, cv2.IMREAD_UNCHANGED)
        except cv2.error as e:
            logger.debug(f"OpenCV could not decode image: {e}")
            return None, False

        if pixels is None or pixels.size == 0:
            return None, False

        handle = RasterHandle(_to_uint8(pixels), normalize_mime(mime_type))
        logger.debug(f"Decoded raster at {pixels.shape[1]}x{pixels.shape[0]}")
        return handle, True

    def dimensions(self, handle: RasterHandle) -> Tuple[int, int]:
        self._require_valid(handle)
        height, width = handle.pixels.shape[:2]
        return width, height

    def frames(self, handle: RasterHandle) -> List[np.ndarray]:
        self._require_valid(handle)
        return [handle.pixels]

    def scale_to(self, handle: RasterHandle, width: int, height: int) -> None:
        self._require_valid(handle)
        if width < 1 or height < 1:
            raise TransformFailure(f"Cannot scale to {width}x{height}")

        current_width, current_height = self.dimensions(handle)
        if width * height <= current_width * current_height:
            interpolation = cv2.INTER_AREA
        else:
            interpolation = cv2.INTER_CUBIC

        try:
            handle.pixels = cv2.resize(handle.pixels, (width, height), interpolation=interpolation)
        except cv2.error as e:
            raise TransformFailure(f"OpenCV resize failed: {e}") from e

    def rotate(self, handle: RasterHandle, degrees: float) -> None:
        self._require_valid(handle)
        turn = degrees % 360
        if turn == 0:
            return

        if turn in _RIGHT_ANGLES:
            handle.pixels = cv2.rotate(handle.pixels, _RIGHT_ANGLES[turn])
            return

        pixels = handle.pixels
        if handle.mime_type == 'image/png':
            # Corners uncovered by the rotation stay transparent
            pixels = _with_alpha(pixels)

        width, height = self.dimensions(handle)
        new_width, new_height = _expanded_size(width, height, turn)
        matrix = cv2.getRotationMatrix2D((width / 2.0, height / 2.0), turn, 1.0)
        matrix[0, 2] += new_width / 2.0 - width / 2.0
        matrix[1, 2] += new_height / 2.0 - height / 2.0

        try:
            handle.pixels = cv2.warpAffine(pixels, matrix, (new_width, new_height),
                                           flags=cv2.INTER_CUBIC,
                                           borderMode=cv2.BORDER_CONSTANT,
                                           borderValue=0)
        except cv2.error as e:
            raise TransformFailure(f"OpenCV rotate failed: {e}") from e

    def flip(self, handle: RasterHandle, horizontal: bool = True, vertical: bool = False) -> None:
        self._require_valid(handle)
        if horizontal:
            handle.pixels = cv2.flip(handle.pixels, 1)
        if vertical:
            handle.pixels = cv2.flip(handle.pixels, 0)

    def crop(self, handle: RasterHandle, x: int, y: int, width: int, height: int) -> None:
        self._require_valid(handle)
        image_width, image_height = self.dimensions(handle)
        left, top, right, bottom = clamp_box(x, y, width, height, image_width, image_height)

        # Slices are views; copy so the source buffer can be dropped
        region = handle.pixels[top:bottom, left:right].copy()
        if (right - left, bottom - top) != (width, height):
            # Box reaches past the image: pad onto a canvas of the full box size
            if handle.mime_type == 'image/png':
                region = _with_alpha(region)
            canvas = np.zeros((height, width) + region.shape[2:], dtype=region.dtype)
            canvas[top - y:bottom - y, left - x:right - x] = region
            region = canvas

        handle.pixels = region

    def encode(self, handle: RasterHandle, mime_type: str, quality: Optional[int] = None) -> bytes:
        self._require_valid(handle)
        if not is_supported(mime_type):
            raise UnsupportedFormat(mime_type)

        fmt = backend_format_for(mime_type)
        pixels = handle.pixels

        if fmt == 'JPEG':
            if _channels(pixels) == 4:
                pixels = cv2.cvtColor(pixels, cv2.COLOR_BGRA2BGR)
            extension = '.jpg'
            params = [cv2.IMWRITE_JPEG_QUALITY, quality if quality is not None else JPEG_QUALITY,
                      cv2.IMWRITE_JPEG_PROGRESSIVE, 1]
        elif fmt == 'PNG':
            extension = '.png'
            params = [cv2.IMWRITE_PNG_COMPRESSION, quality if quality is not None else PNG_QUALITY]
        else:
            raise TransformFailure(f"The raster driver cannot write {mime_type}")

        try:
            ok, encoded = cv2.imencode(extension, pixels, params)
        except cv2.error as e:
            raise TransformFailure(f"OpenCV could not encode {mime_type}: {e}") from e
        if not ok:
            raise TransformFailure(f"OpenCV could not encode {mime_type}")

        return encoded.tobytes()

    def _free(self, handle: RasterHandle) -> None:
        handle.pixels = None
