"""
Backend abstraction for image decoding, transforms and encoding.

Two drivers implement the same contract: a Pillow driver that understands
multi-frame images and a single-frame OpenCV raster driver. Call sites only
see ``ImageBackend`` and ``ImageHandle``; which driver produced a handle is
decided once, at decode time.

Rotation sign convention shared by every driver: positive degrees rotate
counter-clockwise.
"""

from abc import ABC, abstractmethod
from typing import Any, List, Optional, Tuple

from .errors import TransformFailure


class ImageHandle:
    """
    Decoded image owned by exactly one pipeline invocation.

    Attributes:
        valid: False once released; transforms on an invalid handle fail
        orientation: Native orientation tag (1-8), or None if the driver
            has no metadata for it
    """

    backend_name = "unknown"

    def __init__(self, orientation: Optional[int] = None):
        self.valid = True
        self.orientation = orientation


class ImageBackend(ABC):
    """Capability interface implemented by every driver."""

    name = "unknown"

    @abstractmethod
    def decode(self, data: bytes, mime_type: str) -> Tuple[Optional[ImageHandle], bool]:
        """
        Parse bytes into a handle.

        Malformed data is reported as ``(None, False)``, never raised.
        """

    @abstractmethod
    def dimensions(self, handle: ImageHandle) -> Tuple[int, int]:
        """Current (width, height) after the last transform."""

    @abstractmethod
    def frames(self, handle: ImageHandle) -> List[Any]:
        """Backend-native frame objects, in display order."""

    @abstractmethod
    def scale_to(self, handle: ImageHandle, width: int, height: int) -> None:
        """Resize every frame to exactly ``width`` x ``height``."""

    @abstractmethod
    def rotate(self, handle: ImageHandle, degrees: float) -> None:
        """Rotate every frame counter-clockwise by ``degrees``."""

    @abstractmethod
    def flip(self, handle: ImageHandle, horizontal: bool = True, vertical: bool = False) -> None:
        """Mirror every frame left-right and/or top-bottom."""

    @abstractmethod
    def crop(self, handle: ImageHandle, x: int, y: int, width: int, height: int) -> None:
        """Keep only the given region of every frame."""

    @abstractmethod
    def encode(self, handle: ImageHandle, mime_type: str, quality: Optional[int] = None) -> bytes:
        """Serialize all frames to ``mime_type``."""

    def native_orientation(self, handle: ImageHandle) -> Optional[int]:
        """Orientation tag carried by the handle, or None if unknown."""
        self._require_valid(handle)
        return handle.orientation

    def apply_orientation(self, handle: ImageHandle, orientation: int) -> bool:
        """
        Correct an EXIF orientation in one native step.

        Returns:
            False if the driver has no native correction and the caller must
            run the rotate/flip steps itself
        """
        return False

    def reset_orientation(self, handle: ImageHandle) -> None:
        """Mark the handle as upright (EXIF orientation 1)."""
        self._require_valid(handle)
        handle.orientation = 1

    def release(self, handle: Optional[ImageHandle]) -> None:
        """Free backend resources held by the handle. Idempotent."""
        if handle is None or not handle.valid:
            return
        self._free(handle)
        handle.valid = False

    @abstractmethod
    def _free(self, handle: ImageHandle) -> None:
        pass

    def _require_valid(self, handle: Optional[ImageHandle]) -> None:
        if handle is None or not handle.valid:
            raise TransformFailure(f"{self.name} handle is not valid")


def clamp_box(x: int, y: int, width: int, height: int,
              image_width: int, image_height: int) -> Tuple[int, int, int, int]:
    """
    Clamp a crop box to the image bounds.

    Returns:
        Tuple of (left, top, right, bottom)

    Raises:
        TransformFailure: If nothing of the box lies inside the image
    """
    left = min(max(0, int(x)), image_width)
    top = min(max(0, int(y)), image_height)
    right = min(image_width, int(x) + int(width))
    bottom = min(image_height, int(y) + int(height))

    if right <= left or bottom <= top:
        raise TransformFailure(
            f"Crop box {x},{y} {width}x{height} is outside a {image_width}x{image_height} image"
        )
    return left, top, right, bottom


def get_backend(name: str) -> ImageBackend:
    """
    Instantiate a driver by name ('pillow' or 'raster').

    Raises:
        ValueError: If the name is unknown
    """
    if name == 'pillow':
        from .pillow_backend import PillowBackend
        return PillowBackend()
    if name == 'raster':
        from .raster_backend import RasterBackend
        return RasterBackend()
    raise ValueError(f"Unknown backend: {name}")
