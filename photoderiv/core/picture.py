"""
A decoded upload and the transforms applied to it.

``Picture`` owns exactly one backend handle for the lifetime of a pipeline
invocation. Use it as a context manager so the handle is released on every
exit path.
"""

import time
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional

from .backend import ImageBackend, ImageHandle, get_backend
from .errors import DecodeFailure, TransformFailure, UnsupportedFormat
from .formats import extension_for, is_supported, normalize_mime
from .geometry import scale_down, scale_up
from .orientation import correct_orientation
from ..utils.config import Config
from ..utils.logging import TimingLogger, content_digest, get_logger

logger = get_logger(__name__)


@dataclass
class ImageMeta:
    """Current state of a decoded image."""

    mime_type: str
    width: int
    height: int
    is_valid: bool
    is_multi_frame: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class Picture:
    """
    Decoded image plus its driver, mime type and source bytes.

    All geometry methods transform the handle in place and refresh
    ``meta``. Once released, every transform raises ``TransformFailure``.
    """

    def __init__(self,
                 backend: ImageBackend,
                 handle: ImageHandle,
                 mime_type: str,
                 source: bytes,
                 config: Optional[Config] = None):
        self.backend = backend
        self.handle = handle
        self.source = source
        self.config = config or Config()
        self.timings = TimingLogger(logger)
        self.meta = ImageMeta(mime_type=mime_type, width=0, height=0,
                              is_valid=True, is_multi_frame=False)
        self._refresh()

    @classmethod
    def from_bytes(cls,
                   data: bytes,
                   mime_type: str,
                   config: Optional[Config] = None) -> 'Picture':
        """
        Decode bytes with the first driver that accepts them.

        Args:
            data: Raw image bytes
            mime_type: Type the image will be stored as
            config: Pipeline configuration; its ``backends`` sets the order

        Returns:
            Picture holding a valid handle

        Raises:
            DecodeFailure: If every driver rejects the bytes
            UnsupportedFormat: If the type is not JPEG, PNG or GIF
        """
        config = config or Config()
        digest = content_digest(data or b'')

        for name in config.backends:
            backend = get_backend(name)
            start_time = time.time()
            handle, ok = backend.decode(data, mime_type)
            if not ok:
                logger.debug(f"{name} driver rejected upload {digest}")
                continue

            if not is_supported(mime_type):
                backend.release(handle)
                raise UnsupportedFormat(mime_type)

            try:
                picture = cls(backend, handle, normalize_mime(mime_type), data, config)
            except Exception:
                backend.release(handle)
                raise
            picture.timings.log_operation('decode', (time.time() - start_time) * 1000,
                                          details={'backend': name})
            logger.info(f"Decoded upload {digest} with {name} driver: "
                        f"{picture.width}x{picture.height} {picture.mime_type}")
            return picture

        raise DecodeFailure(f"No backend could decode upload {digest} ({len(data or b'')} bytes)")

    def __enter__(self) -> 'Picture':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()

    @property
    def is_valid(self) -> bool:
        return self.meta.is_valid

    @property
    def width(self) -> int:
        return self.meta.width

    @property
    def height(self) -> int:
        return self.meta.height

    @property
    def mime_type(self) -> str:
        return self.meta.mime_type

    @property
    def ext(self) -> str:
        return extension_for(self.mime_type)

    @property
    def backend_name(self) -> str:
        return self.backend.name

    def scale_down(self, max_length: int) -> None:
        """Fit inside ``max_length`` (see ``geometry.scale_down``)."""
        width, height = self._target(scale_down, max_length)
        self._scale(width, height, 'scale_down')

    def scale_up(self, min_length: int) -> None:
        """Enlarge until both sides reach ``min_length``."""
        width, height = self._target(scale_up, min_length)
        self._scale(width, height, 'scale_up')

    def scale_square(self, size: int) -> None:
        """Resize to ``size`` x ``size`` regardless of aspect ratio."""
        self._scale(size, size, 'scale_square')

    def crop(self, max_length: int, x: int, y: int, width: int, height: int) -> None:
        """
        Cut out a region, then fit the result inside ``max_length``.

        Args:
            max_length: Bound applied to the cropped region
            x: Left edge of the region
            y: Top edge of the region
            width: Region width
            height: Region height
        """
        self._require_valid()
        with self._timed('crop'):
            self.backend.crop(self.handle, x, y, width, height)
        self._refresh()
        self.scale_down(max_length)

    def rotate(self, degrees: float) -> None:
        """Rotate counter-clockwise by ``degrees``."""
        self._require_valid()
        with self._timed('rotate'):
            self.backend.rotate(self.handle, degrees)
        self._refresh()

    def flip(self, horizontal: bool = True, vertical: bool = False) -> None:
        self._require_valid()
        with self._timed('flip'):
            self.backend.flip(self.handle, horizontal, vertical)
        self._refresh()

    def orient(self) -> Optional[int]:
        """
        Apply the embedded orientation so pixels are stored upright.

        Returns:
            The orientation code that was corrected, or None
        """
        self._require_valid()
        with self._timed('orient'):
            orientation = correct_orientation(self.backend, self.handle,
                                              self.mime_type, self.source)
        self._refresh()
        return orientation

    def encode(self) -> bytes:
        """Serialize the current state with the configured quality."""
        self._require_valid()
        with self._timed('encode'):
            return self.backend.encode(self.handle, self.mime_type,
                                       self.config.quality_for(self.mime_type))

    def release(self) -> None:
        """Free the backend handle. Safe to call more than once."""
        if self.handle is not None:
            self.backend.release(self.handle)
        self.meta.is_valid = False

    def _target(self, compute, bound: int):
        self._require_valid()
        try:
            return compute(self.width, self.height, bound)
        except ValueError as e:
            raise TransformFailure(str(e)) from e

    def _scale(self, width: int, height: int, operation: str) -> None:
        self._require_valid()
        if (width, height) == (self.width, self.height):
            return
        with self._timed(operation):
            self.backend.scale_to(self.handle, width, height)
        self._refresh()

    def _refresh(self) -> None:
        width, height = self.backend.dimensions(self.handle)
        self.meta.width = width
        self.meta.height = height
        self.meta.is_multi_frame = len(self.backend.frames(self.handle)) > 1

    def _require_valid(self) -> None:
        if not self.meta.is_valid or not self.handle.valid:
            raise TransformFailure("Image handle has been released")

    def _timed(self, operation: str) -> '_Timer':
        return _Timer(self.timings, operation)


class _Timer:
    """Context manager feeding one operation's duration to a TimingLogger."""

    def __init__(self, timings: TimingLogger, operation: str):
        self.timings = timings
        self.operation = operation
        self.start_time = 0.0

    def __enter__(self) -> '_Timer':
        self.start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.timings.log_operation(self.operation,
                                   (time.time() - self.start_time) * 1000,
                                   success=exc_type is None)
