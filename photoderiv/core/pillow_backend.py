"""
Pillow driver: the multi-frame capable backend.

Every frame of an animated GIF is materialised at decode time, so transforms
apply to whole, composited frames. Palette frames are converted to RGB or
RGBA up front so resampling behaves the same for every input.
"""

from io import BytesIO
from typing import List, Optional, Tuple

from PIL import Image, ImageSequence

from .backend import ImageBackend, ImageHandle, clamp_box
from .errors import TransformFailure, UnsupportedFormat
from .formats import backend_format_for, normalize_mime, is_supported
from ..utils.config import JPEG_QUALITY, PNG_QUALITY
from ..utils.logging import get_logger

logger = get_logger(__name__)

EXIF_ORIENTATION_TAG = 0x0112

# Single transpose equivalent to each EXIF orientation code
_ORIENTATION_TRANSPOSE = {
    2: Image.Transpose.FLIP_LEFT_RIGHT,
    3: Image.Transpose.ROTATE_180,
    4: Image.Transpose.FLIP_TOP_BOTTOM,
    5: Image.Transpose.TRANSPOSE,
    6: Image.Transpose.ROTATE_270,
    7: Image.Transpose.TRANSVERSE,
    8: Image.Transpose.ROTATE_90,
}

_RIGHT_ANGLES = {
    90: Image.Transpose.ROTATE_90,
    180: Image.Transpose.ROTATE_180,
    270: Image.Transpose.ROTATE_270,
}

_DECODE_ERRORS = (OSError, ValueError, SyntaxError, EOFError, Image.DecompressionBombError)


class PillowHandle(ImageHandle):
    """Decoded frames plus the animation info needed to write them back."""

    backend_name = "pillow"

    def __init__(self,
                 frames: List[Image.Image],
                 mime_type: str,
                 durations: Optional[List[int]] = None,
                 loop: Optional[int] = None,
                 orientation: int = 1):
        super().__init__(orientation=orientation)
        self.frames = frames
        self.mime_type = mime_type
        self.durations = durations or [0] * len(frames)
        self.loop = loop


def sniff_mime_type(data: bytes) -> Optional[str]:
    """
    MIME type read from the image header, or None if Pillow cannot tell.

    Only the header is parsed; pixel data is not decoded.
    """
    try:
        with Image.open(BytesIO(data)) as img:
            return img.get_format_mimetype()
    except _DECODE_ERRORS as e:
        logger.debug(f"Content sniffing failed: {e}")
        return None


def probe(data: bytes) -> Optional[Tuple[int, int, str]]:
    """
    Read (width, height, mime_type) from an image header.

    Returns:
        Tuple, or None when the data is not a recognisable image
    """
    try:
        with Image.open(BytesIO(data)) as img:
            return img.width, img.height, img.get_format_mimetype()
    except _DECODE_ERRORS as e:
        logger.debug(f"Header probe failed: {e}")
        return None


def _orientation_of(img: Image.Image) -> int:
    try:
        value = img.getexif().get(EXIF_ORIENTATION_TAG)
    except _DECODE_ERRORS:
        return 1
    if value in _ORIENTATION_TRANSPOSE:
        return value
    return 1


def _normalize_mode(frame: Image.Image) -> Image.Image:
    if frame.mode == 'P':
        return frame.convert('RGBA' if 'transparency' in frame.info else 'RGB')
    if frame.mode == 'PA':
        return frame.convert('RGBA')
    if frame.mode == '1':
        return frame.convert('L')
    return frame


def _has_alpha(frame: Image.Image) -> bool:
    return frame.mode in ('RGBA', 'LA', 'RGBa', 'La')


class PillowBackend(ImageBackend):
    """Pillow implementation of the backend contract."""

    name = "pillow"

    def decode(self, data: bytes, mime_type: str) -> Tuple[Optional[PillowHandle], bool]:
        if not data:
            return None, False

        try:
            with Image.open(BytesIO(data)) as img:
                orientation = _orientation_of(img)
                loop = img.info.get('loop')
                frames, durations = [], []
                for frame in ImageSequence.Iterator(img):
                    durations.append(int(frame.info.get('duration', 0)))
                    frames.append(_normalize_mode(frame.copy()))
        except _DECODE_ERRORS as e:
            logger.debug(f"Pillow could not decode image: {e}")
            return None, False

        if not frames:
            return None, False

        handle = PillowHandle(frames, normalize_mime(mime_type), durations, loop, orientation)
        logger.debug(f"Decoded {len(frames)} frame(s) at {frames[0].width}x{frames[0].height}")
        return handle, True

    def dimensions(self, handle: PillowHandle) -> Tuple[int, int]:
        self._require_valid(handle)
        return handle.frames[0].size

    def frames(self, handle: PillowHandle) -> List[Image.Image]:
        self._require_valid(handle)
        return list(handle.frames)

    def scale_to(self, handle: PillowHandle, width: int, height: int) -> None:
        self._require_valid(handle)
        if width < 1 or height < 1:
            raise TransformFailure(f"Cannot scale to {width}x{height}")

        handle.frames = [
            frame.resize((width, height), Image.Resampling.LANCZOS)
            for frame in handle.frames
        ]

    def rotate(self, handle: PillowHandle, degrees: float) -> None:
        self._require_valid(handle)
        turn = degrees % 360
        if turn == 0:
            return

        if turn in _RIGHT_ANGLES:
            method = _RIGHT_ANGLES[turn]
            handle.frames = [frame.transpose(method) for frame in handle.frames]
            return

        rotated = []
        for frame in handle.frames:
            if handle.mime_type == 'image/png':
                # Corners uncovered by the rotation stay transparent
                if not _has_alpha(frame):
                    frame = frame.convert('RGBA')
                fill = (0,) * len(frame.getbands())
            else:
                fill = None
            rotated.append(frame.rotate(turn, resample=Image.Resampling.BICUBIC,
                                        expand=True, fillcolor=fill))
        handle.frames = rotated

    def flip(self, handle: PillowHandle, horizontal: bool = True, vertical: bool = False) -> None:
        self._require_valid(handle)
        if horizontal:
            handle.frames = [f.transpose(Image.Transpose.FLIP_LEFT_RIGHT) for f in handle.frames]
        if vertical:
            handle.frames = [f.transpose(Image.Transpose.FLIP_TOP_BOTTOM) for f in handle.frames]

    def crop(self, handle: PillowHandle, x: int, y: int, width: int, height: int) -> None:
        self._require_valid(handle)
        image_width, image_height = self.dimensions(handle)
        left, top, right, bottom = clamp_box(x, y, width, height, image_width, image_height)

        cropped = []
        for frame in handle.frames:
            region = frame.crop((left, top, right, bottom))
            if region.size != (width, height):
                # Box reaches past the image: pad onto a canvas of the full box size
                if handle.mime_type == 'image/png' and not _has_alpha(region):
                    region = region.convert('RGBA')
                canvas = Image.new(region.mode, (width, height), 0)
                canvas.paste(region, (left - x, top - y))
                region = canvas
            cropped.append(region)
        handle.frames = cropped

    def apply_orientation(self, handle: PillowHandle, orientation: int) -> bool:
        self._require_valid(handle)
        method = _ORIENTATION_TRANSPOSE.get(orientation)
        if method is not None:
            handle.frames = [frame.transpose(method) for frame in handle.frames]
        return True

    def encode(self, handle: PillowHandle, mime_type: str, quality: Optional[int] = None) -> bytes:
        self._require_valid(handle)
        if not is_supported(mime_type):
            raise UnsupportedFormat(mime_type)

        fmt = backend_format_for(mime_type)
        frames = handle.frames
        buffer = BytesIO()

        try:
            if fmt == 'JPEG':
                first = frames[0]
                if first.mode not in ('RGB', 'L', 'CMYK'):
                    first = first.convert('RGB')
                first.save(buffer, 'JPEG',
                           quality=quality if quality is not None else JPEG_QUALITY,
                           progressive=True)
            elif fmt == 'PNG':
                frames = [f.convert('RGBA') if f.mode == 'CMYK' else f for f in frames]
                options = {'compress_level': quality if quality is not None else PNG_QUALITY}
                if len(frames) > 1:
                    options.update(save_all=True, append_images=frames[1:],
                                   duration=handle.durations)
                    if handle.loop is not None:
                        options['loop'] = handle.loop
                frames[0].save(buffer, 'PNG', **options)
            else:
                options = {}
                if len(frames) > 1:
                    options.update(save_all=True, append_images=frames[1:],
                                   duration=handle.durations, disposal=2)
                    if handle.loop is not None:
                        options['loop'] = handle.loop
                frames[0].save(buffer, 'GIF', **options)
        except (OSError, ValueError, KeyError) as e:
            raise TransformFailure(f"Pillow could not encode {mime_type}: {e}") from e

        return buffer.getvalue()

    def _free(self, handle: PillowHandle) -> None:
        for frame in handle.frames:
            frame.close()
        handle.frames = []
