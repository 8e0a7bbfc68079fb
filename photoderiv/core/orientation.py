"""
Orientation correction from embedded EXIF metadata.

Drivers that keep the orientation tag on the handle (Pillow) correct it in
one native step. Drivers without metadata (the raster driver) fall back to
reading the tag from the source JPEG bytes and replaying the rotate/flip
steps below. Either way the handle ends up tagged upright, so a second
correction does nothing.
"""

from io import BytesIO
from typing import Dict, Optional, Tuple

import exifread

from .backend import ImageBackend, ImageHandle
from .formats import normalize_mime
from ..utils.logging import get_logger

logger = get_logger(__name__)

TOP_LEFT = 1

# EXIF orientation -> ordered (operation, kwargs) steps; rotate degrees are
# counter-clockwise
ORIENTATION_STEPS: Dict[int, Tuple[Tuple[str, dict], ...]] = {
    1: (),
    2: (('flip', {'horizontal': True, 'vertical': False}),),
    3: (('rotate', {'degrees': 180}),),
    4: (('flip', {'horizontal': False, 'vertical': True}),),
    5: (('flip', {'horizontal': False, 'vertical': True}), ('rotate', {'degrees': -90})),
    6: (('rotate', {'degrees': -90}),),
    7: (('flip', {'horizontal': True, 'vertical': False}), ('rotate', {'degrees': -90})),
    8: (('rotate', {'degrees': 90}),),
}


def read_exif_orientation(data: bytes) -> Optional[int]:
    """
    Read the IFD0 orientation code from raw image bytes.

    Returns:
        Code 1-8, or None when there is no usable orientation tag
    """
    try:
        tags = exifread.process_file(BytesIO(data), details=False)
    except Exception as e:
        # exifread raises assorted errors on damaged headers
        logger.debug(f"EXIF metadata unreadable: {e}")
        return None

    tag = tags.get('Image Orientation')
    if tag is None:
        return None

    values = getattr(tag, 'values', None)
    try:
        code = int(values[0])
    except (TypeError, ValueError, IndexError):
        return None

    return code if code in ORIENTATION_STEPS else None


def apply_steps(backend: ImageBackend, handle: ImageHandle, orientation: int) -> None:
    """Run the rotate/flip sequence for an orientation code."""
    for operation, kwargs in ORIENTATION_STEPS[orientation]:
        getattr(backend, operation)(handle, **kwargs)


def correct_orientation(backend: ImageBackend,
                        handle: ImageHandle,
                        mime_type: str,
                        source: bytes) -> Optional[int]:
    """
    Store the image upright according to its orientation metadata.

    Args:
        backend: Driver that owns the handle
        handle: Decoded image, modified in place
        mime_type: Type of the source image
        source: Original bytes, used when the driver has no metadata

    Returns:
        The orientation code that was corrected, or None if nothing applied
    """
    orientation = backend.native_orientation(handle)

    if orientation is not None:
        if orientation == TOP_LEFT or orientation not in ORIENTATION_STEPS:
            return None
        if not backend.apply_orientation(handle, orientation):
            apply_steps(backend, handle, orientation)
        backend.reset_orientation(handle)
        logger.debug(f"Corrected orientation {orientation} natively")
        return orientation

    if normalize_mime(mime_type) != 'image/jpeg':
        return None

    orientation = read_exif_orientation(source)
    backend.reset_orientation(handle)
    if orientation is None or orientation == TOP_LEFT:
        return None

    apply_steps(backend, handle, orientation)
    logger.debug(f"Corrected orientation {orientation} from EXIF metadata")
    return orientation
