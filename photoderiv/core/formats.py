"""
MIME type negotiation for uploaded images.

Extensions are attacker controlled, so content inspection wins over the
filename whenever it is available. A Content-Type header obtained while
fetching a remote image is trusted as-is.
"""

from pathlib import PurePosixPath
from types import MappingProxyType
from typing import Mapping, NamedTuple, Optional

from ..utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_MIME_TYPE = 'image/jpeg'


class ImageFormat(NamedTuple):
    """File extension and backend format identifier for a MIME type."""

    extension: str
    backend_format: str


FORMAT_MAP: Mapping[str, ImageFormat] = MappingProxyType({
    'image/jpeg': ImageFormat('jpg', 'JPEG'),
    'image/png': ImageFormat('png', 'PNG'),
    'image/gif': ImageFormat('gif', 'GIF'),
})

# Extensions seen in the wild that map onto the canonical ones above
_EXTENSION_ALIASES = {
    'jpeg': 'jpg',
    'jpe': 'jpg',
}


def normalize_mime(mime_type: Optional[str]) -> str:
    """Lowercase a MIME type and drop any parameters."""
    if not mime_type:
        return ''
    return mime_type.split(';', 1)[0].strip().lower()


def is_supported(mime_type: Optional[str]) -> bool:
    return normalize_mime(mime_type) in FORMAT_MAP


def supported_types() -> Mapping[str, str]:
    """Supported MIME types and their file extensions."""
    return {mime: fmt.extension for mime, fmt in FORMAT_MAP.items()}


def extension_for(mime_type: str) -> str:
    """
    File extension for a supported MIME type.

    Raises:
        KeyError: If the type is not supported
    """
    return FORMAT_MAP[normalize_mime(mime_type)].extension


def backend_format_for(mime_type: str) -> str:
    """
    Backend format identifier (e.g. 'JPEG') for a supported MIME type.

    Raises:
        KeyError: If the type is not supported
    """
    return FORMAT_MAP[normalize_mime(mime_type)].backend_format


def mime_from_extension(filename: str) -> str:
    """Map a filename extension onto a supported type, defaulting to JPEG."""
    ext = PurePosixPath(filename or '').suffix.lstrip('.').lower()
    ext = _EXTENSION_ALIASES.get(ext, ext)
    for mime, fmt in FORMAT_MAP.items():
        if fmt.extension == ext:
            return mime
    return DEFAULT_MIME_TYPE


def detect_mime_type(data: Optional[bytes],
                     filename: str = '',
                     content_type: Optional[str] = None) -> str:
    """
    Determine the MIME type of an upload.

    Priority: fetch Content-Type header, then content sniffing through the
    Pillow driver, then the filename extension.

    Args:
        data: Raw image bytes (may be empty)
        filename: Original filename, used only as a last resort
        content_type: Content-Type header from a remote fetch, if any

    Returns:
        MIME type string

    Example:
        >>> detect_mime_type(b"", "avatar.png")
        'image/png'
    """
    if content_type:
        mime_type = content_type.strip()
        logger.debug(f"Using Content-Type header: {mime_type}")
        return mime_type

    if data:
        from .pillow_backend import sniff_mime_type
        sniffed = sniff_mime_type(data)
        if sniffed:
            logger.debug(f"Sniffed type from content: {sniffed}")
            return sniffed

    mime_type = mime_from_extension(filename)
    logger.debug(f"Guessed type from extension: {mime_type}")
    return mime_type
