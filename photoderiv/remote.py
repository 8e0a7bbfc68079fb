"""
Helpers for images that live on other servers.

Fetching and caching are supplied by the caller: ``fetch(url)`` returns the
body and the Content-Type header, and the cache only needs ``get`` and
``set``. None of this touches pixel data beyond reading image headers.
"""

from dataclasses import dataclass, asdict
from pathlib import PurePosixPath
from typing import Any, Callable, Dict, Optional, Protocol, Tuple
from urllib.parse import urlparse

from .core.pillow_backend import probe
from .core.pipeline import AvatarResult, DerivativePipeline
from .utils.logging import get_logger

logger = get_logger(__name__)

Fetcher = Callable[[str], Tuple[bytes, Optional[str]]]


class Cache(Protocol):
    def get(self, key: str) -> Any:
        ...

    def set(self, key: str, value: Any) -> None:
        ...


class MemoryCache:
    """Process-local cache with the ``get``/``set`` interface."""

    def __init__(self):
        self.entries: Dict[str, Any] = {}

    def get(self, key: str) -> Any:
        return self.entries.get(key)

    def set(self, key: str, value: Any) -> None:
        self.entries[key] = value


@dataclass
class RemoteImageInfo:
    """Header information of a remote image."""

    width: int
    height: int
    mime_type: str
    size: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def get_info_from_url(url: str, fetch: Fetcher, cache: Cache) -> Optional[RemoteImageInfo]:
    """
    Dimensions, type and byte size of a remote image, memoised per URL.

    Args:
        url: Image URL
        fetch: Callable returning (body, content_type)
        cache: Cache for the looked-up info

    Returns:
        RemoteImageInfo, or None when the body is not an image
    """
    cached = cache.get(url)
    if isinstance(cached, dict) and cached:
        return RemoteImageInfo(**cached)

    logger.debug(f"Fetching image info from {url}")
    data, _ = fetch(url)
    header = probe(data) if data else None
    if header is None:
        logger.info(f"No image found at {url}")
        return None

    width, height, mime_type = header
    info = RemoteImageInfo(width=width, height=height, mime_type=mime_type, size=len(data))
    cache.set(url, info.to_dict())
    return info


def fetch_profile_photo(url: str,
                        fetch: Fetcher,
                        pipeline: DerivativePipeline,
                        owner_id: int,
                        contact_id: int,
                        strict: bool = False) -> AvatarResult:
    """
    Fetch a remote avatar and run the profile-photo flow on it.

    The fetch's Content-Type header takes precedence over content sniffing.

    Args:
        url: Avatar URL
        fetch: Callable returning (body, content_type)
        pipeline: Pipeline that stores the avatars
        owner_id: Owning user
        contact_id: Contact the avatar belongs to
        strict: Raise on failure instead of returning default avatars

    Returns:
        AvatarResult
    """
    logger.info(f"Importing profile photo from {url}")
    data, content_type = fetch(url)
    filename = PurePosixPath(urlparse(url).path).name
    return pipeline.import_profile_photo(data, owner_id, contact_id,
                                         filename=filename,
                                         content_type=content_type,
                                         strict=strict)
