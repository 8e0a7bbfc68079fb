"""
Storage boundary of the derivative pipeline.

The pipeline hands every derivative to a ``PhotoStore`` and builds public
URLs with ``PhotoUrls``. Real deployments plug in their own store; the
in-memory one here backs tests and local tooling.
"""

import uuid
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Dict, List, Optional, Protocol, Tuple

from .utils.logging import get_logger

logger = get_logger(__name__)


def new_resource_id() -> str:
    """Fresh resource identity shared by all derivatives of one upload."""
    return uuid.uuid4().hex


@dataclass
class Permissions:
    """Access lists in the store's bracketed id format; empty means public."""

    allow_cid: str = ''
    allow_gid: str = ''
    deny_cid: str = ''
    deny_gid: str = ''


@dataclass
class StoredPhotoRecord:
    """One derivative row, keyed by (resource_id, owner_id, contact_id, scale)."""

    owner_id: int
    contact_id: int
    resource_id: str
    scale: int
    filename: str
    album: str
    data: bytes
    width: int
    height: int
    mime_type: str
    profile: bool = False
    permissions: Permissions = field(default_factory=Permissions)
    description: str = ''
    # Filled by the store; shared by every row of one resource
    guid: str = ''

    def __post_init__(self):
        # Only the basename of the uploaded file is kept
        self.filename = PurePosixPath(self.filename.replace('\\', '/')).name if self.filename else ''

    @property
    def size_bytes(self) -> int:
        return len(self.data)

    @property
    def key(self) -> Tuple[str, int, int, int]:
        return self.resource_id, self.owner_id, self.contact_id, self.scale


class PhotoStore(Protocol):
    """What the pipeline needs from persistence."""

    def put(self, record: StoredPhotoRecord) -> bool:
        """Insert or update the row for ``record.key``; False on rejection."""
        ...

    def find_resource_id(self, owner_id: int, contact_id: int,
                         scale: int, album: str) -> Optional[str]:
        """Resource id already stored for this owner/contact/scale/album."""
        ...


class MemoryPhotoStore:
    """Dictionary-backed store with upsert semantics."""

    def __init__(self):
        self.rows: Dict[Tuple[str, int, int, int], StoredPhotoRecord] = {}
        self.guids: Dict[str, str] = {}

    def put(self, record: StoredPhotoRecord) -> bool:
        record.guid = self.guids.setdefault(record.resource_id, uuid.uuid4().hex)
        action = "Updated" if record.key in self.rows else "Inserted"
        self.rows[record.key] = record
        logger.debug(f"{action} photo row {record.resource_id}-{record.scale}")
        return True

    def find_resource_id(self, owner_id: int, contact_id: int,
                         scale: int, album: str) -> Optional[str]:
        for record in self.rows.values():
            if (record.owner_id, record.contact_id, record.scale, record.album) == \
                    (owner_id, contact_id, scale, album) and record.resource_id:
                return record.resource_id
        return None

    def get(self, resource_id: str, owner_id: int, contact_id: int,
            scale: int) -> Optional[StoredPhotoRecord]:
        return self.rows.get((resource_id, owner_id, contact_id, scale))

    def scales(self, resource_id: str) -> List[int]:
        """Scale levels stored for a resource, ascending."""
        return sorted(key[3] for key in self.rows if key[0] == resource_id)


class PhotoUrls:
    """Public URLs for stored derivatives."""

    DEFAULT_AVATAR_SIZES = (175, 80, 48)

    def __init__(self, base_url: str):
        self.base_url = base_url.rstrip('/')

    def photo(self, resource_id: str, scale: int, extension: str, suffix: str = '') -> str:
        return f"{self.base_url}/photo/{resource_id}-{int(scale)}.{extension}{suffix}"

    def page(self, nickname: str, resource_id: str) -> str:
        return f"{self.base_url}/photos/{nickname}/image/{resource_id}"

    def default_avatars(self) -> Tuple[str, ...]:
        """Static person images served when an avatar cannot be produced."""
        return tuple(f"{self.base_url}/images/person-{size}.jpg"
                     for size in self.DEFAULT_AVATAR_SIZES)
