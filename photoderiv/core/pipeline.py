"""
Derivative generation and persistence.

Two flows sit on top of ``DerivativePipeline.generate``:

* general uploads: full image plus medium, small and thumbnail copies,
  each produced only when the source is large enough;
* profile photos: three square avatars, each scaled from the previous one.

Derivatives of one upload are produced in order on a single handle. A
derivative that fails to transform or persist is recorded and the next one
is still attempted; only decode and format errors end an upload early.
"""

import time
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from .errors import (DecodeFailure, PersistenceFailure, TransformFailure,
                     UnsupportedFormat, UploadTooLarge)
from .formats import detect_mime_type
from .geometry import scale_down, square_crop_offset
from .picture import Picture
from ..storage import (MemoryPhotoStore, Permissions, PhotoStore, PhotoUrls,
                       StoredPhotoRecord, new_resource_id)
from ..utils.config import Config
from ..utils.logging import content_digest, get_logger, log_derivative, set_package_level

logger = get_logger(__name__)

LARGE_LENGTH = 800
MEDIUM_LENGTH = 640
SMALL_LENGTH = 320
THUMBNAIL_SIZE = 160
AVATAR_SIZES = (175, 80, 48)


class ScaleLevel(IntEnum):
    """Role of a derivative, as stored in the scale column."""

    FULL = 0
    MEDIUM = 1
    SMALL = 2
    THUMBNAIL = 3
    AVATAR = 4
    AVATAR_THUMB = 5
    AVATAR_MICRO = 6


class Operation(Enum):
    """Transform applied to the handle before a derivative is encoded."""

    AS_IS = 'as_is'
    SCALE_DOWN = 'scale_down'
    SCALE_UP = 'scale_up'
    SCALE_SQUARE = 'scale_square'
    SQUARE_CROP = 'square_crop'
    RECT_CROP = 'rect_crop'


@dataclass(frozen=True)
class CropBox:
    """Free crop region; the cut-out is then fitted inside ``max_length``."""

    x: int
    y: int
    width: int
    height: int
    max_length: int


@dataclass(frozen=True)
class DerivativeSpec:
    """One step of a derivative sequence."""

    scale: int
    operation: Operation
    parameter: Union[int, CropBox, None] = None
    name: str = ''


@dataclass
class DerivativeTarget:
    """Where and how the derivatives of one upload are stored."""

    owner_id: int
    contact_id: int
    resource_id: str
    filename: str
    album: str
    profile: bool = False
    permissions: Permissions = field(default_factory=Permissions)
    description: str = ''


@dataclass
class DerivativeOutcome:
    """Result of producing and persisting one derivative."""

    scale: int
    name: str
    stored: bool
    width: int = 0
    height: int = 0
    mime_type: str = ''
    size_bytes: int = 0
    error: Optional[str] = None
    error_kind: Optional[str] = None  # 'transform' or 'persistence'


@dataclass
class UploadResult:
    """Outcome of the general-upload flow."""

    resource_id: str
    mime_type: str
    width: int
    height: int
    outcomes: List[DerivativeOutcome]
    urls: Dict[str, str]

    @property
    def failures(self) -> List[DerivativeOutcome]:
        return [o for o in self.outcomes if not o.stored]

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def partial(self) -> bool:
        """Some, but not all, derivatives were stored."""
        return bool(self.failures) and any(o.stored for o in self.outcomes)

    @property
    def stored_scales(self) -> List[int]:
        return [o.scale for o in self.outcomes if o.stored]


@dataclass
class AvatarResult:
    """Outcome of the profile-photo flow."""

    resource_id: str
    photo: str
    thumb: str
    micro: str
    failed: bool
    outcomes: List[DerivativeOutcome] = field(default_factory=list)

    @property
    def urls(self) -> Tuple[str, str, str]:
        return self.photo, self.thumb, self.micro


AVATAR_SPECS: Tuple[DerivativeSpec, ...] = (
    DerivativeSpec(ScaleLevel.AVATAR, Operation.SCALE_SQUARE, AVATAR_SIZES[0], 'photo'),
    DerivativeSpec(ScaleLevel.AVATAR_THUMB, Operation.SCALE_DOWN, AVATAR_SIZES[1], 'thumb'),
    DerivativeSpec(ScaleLevel.AVATAR_MICRO, Operation.SCALE_DOWN, AVATAR_SIZES[2], 'micro'),
)


def upload_specs(width: int, height: int, max_length: int = -1) -> List[DerivativeSpec]:
    """
    Derivative sequence for a general upload of the given size.

    The full image is bounded by ``max_length`` when it is positive. The
    remaining derivatives are decided on the bounded size: medium when
    either side exceeds 640, small when either side exceeds 320, and a
    centered 160 square thumbnail when the image is large enough for a small
    copy and both sides exceed 160.

    Example:
        >>> [s.name for s in upload_specs(1000, 1000)]
        ['full', 'medium', 'small', 'thumb']
        >>> [s.name for s in upload_specs(300, 200)]
        ['full']
    """
    if max_length > 0:
        width, height = scale_down(width, height, max_length)
        specs = [DerivativeSpec(ScaleLevel.FULL, Operation.SCALE_DOWN, max_length, 'full')]
    else:
        specs = [DerivativeSpec(ScaleLevel.FULL, Operation.AS_IS, None, 'full')]

    if width > MEDIUM_LENGTH or height > MEDIUM_LENGTH:
        specs.append(DerivativeSpec(ScaleLevel.MEDIUM, Operation.SCALE_DOWN, MEDIUM_LENGTH, 'medium'))

    has_small = width > SMALL_LENGTH or height > SMALL_LENGTH
    if has_small:
        specs.append(DerivativeSpec(ScaleLevel.SMALL, Operation.SCALE_DOWN, SMALL_LENGTH, 'small'))

    if has_small and width > THUMBNAIL_SIZE and height > THUMBNAIL_SIZE:
        specs.append(DerivativeSpec(ScaleLevel.THUMBNAIL, Operation.SQUARE_CROP, THUMBNAIL_SIZE, 'thumb'))

    return specs


def apply_spec(picture: Picture, spec: DerivativeSpec) -> None:
    """Run the transform a derivative spec names on the picture's handle."""
    operation = spec.operation

    if operation is Operation.AS_IS:
        return
    if operation is Operation.SCALE_DOWN:
        picture.scale_down(spec.parameter)
    elif operation is Operation.SCALE_UP:
        picture.scale_up(spec.parameter)
    elif operation is Operation.SCALE_SQUARE:
        picture.scale_square(spec.parameter)
    elif operation is Operation.SQUARE_CROP:
        size = spec.parameter
        try:
            x, y = square_crop_offset(picture.width, picture.height, size)
        except ValueError as e:
            raise TransformFailure(str(e)) from e
        picture.crop(size, x, y, size, size)
    elif operation is Operation.RECT_CROP:
        box = spec.parameter
        picture.crop(box.max_length, box.x, box.y, box.width, box.height)
    else:
        raise TransformFailure(f"Unknown operation: {operation}")


class DerivativePipeline:
    """
    Produces and persists the derivatives of uploaded images.

    Args:
        config: Pipeline configuration (quality, bounds, albums, drivers)
        store: Persistence adapter; an in-memory store if omitted
        urls: URL builder; built from ``config.base_url`` if omitted
        clock: Time source for avatar cache-busting suffixes
    """

    def __init__(self,
                 config: Optional[Config] = None,
                 store: Optional[PhotoStore] = None,
                 urls: Optional[PhotoUrls] = None,
                 clock: Callable[[], float] = time.time):
        self.config = config or Config()
        self.store = store if store is not None else MemoryPhotoStore()
        self.urls = urls or PhotoUrls(self.config.base_url)
        self.clock = clock
        set_package_level(self.config.log_level)

    def generate(self,
                 picture: Picture,
                 specs: Sequence[DerivativeSpec],
                 target: DerivativeTarget) -> List[DerivativeOutcome]:
        """
        Apply each spec in order to the same handle and persist the result.

        Args:
            picture: Decoded source; transformed in place
            specs: Ordered derivative steps
            target: Owner, resource and album the rows belong to

        Returns:
            One outcome per spec, in order
        """
        outcomes = []

        for spec in specs:
            name = spec.name or f"scale-{int(spec.scale)}"
            try:
                apply_spec(picture, spec)
                data = picture.encode()
            except TransformFailure as e:
                logger.error(f"Derivative {target.resource_id}-{int(spec.scale)} failed: {e}")
                outcomes.append(DerivativeOutcome(int(spec.scale), name, stored=False,
                                                  error=str(e), error_kind='transform'))
                continue

            record = StoredPhotoRecord(
                owner_id=target.owner_id,
                contact_id=target.contact_id,
                resource_id=target.resource_id,
                scale=int(spec.scale),
                filename=target.filename,
                album=target.album,
                data=data,
                width=picture.width,
                height=picture.height,
                mime_type=picture.mime_type,
                profile=target.profile,
                permissions=target.permissions,
                description=target.description,
            )
            outcomes.append(self._persist(record, name, picture.backend_name))

        return outcomes

    def store_upload(self,
                     data: bytes,
                     owner_id: int,
                     filename: str = '',
                     content_type: Optional[str] = None,
                     owner_nick: Optional[str] = None,
                     contact_id: int = 0,
                     album: Optional[str] = None,
                     permissions: Optional[Permissions] = None,
                     description: str = '') -> UploadResult:
        """
        Run the general-upload flow.

        Args:
            data: Raw upload bytes
            owner_id: Owning user
            filename: Original filename (basename is stored)
            content_type: Content-Type header if the bytes were fetched
            owner_nick: Owner nickname; adds a 'page' URL when given
            contact_id: Contact the photo is attributed to (0 = owner)
            album: Album name; ``config.upload_album`` if omitted
            permissions: Access lists; public if omitted
            description: Free-text description stored with each row

        Returns:
            UploadResult with per-derivative outcomes and public URLs

        Raises:
            DecodeFailure: Empty or undecodable data
            UnsupportedFormat: Image type outside JPEG/PNG/GIF
            UploadTooLarge: Data exceeds ``config.max_upload_bytes``
        """
        if not data:
            raise DecodeFailure("No image data provided")

        limit = self.config.max_upload_bytes
        if limit and len(data) > limit:
            raise UploadTooLarge(len(data), limit)

        mime_type = detect_mime_type(data, filename, content_type)
        digest = content_digest(data)
        logger.info(f"Processing upload {digest} as {mime_type}")

        with Picture.from_bytes(data, mime_type, self.config) as picture:
            try:
                picture.orient()
            except TransformFailure as e:
                logger.warning(f"Orientation of upload {digest} left as-is: {e}")
            specs = upload_specs(picture.width, picture.height, self.config.max_image_length)
            target = DerivativeTarget(
                owner_id=owner_id,
                contact_id=contact_id,
                resource_id=new_resource_id(),
                filename=filename,
                album=album or self.config.upload_album,
                permissions=permissions or Permissions(),
                description=description,
            )
            outcomes = self.generate(picture, specs, target)
            extension = picture.ext
            mime_type = picture.mime_type

        full = outcomes[0]
        result = UploadResult(
            resource_id=target.resource_id,
            mime_type=mime_type,
            width=full.width,
            height=full.height,
            outcomes=outcomes,
            urls=self._upload_urls(target.resource_id, extension, outcomes, owner_nick),
        )

        if result.failures:
            logger.warning(f"Upload {digest} stored partially: "
                           f"failed scales {[o.scale for o in result.failures]}")
        return result

    def import_profile_photo(self,
                             data: bytes,
                             owner_id: int,
                             contact_id: int,
                             filename: str = '',
                             content_type: Optional[str] = None,
                             strict: bool = False) -> AvatarResult:
        """
        Run the profile-photo flow: 175, 80 and 48 pixel square avatars.

        Without ``strict``, any failure yields the default avatar URLs.

        Args:
            data: Raw image bytes
            owner_id: Owning user
            contact_id: Contact the avatar belongs to
            filename: Original filename
            content_type: Content-Type header if the bytes were fetched
            strict: Raise instead of falling back to default avatars

        Returns:
            AvatarResult with three URLs

        Raises:
            DecodeFailure, UnsupportedFormat: In strict mode, for bad input
            TransformFailure, PersistenceFailure: In strict mode, when an
                avatar could not be produced or stored
        """
        album = self.config.profile_album
        resource_id = (self.store.find_resource_id(owner_id, contact_id, ScaleLevel.AVATAR, album)
                       or new_resource_id())
        outcomes: List[DerivativeOutcome] = []
        extension = None

        try:
            if not data:
                raise DecodeFailure("No image data provided")
            mime_type = detect_mime_type(data, filename, content_type)
            with Picture.from_bytes(data, mime_type, self.config) as picture:
                target = DerivativeTarget(owner_id, contact_id, resource_id, filename, album)
                outcomes = self.generate(picture, AVATAR_SPECS, target)
                extension = picture.ext
        except (DecodeFailure, UnsupportedFormat) as e:
            if strict:
                raise
            logger.warning(f"Profile photo for contact {contact_id} unusable: {e}")

        failures = [o for o in outcomes if not o.stored]
        if failures and strict:
            scales = [o.scale for o in failures]
            if any(o.error_kind == 'persistence' for o in failures):
                raise PersistenceFailure(f"Could not store avatar scales {scales}", scales)
            raise TransformFailure(f"Could not produce avatar scales {scales}")

        failed = extension is None or bool(failures)
        if failed:
            photo, thumb, micro = self.urls.default_avatars()
        else:
            suffix = f"?ts={int(self.clock())}"
            photo, thumb, micro = (self.urls.photo(resource_id, spec.scale, extension, suffix)
                                   for spec in AVATAR_SPECS)

        return AvatarResult(resource_id, photo, thumb, micro, failed, outcomes)

    def _persist(self, record: StoredPhotoRecord, name: str, backend_name: str) -> DerivativeOutcome:
        outcome = DerivativeOutcome(record.scale, name, stored=False,
                                    width=record.width, height=record.height,
                                    mime_type=record.mime_type, size_bytes=record.size_bytes)
        try:
            outcome.stored = bool(self.store.put(record))
        except Exception as e:
            # Store adapters raise their own error types; record and move on
            logger.error(f"Store raised for {record.resource_id}-{record.scale}: {e}")
            outcome.error = str(e)

        if outcome.stored:
            log_derivative(logger, record.resource_id, record.scale,
                           {'width': record.width, 'height': record.height,
                            'mime_type': record.mime_type, 'size_bytes': record.size_bytes,
                            'backend': backend_name})
        else:
            outcome.error = outcome.error or "Store rejected the write"
            outcome.error_kind = 'persistence'
            logger.error(f"Derivative {record.resource_id}-{record.scale} was not stored")

        return outcome

    def _upload_urls(self,
                     resource_id: str,
                     extension: str,
                     outcomes: List[DerivativeOutcome],
                     owner_nick: Optional[str]) -> Dict[str, str]:
        urls = {}
        if owner_nick:
            urls['page'] = self.urls.page(owner_nick, resource_id)

        stored = {o.scale: o for o in outcomes if o.stored}

        full = stored.get(ScaleLevel.FULL)
        if full is not None:
            urls['full'] = self.urls.photo(resource_id, ScaleLevel.FULL, extension)
            if full.width > LARGE_LENGTH or full.height > LARGE_LENGTH:
                urls['large'] = urls['full']

        for scale, key in ((ScaleLevel.MEDIUM, 'medium'),
                           (ScaleLevel.SMALL, 'small'),
                           (ScaleLevel.THUMBNAIL, 'thumb')):
            if scale in stored:
                urls[key] = self.urls.photo(resource_id, scale, extension)

        # Full image is the preview unless a medium copy exists
        if 'medium' in urls:
            urls['preview'] = urls['medium']
        elif 'full' in urls:
            urls['preview'] = urls['full']

        return urls
