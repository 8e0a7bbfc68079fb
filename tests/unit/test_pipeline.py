"""
Unit tests for derivative generation.

Tests ensure that:
1. The general-upload flow produces the right derivatives and URLs
2. A failing derivative does not block its siblings
3. The profile-photo flow falls back to default avatars unless strict
"""

import pytest
import logging
from io import BytesIO
from pathlib import Path
import sys

import numpy as np
from PIL import Image

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from photoderiv.core.errors import (DecodeFailure, PersistenceFailure,
                                    UnsupportedFormat, UploadTooLarge)
from photoderiv.core.picture import Picture
from photoderiv.core.pipeline import (
    AVATAR_SPECS,
    CropBox,
    DerivativePipeline,
    DerivativeSpec,
    DerivativeTarget,
    Operation,
    ScaleLevel,
    upload_specs,
)
from photoderiv.core.pillow_backend import probe
from photoderiv.storage import MemoryPhotoStore, Permissions
from photoderiv.utils.config import Config

NOW = 1700000000.0


class RejectingStore(MemoryPhotoStore):
    """Store that refuses writes for some scales."""

    def __init__(self, rejected=(), raising=()):
        super().__init__()
        self.rejected = set(rejected)
        self.raising = set(raising)

    def put(self, record):
        if record.scale in self.raising:
            raise RuntimeError("disk full")
        if record.scale in self.rejected:
            return False
        return super().put(record)


@pytest.fixture
def store():
    return MemoryPhotoStore()


@pytest.fixture
def pipeline(store):
    return DerivativePipeline(Config(), store, clock=lambda: NOW)


class TestUploadSpecs:
    """Test the conditional derivative list."""

    def test_large_square(self):
        specs = upload_specs(1000, 1000)
        assert [s.scale for s in specs] == [0, 1, 2, 3]
        assert specs[0].operation is Operation.AS_IS
        assert specs[3].operation is Operation.SQUARE_CROP

    def test_small_image_full_only(self):
        assert [s.name for s in upload_specs(300, 200)] == ['full']

    def test_between_small_and_medium(self):
        assert [s.name for s in upload_specs(500, 400)] == ['full', 'small', 'thumb']

    def test_thin_image_has_no_thumbnail(self):
        assert [s.name for s in upload_specs(700, 150)] == ['full', 'medium', 'small']

    def test_global_bound(self):
        specs = upload_specs(2000, 1000, max_length=600)
        assert specs[0].operation is Operation.SCALE_DOWN
        assert specs[0].parameter == 600
        assert [s.name for s in specs] == ['full', 'small', 'thumb']


class TestStoreUpload:
    """Test the general-upload flow."""

    def test_all_derivatives(self, pipeline, store, make_image):
        result = pipeline.store_upload(make_image(1000, 1000), owner_id=7,
                                       filename='uploads/holiday.jpg')

        assert result.ok
        assert result.stored_scales == [0, 1, 2, 3]
        assert [(o.width, o.height) for o in result.outcomes] == [
            (1000, 1000), (640, 640), (320, 320), (160, 160)]
        assert (result.width, result.height) == (1000, 1000)
        assert store.scales(result.resource_id) == [0, 1, 2, 3]

        record = store.get(result.resource_id, 7, 0, ScaleLevel.THUMBNAIL)
        assert record.filename == 'holiday.jpg'
        assert record.album == 'Wall Photos'
        assert probe(record.data) == (160, 160, 'image/jpeg')

    def test_urls(self, pipeline, make_image):
        result = pipeline.store_upload(make_image(1000, 1000), owner_id=7, owner_nick='alice')
        rid = result.resource_id

        assert result.urls['page'] == f"http://localhost/photos/alice/image/{rid}"
        assert result.urls['full'] == f"http://localhost/photo/{rid}-0.jpg"
        assert result.urls['large'] == result.urls['full']
        assert result.urls['medium'] == f"http://localhost/photo/{rid}-1.jpg"
        assert result.urls['thumb'] == f"http://localhost/photo/{rid}-3.jpg"
        assert result.urls['preview'] == result.urls['medium']

    def test_small_source(self, pipeline, make_image):
        result = pipeline.store_upload(make_image(300, 200), owner_id=1)

        assert result.stored_scales == [0]
        assert result.urls['preview'] == result.urls['full']
        assert 'large' not in result.urls
        assert 'page' not in result.urls

    def test_orientation_applied(self, pipeline, store, make_image):
        result = pipeline.store_upload(make_image(800, 600, orientation=6), owner_id=1)

        assert (result.width, result.height) == (600, 800)
        assert (result.outcomes[1].width, result.outcomes[1].height) == (480, 640)

    def test_landscape_thumbnail_is_centered(self, pipeline, store):
        """Red rises left to right, so a centered window averages mid-red."""
        red = (np.arange(1000) * 255 // 1000).astype(np.uint8)
        pixels = np.zeros((775, 1000, 3), dtype=np.uint8)
        pixels[..., 0] = red
        buffer = BytesIO()
        Image.fromarray(pixels).save(buffer, 'PNG')

        result = pipeline.store_upload(buffer.getvalue(), owner_id=1)

        assert [(o.width, o.height) for o in result.outcomes][2:] == [(320, 248), (160, 160)]
        thumb = store.get(result.resource_id, 1, 0, ScaleLevel.THUMBNAIL)
        with Image.open(BytesIO(thumb.data)) as img:
            thumb_red = np.asarray(img.convert('RGB'))[..., 0]
        assert abs(thumb_red.mean() - 127.5) < 5
        assert abs(int(thumb_red[:, 0].mean()) - 63) < 8
        assert abs(int(thumb_red[:, -1].mean()) - 191) < 8

    def test_extreme_aspect_ratio_is_complete(self, pipeline, make_image):
        result = pipeline.store_upload(make_image(5000, 4), owner_id=1)

        assert result.ok
        assert [(o.scale, o.width, o.height) for o in result.outcomes] == [
            (0, 5000, 4), (1, 640, 1), (2, 320, 1)]

    def test_global_bound(self, store, make_image):
        pipeline = DerivativePipeline(Config(max_image_length=500), store)
        result = pipeline.store_upload(make_image(1000, 1000), owner_id=1)

        assert (result.width, result.height) == (500, 500)
        assert result.stored_scales == [0, 2, 3]

    def test_png_keeps_type(self, pipeline, make_image):
        result = pipeline.store_upload(make_image(700, 500, fmt='PNG', mode='RGBA'),
                                       owner_id=1, filename='a.jpg')
        assert result.mime_type == 'image/png'
        assert result.urls['full'].endswith('-0.png')

    def test_animated_gif(self, pipeline, store, make_gif):
        result = pipeline.store_upload(make_gif(400, 300, frames=2), owner_id=1)

        assert result.mime_type == 'image/gif'
        assert result.stored_scales == [0, 2, 3]
        thumb = store.get(result.resource_id, 1, 0, ScaleLevel.THUMBNAIL)
        assert probe(thumb.data) == (160, 160, 'image/gif')

    def test_raster_driver(self, store, make_image):
        pipeline = DerivativePipeline(Config(backends=('raster',)), store)
        result = pipeline.store_upload(make_image(1000, 1000), owner_id=1)

        assert result.ok
        assert result.stored_scales == [0, 1, 2, 3]

    def test_permissions_and_description(self, pipeline, store, make_image):
        permissions = Permissions(allow_cid='<3>')
        result = pipeline.store_upload(make_image(300, 200), owner_id=2, album='Trips',
                                       permissions=permissions, description='beach')
        record = store.get(result.resource_id, 2, 0, 0)

        assert record.album == 'Trips'
        assert record.permissions.allow_cid == '<3>'
        assert record.description == 'beach'

    def test_rejected_write_is_partial(self, make_image):
        store = RejectingStore(rejected={ScaleLevel.MEDIUM})
        pipeline = DerivativePipeline(Config(), store)
        result = pipeline.store_upload(make_image(1000, 1000), owner_id=1)

        assert result.partial
        assert not result.ok
        assert [o.scale for o in result.failures] == [1]
        assert result.failures[0].error_kind == 'persistence'
        assert result.stored_scales == [0, 2, 3]
        assert 'medium' not in result.urls
        assert result.urls['preview'] == result.urls['full']

    def test_raising_store_is_recorded(self, make_image):
        store = RejectingStore(raising={ScaleLevel.SMALL})
        pipeline = DerivativePipeline(Config(), store)
        result = pipeline.store_upload(make_image(1000, 1000), owner_id=1)

        assert result.stored_scales == [0, 1, 3]
        assert result.failures[0].error == 'disk full'

    def test_too_large(self, make_image):
        pipeline = DerivativePipeline(Config(max_upload_bytes=100))
        with pytest.raises(UploadTooLarge) as exc_info:
            pipeline.store_upload(make_image(200, 200), owner_id=1)
        assert exc_info.value.limit == 100

    def test_empty_upload(self, pipeline):
        with pytest.raises(DecodeFailure):
            pipeline.store_upload(b'', owner_id=1)

    def test_garbage_upload(self, pipeline, store):
        with pytest.raises(DecodeFailure):
            pipeline.store_upload(b'\x00' * 512, owner_id=1, filename='x.jpg')
        assert store.rows == {}

    def test_unsupported_upload(self, pipeline, make_image):
        with pytest.raises(UnsupportedFormat):
            pipeline.store_upload(make_image(fmt='BMP'), owner_id=1)

    def test_deterministic(self, make_image):
        data = make_image(900, 700)
        first = DerivativePipeline(Config()).store_upload(data, owner_id=1)
        second = DerivativePipeline(Config()).store_upload(data, owner_id=1)

        assert [(o.scale, o.width, o.height) for o in first.outcomes] == \
            [(o.scale, o.width, o.height) for o in second.outcomes]


class TestGenerate:
    """Test generate() with explicit derivative lists."""

    def test_rect_crop_and_scale_up(self, pipeline, store, make_image):
        target = DerivativeTarget(owner_id=1, contact_id=0, resource_id='r1',
                                  filename='a.jpg', album='Edits')
        specs = [
            DerivativeSpec(0, Operation.RECT_CROP, CropBox(10, 10, 200, 100, 100), 'crop'),
            DerivativeSpec(1, Operation.SCALE_UP, 300, 'up'),
        ]
        with Picture.from_bytes(make_image(400, 300), 'image/jpeg') as picture:
            outcomes = pipeline.generate(picture, specs, target)

        assert [(o.width, o.height) for o in outcomes] == [(100, 50), (600, 300)]
        assert store.scales('r1') == [0, 1]

    def test_transform_failure_does_not_block_siblings(self, pipeline, make_image):
        target = DerivativeTarget(1, 0, 'r2', 'a.jpg', 'Edits')
        specs = [
            DerivativeSpec(0, Operation.RECT_CROP, CropBox(900, 900, 10, 10, 100), 'bad'),
            DerivativeSpec(1, Operation.SCALE_DOWN, 50, 'ok'),
        ]
        with Picture.from_bytes(make_image(400, 300), 'image/jpeg') as picture:
            outcomes = pipeline.generate(picture, specs, target)

        assert outcomes[0].stored is False
        assert outcomes[0].error_kind == 'transform'
        assert outcomes[1].stored is True
        assert (outcomes[1].width, outcomes[1].height) == (50, 37)


class TestImportProfilePhoto:
    """Test the profile-photo flow."""

    def test_avatars(self, pipeline, store, make_image):
        result = pipeline.import_profile_photo(make_image(300, 200), owner_id=1, contact_id=9)
        rid = result.resource_id

        assert not result.failed
        assert [(o.width, o.height) for o in result.outcomes] == [(175, 175), (80, 80), (48, 48)]
        assert result.photo == f"http://localhost/photo/{rid}-4.jpg?ts=1700000000"
        assert result.thumb == f"http://localhost/photo/{rid}-5.jpg?ts=1700000000"
        assert result.micro == f"http://localhost/photo/{rid}-6.jpg?ts=1700000000"

        record = store.get(rid, 1, 9, ScaleLevel.AVATAR)
        assert record.album == 'Contact Photos'

    def test_resource_id_reused(self, pipeline, store, make_image):
        first = pipeline.import_profile_photo(make_image(300, 200), owner_id=1, contact_id=9)
        second = pipeline.import_profile_photo(make_image(200, 300), owner_id=1, contact_id=9)

        assert first.resource_id == second.resource_id
        assert len(store.rows) == len(AVATAR_SPECS)

    def test_bad_image_gives_defaults(self, pipeline):
        result = pipeline.import_profile_photo(b'garbage', owner_id=1, contact_id=9)

        assert result.failed
        assert result.urls == (
            "http://localhost/images/person-175.jpg",
            "http://localhost/images/person-80.jpg",
            "http://localhost/images/person-48.jpg",
        )

    def test_empty_gives_defaults(self, pipeline):
        assert pipeline.import_profile_photo(b'', owner_id=1, contact_id=9).failed

    def test_strict_decode_failure(self, pipeline):
        with pytest.raises(DecodeFailure):
            pipeline.import_profile_photo(b'garbage', owner_id=1, contact_id=9, strict=True)

    def test_strict_persistence_failure(self, make_image):
        store = RejectingStore(rejected={ScaleLevel.AVATAR_MICRO})
        pipeline = DerivativePipeline(Config(), store)

        with pytest.raises(PersistenceFailure) as exc_info:
            pipeline.import_profile_photo(make_image(300, 200), owner_id=1,
                                          contact_id=9, strict=True)
        assert exc_info.value.scales == (6,)

    def test_persistence_failure_gives_defaults(self, make_image):
        store = RejectingStore(rejected={ScaleLevel.AVATAR_THUMB})
        pipeline = DerivativePipeline(Config(), store)
        result = pipeline.import_profile_photo(make_image(300, 200), owner_id=1, contact_id=9)

        assert result.failed
        assert result.photo.endswith('person-175.jpg')


class TestLogLevel:
    """Test that the configured level reaches module loggers."""

    def test_configured_level_applied(self, store):
        try:
            DerivativePipeline(Config(log_level="debug"), store)
            assert logging.getLogger("photoderiv.core.pipeline").level == logging.DEBUG
            assert logging.getLogger("photoderiv.core.picture").level == logging.DEBUG
        finally:
            DerivativePipeline(Config(), store)

        assert logging.getLogger("photoderiv.core.pipeline").level == logging.INFO


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
