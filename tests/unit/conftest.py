"""
Shared fixtures: images are fabricated with Pillow so no binary assets are
needed in the repository.
"""

import pytest
from io import BytesIO
from pathlib import Path
import sys

from PIL import Image

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

RED = (220, 20, 20)
BLUE = (20, 20, 220)


def _two_tone(width: int, height: int, mode: str = 'RGB') -> Image.Image:
    """Left half red, right half blue."""
    img = Image.new('RGB', (width, height), BLUE)
    img.paste(Image.new('RGB', (width // 2, height), RED), (0, 0))
    if mode != 'RGB':
        img = img.convert(mode)
    return img


@pytest.fixture
def make_image():
    """Factory returning encoded image bytes."""

    def _make(width: int = 64,
              height: int = 48,
              fmt: str = 'JPEG',
              mode: str = 'RGB',
              orientation: int = None) -> bytes:
        img = _two_tone(width, height, mode)
        buffer = BytesIO()
        options = {}
        if orientation is not None:
            exif = Image.Exif()
            exif[0x0112] = orientation
            options['exif'] = exif
        img.save(buffer, fmt, **options)
        return buffer.getvalue()

    return _make


@pytest.fixture
def make_gif():
    """Factory returning an animated GIF with distinct frames."""

    def _make(width: int = 40, height: int = 30, frames: int = 3) -> bytes:
        colors = [RED, BLUE, (20, 220, 20), (220, 220, 20)]
        images = [Image.new('RGB', (width, height), colors[i % len(colors)])
                  for i in range(frames)]
        buffer = BytesIO()
        images[0].save(buffer, 'GIF', save_all=True, append_images=images[1:],
                       duration=100, loop=0)
        return buffer.getvalue()

    return _make


def open_encoded(data: bytes) -> Image.Image:
    """Decode encoder output back into an RGB Pillow image."""
    return Image.open(BytesIO(data)).convert('RGB')


def is_red(pixel) -> bool:
    r, g, b = pixel[:3]
    return r > 150 and b < 100


def is_blue(pixel) -> bool:
    r, g, b = pixel[:3]
    return b > 150 and r < 100
