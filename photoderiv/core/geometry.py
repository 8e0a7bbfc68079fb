"""
Target-size arithmetic for derivatives.

Pure functions over integer dimensions; nothing here touches pixels. All
derived sides use integer truncation of ``other * bound / side``, floored at
one pixel so extreme aspect ratios still yield a drawable image.
"""

from typing import Tuple


def _check(width: int, height: int, bound: int, name: str) -> None:
    if width <= 0 or height <= 0:
        raise ValueError(f"Image dimensions must be positive, got {width}x{height}")
    if bound <= 0:
        raise ValueError(f"{name} must be positive, got {bound}")


def _is_very_tall(width: int, height: int) -> bool:
    # height * 9 / 16 > width, kept in integers
    return height * 9 > width * 16


def _derived(other: int, bound: int, side: int) -> int:
    return max(1, (other * bound) // side)


def scale_down(width: int, height: int, max_length: int) -> Tuple[int, int]:
    """
    Fit an image inside ``max_length`` while keeping its aspect ratio.

    Very tall images (taller than 16:9) are constrained by width only, and a
    very tall image whose width already fits is left untouched.

    Args:
        width: Source width
        height: Source height
        max_length: Upper bound for the constrained side

    Returns:
        Tuple of (width, height)

    Example:
        >>> scale_down(4000, 1000, 800)
        (800, 200)
        >>> scale_down(500, 1200, 800)
        (500, 1200)
    """
    _check(width, height, max_length, "max_length")

    if width > max_length and height > max_length:
        # very tall: constrain the width and let the height float
        if _is_very_tall(width, height) or width > height:
            return max_length, _derived(height, max_length, width)
        return _derived(width, max_length, height), max_length

    if width > max_length:
        return max_length, _derived(height, max_length, width)

    if height > max_length:
        if _is_very_tall(width, height):
            return width, height
        return _derived(width, max_length, height), max_length

    return width, height


def scale_up(width: int, height: int, min_length: int) -> Tuple[int, int]:
    """
    Enlarge an image until both sides reach ``min_length``.

    Args:
        width: Source width
        height: Source height
        min_length: Lower bound for both sides

    Returns:
        Tuple of (width, height); unchanged when both sides already qualify
    """
    _check(width, height, min_length, "min_length")

    if width < min_length and height < min_length:
        if width < height:
            return min_length, _derived(height, min_length, width)
        return _derived(width, min_length, height), min_length

    if width < min_length:
        return min_length, _derived(height, min_length, width)

    if height < min_length:
        return _derived(width, min_length, height), min_length

    return width, height


def square_crop_offset(width: int, height: int, size: int) -> Tuple[int, int]:
    """
    Top-left corner of a centered ``size`` x ``size`` crop window.

    Each offset is computed from its own axis, so the window is centered
    horizontally and vertically and always fits inside the image when
    ``min(width, height) >= size``.

    Args:
        width: Source width
        height: Source height
        size: Side of the square window

    Returns:
        Tuple of (x, y)

    Example:
        >>> square_crop_offset(320, 248, 160)
        (80, 44)
    """
    _check(width, height, size, "size")

    return max(0, (width - size) // 2), max(0, (height - size) // 2)
