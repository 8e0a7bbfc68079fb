"""
Configuration for the derivative pipeline.

Every tunable the pipeline reads (encoder quality, size bounds, albums,
backend order) lives in one explicit value that is handed to the pipeline
at invocation time. Identical bytes and an identical Config always produce
the same derivatives.
"""

import json
from dataclasses import dataclass, asdict, field
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple, Union

from .logging import get_logger, level_value

logger = get_logger(__name__)

# Fallbacks used when the configuration source has no usable value
JPEG_QUALITY = 100
PNG_QUALITY = 8
MAX_IMAGE_LENGTH = -1

KNOWN_BACKENDS = ('pillow', 'raster')


@dataclass
class Config:
    """
    Configuration settings for the derivative pipeline.

    Quality values follow the encoders: JPEG quality is 1-100, PNG quality
    is the zlib compression level 0-9.
    """

    # Encoder settings
    jpeg_quality: int = JPEG_QUALITY
    png_quality: int = PNG_QUALITY

    # Size bounds
    max_image_length: int = MAX_IMAGE_LENGTH  # <= 0 disables the global bound
    max_upload_bytes: int = 0  # 0 disables the upload size check

    # URL and album settings
    base_url: str = "http://localhost"
    upload_album: str = "Wall Photos"
    profile_album: str = "Contact Photos"

    # Decoder order; the first driver that decodes the bytes wins
    backends: Tuple[str, ...] = field(default_factory=lambda: KNOWN_BACKENDS)

    log_level: str = "INFO"

    def __post_init__(self):
        """Validate configuration after initialization."""
        if not 1 <= self.jpeg_quality <= 100:
            raise ValueError(f"jpeg_quality must be in [1, 100], got {self.jpeg_quality}")

        if not 0 <= self.png_quality <= 9:
            raise ValueError(f"png_quality must be in [0, 9], got {self.png_quality}")

        if self.max_upload_bytes < 0:
            raise ValueError(f"max_upload_bytes must be >= 0, got {self.max_upload_bytes}")

        self.backends = tuple(self.backends)
        if not self.backends:
            raise ValueError("backends must name at least one driver")
        for name in self.backends:
            if name not in KNOWN_BACKENDS:
                raise ValueError(f"Unknown backend '{name}', expected one of {KNOWN_BACKENDS}")

        self.base_url = self.base_url.rstrip('/')

        self.log_level = str(self.log_level).upper()
        level_value(self.log_level)

        logger.debug(f"Configuration initialized with backends={self.backends}")

    def quality_for(self, mime_type: str) -> Optional[int]:
        """Encoder quality hint for a MIME type, or None if it takes none."""
        if mime_type == 'image/jpeg':
            return self.jpeg_quality
        if mime_type == 'image/png':
            return self.png_quality
        return None

    def save(self, path: Union[str, Path]) -> None:
        """
        Save configuration to JSON file.

        Args:
            path: Path to save configuration

        Example:
            >>> config = Config(jpeg_quality=85)
            >>> config.save("config.json")
        """
        path = Path(path)

        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

        logger.info(f"Configuration saved to {path}")

    @classmethod
    def load(cls, path: Union[str, Path]) -> 'Config':
        """
        Load configuration from JSON file.

        Args:
            path: Path to configuration file

        Returns:
            Config instance
        """
        path = Path(path)

        with open(path, 'r') as f:
            config_dict = json.load(f)

        if 'backends' in config_dict:
            config_dict['backends'] = tuple(config_dict['backends'])

        config = cls(**config_dict)
        logger.info(f"Configuration loaded from {path}")

        return config

    @classmethod
    def from_lookup(cls, get: Callable[[str, str], Any], **overrides) -> 'Config':
        """
        Build a configuration from a ``get(section, key)`` source.

        Absent, non-numeric or out-of-range values fall back to the
        hardcoded defaults instead of failing.

        Args:
            get: Lookup callable returning a value or None
            **overrides: Fields set directly, bypassing the lookup

        Returns:
            Config instance

        Example:
            >>> settings = {('system', 'jpeg_quality'): 90}
            >>> Config.from_lookup(lambda s, k: settings.get((s, k))).jpeg_quality
            90
        """
        values = {
            'jpeg_quality': _ranged(get('system', 'jpeg_quality'), 1, 100, JPEG_QUALITY),
            'png_quality': _ranged(get('system', 'png_quality'), 0, 9, PNG_QUALITY),
            'max_image_length': _ranged(get('system', 'max_image_length'), None, None, MAX_IMAGE_LENGTH),
            'max_upload_bytes': _ranged(get('system', 'maximagesize'), 0, None, 0),
        }
        values.update(overrides)
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert configuration to dictionary.

        Returns:
            Configuration as dictionary
        """
        config_dict = asdict(self)
        config_dict['backends'] = list(self.backends)
        return config_dict

    def update(self, **kwargs) -> None:
        """
        Update configuration parameters.

        Args:
            **kwargs: Parameters to update

        Example:
            >>> config = Config()
            >>> config.update(jpeg_quality=85, max_image_length=1600)
        """
        for key, value in kwargs.items():
            if hasattr(self, key):
                setattr(self, key, value)
                logger.debug(f"Updated {key} = {value}")
            else:
                logger.warning(f"Unknown configuration parameter: {key}")

        # Re-validate
        self.__post_init__()


def _ranged(value: Any, low: Optional[int], high: Optional[int], default: int) -> int:
    """Coerce a looked-up value to int within [low, high], else default.

    Zero counts as unset, matching how the settings store reports missing
    keys.
    """
    if value is None or value == '' or value is False:
        return default
    try:
        number = int(value)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring non-numeric setting {value!r}, using {default}")
        return default
    if number == 0 and default != 0:
        return default
    if (low is not None and number < low) or (high is not None and number > high):
        logger.warning(f"Setting {number} out of range, using {default}")
        return default
    return number


def get_default_config() -> Config:
    """
    Get the default configuration.

    Returns:
        Default Config instance

    Example:
        >>> get_default_config().jpeg_quality
        100
    """
    return Config()
