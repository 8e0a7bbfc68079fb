"""
Core processing modules for the derivative pipeline.

Contains the backend drivers, geometry, orientation handling and the
derivative pipeline itself.
"""

from .errors import (PhotoError, DecodeFailure, UnsupportedFormat,
                     TransformFailure, PersistenceFailure, UploadTooLarge)
from .picture import Picture, ImageMeta
from .pipeline import (DerivativePipeline, DerivativeSpec, Operation, ScaleLevel,
                       UploadResult, AvatarResult)

__all__ = [
    'PhotoError', 'DecodeFailure', 'UnsupportedFormat', 'TransformFailure',
    'PersistenceFailure', 'UploadTooLarge',
    'Picture', 'ImageMeta',
    'DerivativePipeline', 'DerivativeSpec', 'Operation', 'ScaleLevel',
    'UploadResult', 'AvatarResult',
]
