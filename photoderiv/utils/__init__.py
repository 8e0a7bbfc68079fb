"""
Utility modules for the derivative pipeline.

Contains upload-safe logging and configuration management.
"""

from .logging import get_logger, content_digest

__all__ = ['get_logger', 'content_digest']
