"""
Photo Derivatives - Image Upload Pipeline
=========================================

Turns an uploaded image into the set of stored derivatives a photo service
serves: the full image, medium, small and thumbnail copies, or three square
avatars for a profile photo.

Designed so upload filenames and remote URLs never reach the logs.
"""

__version__ = "0.1.0"
