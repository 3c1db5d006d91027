# Models package for media-intake

from .image import ImageRecord

__all__ = ["ImageRecord"]
