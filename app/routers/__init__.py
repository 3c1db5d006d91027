# Routers package for media-intake

from . import images, uploads

__all__ = [
    "images",
    "uploads",
]
