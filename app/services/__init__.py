# Services package for media-intake

from .upload_service import UploadService

__all__ = [
    "UploadService",
]
