"""Camera-roll upload exports."""

from .service import PhotoAsset, PhotoUploader, UploadReport  # noqa: F401
