"""
File storage (Mock: stores files on local disk, in real prod -> object storage)

Files are addressed by bucket and path and served from PUBLIC_STORAGE_URL.
"""
import io
import logging
import os

from PIL import Image, UnidentifiedImageError

from errors import ProviderError, ValidationError

logger = logging.getLogger(__name__)

STORAGE_DIR = os.getenv("STORAGE_DIR", "/tmp/uploads")
PUBLIC_STORAGE_URL = os.getenv("PUBLIC_STORAGE_URL", "/files")
PHOTO_BUCKET = "waste-photos"
IMAGE_FORMATS = {"JPEG": "jpg", "PNG": "png", "WEBP": "webp", "GIF": "gif"}


class LocalFileStorage:
    def __init__(self, root: str = STORAGE_DIR, public_url: str = PUBLIC_STORAGE_URL):
        self.root = root
        self.public_url = public_url.rstrip("/")

    def _path(self, bucket: str, path: str) -> str:
        full = os.path.normpath(os.path.join(self.root, bucket, path))
        if not full.startswith(os.path.normpath(os.path.join(self.root, bucket)) + os.sep):
            raise ValidationError(f"Invalid storage path '{path}'")
        return full

    def upload(self, bucket: str, path: str, data: bytes) -> None:
        target = self._path(bucket, path)
        try:
            os.makedirs(os.path.dirname(target), exist_ok=True)
            with open(target, "wb") as f:
                f.write(data)
        except OSError as e:
            logger.error("Upload to %s/%s failed: %s", bucket, path, e)
            raise ProviderError(f"Could not store file: {e}") from e

    def get_public_url(self, bucket: str, path: str) -> str:
        return f"{self.public_url}/{bucket}/{path}"


def photo_extension(image_bytes: bytes) -> str:
    """File extension for an uploaded waste photo, rejecting non-images."""
    try:
        img = Image.open(io.BytesIO(image_bytes))
        img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        raise ValidationError("waste_photo must be an image") from e
    ext = IMAGE_FORMATS.get(img.format or "")
    if ext is None:
        raise ValidationError(f"Unsupported image format '{img.format}'")
    return ext


def upload_waste_photo(storage: LocalFileStorage, request_id: str, image_bytes: bytes) -> str:
    ext = photo_extension(image_bytes)
    path = f"waste-photos/{request_id}.{ext}"
    storage.upload(PHOTO_BUCKET, path, image_bytes)
    return storage.get_public_url(PHOTO_BUCKET, path)
