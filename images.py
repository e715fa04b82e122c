import logging
import os
import time
import uuid

from errors import ValidationFailed
from settings import Settings

logger = logging.getLogger("flamecrumble.images")

ALLOWED_EXTENSIONS = {".jpeg", ".jpg", ".png", ".gif"}
ALLOWED_CONTENT_TYPES = {"image/jpeg", "image/jpg", "image/png", "image/gif"}
PUBLIC_PREFIX = "/images"


class LocalImageStore:
    """Stores uploaded product images on disk and returns their public URL."""

    def __init__(self, settings: Settings):
        self.directory = settings.upload_dir
        self.max_bytes = settings.max_upload_bytes
        os.makedirs(self.directory, exist_ok=True)

    def save(self, filename: str, content_type: str, data: bytes) -> str:
        ext = os.path.splitext(filename or "")[1].lower()
        if ext not in ALLOWED_EXTENSIONS or (content_type or "").lower() not in ALLOWED_CONTENT_TYPES:
            raise ValidationFailed("Only images (JPEG, JPG, PNG, GIF) are allowed")
        if not data:
            raise ValidationFailed("No file uploaded")
        if len(data) > self.max_bytes:
            raise ValidationFailed(f"Image exceeds {self.max_bytes} bytes")
        name = f"image-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}{ext}"
        with open(os.path.join(self.directory, name), "wb") as fh:
            fh.write(data)
        logger.info("Stored upload %s (%d bytes)", name, len(data))
        return f"{PUBLIC_PREFIX}/{name}"
