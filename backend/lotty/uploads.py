from __future__ import annotations

import logging
import os
import secrets

from fastapi import UploadFile

from lotty.config import allowed_image_types, max_upload_image_bytes, uploads_dir, uploads_url_prefix
from lotty.errors import ValidationError

logger = logging.getLogger(__name__)

_EXT_BY_TYPE = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
}


def _safe_upload_ext(content_type: str) -> str:
    return _EXT_BY_TYPE.get((content_type or "").lower().strip(), ".bin")


def read_image_upload(file: UploadFile | None) -> tuple[bytes, str]:
    """
    Validate an uploaded image before anything touches the disk.
    Returns (raw bytes, content type).
    """
    if file is None:
        raise ValidationError("No file uploaded", field="image")
    content_type = (file.content_type or "").lower().strip()
    if content_type == "image/jpg":
        content_type = "image/jpeg"
    if content_type not in allowed_image_types():
        raise ValidationError("Invalid file type. Only JPG, PNG, and WEBP are allowed.", field="image")

    limit = max_upload_image_bytes()
    # Read one byte past the ceiling so oversized uploads are caught without buffering them whole.
    raw = file.file.read(limit + 1)
    if not raw:
        raise ValidationError("Empty upload", field="image")
    if len(raw) > limit:
        raise ValidationError(f"File too large (max {limit // (1024 * 1024)}MB)", field="image")
    return raw, content_type


def store_image(raw: bytes, content_type: str) -> str:
    """
    Write the bytes under the uploads directory and return the public URL.
    """
    base = uploads_dir()
    os.makedirs(base, exist_ok=True)
    name = f"{secrets.token_hex(16)}{_safe_upload_ext(content_type)}"
    with open(os.path.join(base, name), "wb") as f:
        f.write(raw)
    logger.info("Stored upload %s (%s bytes)", name, len(raw))
    return f"{uploads_url_prefix()}/{name}"
