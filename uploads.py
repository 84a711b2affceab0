"""Almacenamiento local de avatares subidos por los usuarios."""

import logging
import shutil
import uuid
from pathlib import Path
from fastapi import UploadFile
from config import Settings
from errors import ValidationError

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_EXTENSIONS = {'.jpg', '.jpeg', '.png', '.gif', '.webp'}

# store_avatar: Guarda el archivo con nombre aleatorio y retorna la ruta relativa pública.
def store_avatar(upload: UploadFile, settings: Settings) -> str:
    if upload is None or not upload.filename:
        raise ValidationError("Image file not found.")
    ext = Path(upload.filename).suffix.lower()
    if ext not in ALLOWED_IMAGE_EXTENSIONS:
        raise ValidationError("Only image files are allowed.")
    settings.upload_dir.mkdir(parents=True, exist_ok=True)
    name = f"{uuid.uuid4().hex}{ext}"
    with open(settings.upload_dir / name, 'wb') as out:
        shutil.copyfileobj(upload.file, out)
    logger.info("AVATAR_STORED", extra={"file": name})
    return f"/uploads/{name}"
