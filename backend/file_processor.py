import io
import logging
import time
import uuid
from datetime import datetime
from pathlib import Path

import PyPDF2
from PIL import Image, UnidentifiedImageError
from werkzeug.utils import secure_filename

import config
from exceptions import InvalidInputError, UnsupportedFileError

logger = logging.getLogger(__name__)

MAX_EXTRACTED_CHARS = 8000
OPTIMIZED_MAX_SIZE = (1200, 1200)
OPTIMIZED_QUALITY = 85
OPTIMIZED_SUFFIX = "_optimized.webp"
PDF_PLACEHOLDER = "PDF recebido, mas não foi possível extrair texto."


def upload_dir() -> Path:
    path = Path(config.UPLOAD_FOLDER_PATH)
    path.mkdir(parents=True, exist_ok=True)
    return path


def is_allowed(mime_type: str) -> bool:
    mime_type = mime_type or ""
    return mime_type == "application/pdf" or mime_type.startswith("image/") or mime_type.startswith("text/")


def file_type(mime_type: str) -> str:
    if mime_type == "application/pdf":
        return "pdf"
    if (mime_type or "").startswith("image/"):
        return "image"
    return "other"


def file_path(filename: str) -> Path:
    safe_name = secure_filename(filename or "")
    if not safe_name:
        raise InvalidInputError("Nome de arquivo inválido")
    return upload_dir() / safe_name


def file_exists(filename: str) -> bool:
    try:
        return file_path(filename).is_file()
    except InvalidInputError:
        return False


def optimized_path(path: Path) -> Path:
    return path.with_name(f"{path.stem}{OPTIMIZED_SUFFIX}")


def extract_pdf_text(data: bytes) -> str:
    try:
        reader = PyPDF2.PdfReader(io.BytesIO(data))
        text = ""
        for page in reader.pages:
            text += page.extract_text() or ""
            if len(text) >= MAX_EXTRACTED_CHARS:
                break
    except Exception as e:
        # PyPDF2 raises plain ValueError/KeyError on broken xref tables
        logger.warning("[Upload] Could not read PDF: %s", e)
        return PDF_PLACEHOLDER
    text = text.strip()
    return text[:MAX_EXTRACTED_CHARS] if text else PDF_PLACEHOLDER


def optimize_image(path: Path):
    """Write a WebP copy capped at 1200x1200. Returns its path or None."""
    target = optimized_path(path)
    try:
        with Image.open(path) as img:
            img.thumbnail(OPTIMIZED_MAX_SIZE)
            if img.mode not in ("RGB", "RGBA"):
                img = img.convert("RGBA" if "transparency" in img.info else "RGB")
            img.save(target, "WEBP", quality=OPTIMIZED_QUALITY)
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as e:
        logger.error("[Upload] Error optimizing image %s: %s", path.name, e)
        return None
    logger.info("[Upload] Image optimized: %s", target.name)
    return target


def process_file(data: bytes, original_name: str, mime_type: str) -> dict:
    """Store an upload and return its attachment record."""
    if not is_allowed(mime_type):
        raise UnsupportedFileError()
    if not data:
        raise InvalidInputError("Arquivo vazio enviado")
    if len(data) > config.MAX_UPLOAD_SIZE:
        raise InvalidInputError("Arquivo muito grande (máximo 10MB)")

    file_id = uuid.uuid4().hex
    extension = Path(secure_filename(original_name or "")).suffix.lower()
    filename = f"{file_id}{extension}"
    path = upload_dir() / filename
    path.write_bytes(data)

    attachment = {
        "id": file_id,
        "filename": filename,
        "originalName": original_name,
        "mimeType": mime_type,
        "size": len(data),
        "url": f"/uploads/{filename}",
        "type": file_type(mime_type),
        "uploadedAt": datetime.utcnow().isoformat(),
    }

    if attachment["type"] == "pdf":
        text = extract_pdf_text(data)
        attachment["processedContent"] = text
        attachment["extractedText"] = text
    elif attachment["type"] == "image":
        optimize_image(path)
    elif mime_type.startswith("text/"):
        attachment["extractedText"] = data.decode("utf-8", errors="ignore")[:MAX_EXTRACTED_CHARS]

    logger.info("[Upload] Stored %s as %s (%s bytes)", original_name, filename, len(data))
    return attachment


def delete_file(filename: str) -> bool:
    path = file_path(filename)
    removed = False
    for target in (path, optimized_path(path)):
        if target.is_file():
            target.unlink()
            removed = True
            logger.info("[Upload] File deleted: %s", target.name)
    return removed


def cleanup_old_files(max_age_seconds: int = None) -> int:
    max_age_seconds = config.UPLOAD_MAX_AGE_SECONDS if max_age_seconds is None else max_age_seconds
    cutoff = time.time() - max_age_seconds
    removed = 0
    for entry in upload_dir().iterdir():
        if entry.is_file() and entry.stat().st_mtime < cutoff:
            entry.unlink()
            removed += 1
    if removed:
        logger.info("[Upload] Cleanup removed %s old files", removed)
    return removed
