import posixpath
import uuid

from django.conf import settings
from django.utils.text import slugify

UPLOAD_ROOT = "uploads"

KIND_PROPERTY = "hausfotos"
KIND_TENANCY_PERIOD = "mietzeitraum"
KIND_COST_ITEM = "kosten"
KIND_METER_READING = "zaehlerstand"


def _safe_slug(value: str, fallback: str) -> str:
    slug = slugify((value or "").strip())
    return slug or fallback


def _photo_extension(extension: str | None = None) -> str:
    ext = (extension or getattr(settings, "NEBENKOSTEN_PHOTO_EXTENSION", ".jpg") or ".jpg").lower()
    if not ext.startswith("."):
        ext = f".{ext}"
    return ext


def unique_photo_name(extension: str | None = None) -> str:
    return f"img_{uuid.uuid4().hex}{_photo_extension(extension)}"


def owner_directory(kind: str, owner_key) -> str:
    if kind == KIND_PROPERTY:
        owner = _safe_slug(str(owner_key), "haus")
    else:
        owner = str(int(owner_key))
    return posixpath.join(UPLOAD_ROOT, _safe_slug(kind, "sonstiges"), owner)


def build_photo_path(kind: str, owner_key, *, extension: str | None = None) -> str:
    return posixpath.join(owner_directory(kind, owner_key), unique_photo_name(extension))


def relocate_photo_path(image_path: str, kind: str, new_owner_key) -> str:
    """Gleicher Dateiname, neues Besitzerverzeichnis."""
    filename = posixpath.basename((image_path or "").lstrip("/"))
    return posixpath.join(owner_directory(kind, new_owner_key), filename)
