"""Map MIME types and filename extensions to canonical format identifiers."""
from typing import Optional

UNKNOWN_FORMAT = "unknown"

# MIME subtype -> canonical format. jpeg stays jpeg.
MIME_SUBTYPE_ALIASES = {
    "svg+xml": "svg",
    "x-ms-wmv": "wmv",
    "quicktime": "mov",
}

# Subtypes that say nothing about the actual format
GENERIC_SUBTYPES = {"octet-stream", "unknown", "x-unknown", "binary"}

IMAGE_MIME_TYPES = {
    "png": "image/png",
    "jpeg": "image/jpeg",
    "webp": "image/webp",
    "gif": "image/gif",
    "bmp": "image/bmp",
}

VIDEO_MIME_TYPES = {
    "mp4": "video/mp4",
    "webm": "video/webm",
    "avi": "video/x-msvideo",
    "mov": "video/quicktime",
}


def _format_from_mime(mime_type: Optional[str]) -> Optional[str]:
    if not mime_type or "/" not in mime_type:
        return None
    subtype = mime_type.split("/", 1)[1].split(";", 1)[0].strip().lower()
    if not subtype or subtype in GENERIC_SUBTYPES:
        return None
    return MIME_SUBTYPE_ALIASES.get(subtype, subtype)


def _format_from_name(name: Optional[str]) -> Optional[str]:
    if not name or "." not in name:
        return None
    ext = name.rsplit(".", 1)[1].strip().lower()
    return ext or None


def resolve_format(name: Optional[str], mime_type: Optional[str] = None) -> str:
    """Best-effort format id: MIME subtype first, then extension, else 'unknown'."""
    return _format_from_mime(mime_type) or _format_from_name(name) or UNKNOWN_FORMAT


def resolve_file_format(file) -> str:
    return resolve_format(file.name, file.mime_type)


def mime_type_for(format_id: str) -> str:
    """Output MIME type for an image format; unknown formats map to image/png."""
    return IMAGE_MIME_TYPES.get((format_id or "").lower(), "image/png")


def video_mime_type_for(format_id: str) -> str:
    fmt = (format_id or "").lower()
    return VIDEO_MIME_TYPES.get(fmt, f"video/{fmt}" if fmt else "video/mp4")


def pil_format_for(format_id: str) -> str:
    """Pillow save() format name for an image format id."""
    return (format_id or "png").upper()
