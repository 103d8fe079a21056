"""Image stage: decode, resize, filter and re-encode one file with Pillow."""
import asyncio
import io
import logging
from datetime import datetime
from typing import Optional

from PIL import Image, UnidentifiedImageError

from converter.config import DEFAULT_FILENAME_PATTERN, LOSSY_IMAGE_FORMATS
from converter.conversion.errors import DecodeError, EncodeError
from converter.conversion.formats import mime_type_for, pil_format_for
from converter.conversion.models import ConversionResult, FilterSpec, MediaFile, ResizeSpec
from converter.conversion.naming import output_name
from converter.conversion.resize import dimensions_for, render

logger = logging.getLogger("converter.image")

# Formats that cannot carry an alpha channel
_OPAQUE_FORMATS = {"jpeg", "bmp"}


def _quality_percent(quality: float) -> int:
    return max(1, min(100, int(round(quality * 100))))


_DECODE_ERRORS = (UnidentifiedImageError, OSError, ValueError, SyntaxError, Image.DecompressionBombError)


def _decode(data: bytes, filename: str) -> Image.Image:
    try:
        img = Image.open(io.BytesIO(data))
    except _DECODE_ERRORS as e:
        raise DecodeError(f"failed to load image: {filename} ({e})", filename) from e
    try:
        img.load()
    except _DECODE_ERRORS as e:
        img.close()
        raise DecodeError(f"failed to load image: {filename} ({e})", filename) from e
    return img


def _encode(
    img: Image.Image,
    size: tuple[int, int],
    filters: FilterSpec,
    target_format: str,
    quality: float,
    filename: str,
) -> bytes:
    surface = None
    try:
        surface = render(img, size, filters)
        if target_format in _OPAQUE_FORMATS and surface.mode != "RGB":
            opaque = surface.convert("RGB")
            if surface is not img:
                surface.close()
            surface = opaque
        save_kw: dict = {"format": pil_format_for(target_format)}
        if target_format == "jpeg":
            save_kw.update(quality=_quality_percent(quality), optimize=True)
        elif target_format == "webp":
            save_kw.update(quality=_quality_percent(quality), method=4)
        elif target_format == "png":
            save_kw["optimize"] = True
        buf = io.BytesIO()
        surface.save(buf, **save_kw)
        return buf.getvalue()
    except (OSError, ValueError, KeyError) as e:
        raise EncodeError(f"failed to encode {filename} as {target_format}: {e}", filename) from e
    finally:
        if surface is not None and surface is not img:
            surface.close()


async def convert_image(
    file: MediaFile,
    target_format: str,
    quality: float,
    filters: FilterSpec,
    resize: ResizeSpec,
    index: int,
    filename_pattern: str = DEFAULT_FILENAME_PATTERN,
    now: Optional[datetime] = None,
) -> ConversionResult:
    """Convert one image. Quality only applies to lossy formats (jpeg, webp)."""
    target_format = target_format.lower()
    if target_format not in LOSSY_IMAGE_FORMATS:
        quality = 1.0
    try:
        data = file.read()
    except OSError as e:
        raise DecodeError(f"failed to read image: {file.name} ({e})", file.name) from e

    img = await asyncio.to_thread(_decode, data, file.name)
    try:
        await asyncio.sleep(0)
        original_dimensions = img.size
        size = dimensions_for(img, resize)
        encoded = await asyncio.to_thread(_encode, img, size, filters, target_format, quality, file.name)
    finally:
        img.close()

    result = ConversionResult(
        name=output_name(filename_pattern, file.name, index, target_format, now),
        data=encoded,
        original_name=file.name,
        original_size=file.size,
        converted_size=len(encoded),
        format=target_format,
        mime_type=mime_type_for(target_format),
        dimensions=size,
        original_dimensions=original_dimensions,
    )
    logger.info(
        "Converted %s -> %s (%s -> %s bytes, %sx%s)",
        file.name, result.name, file.size, result.converted_size, size[0], size[1],
    )
    return result
