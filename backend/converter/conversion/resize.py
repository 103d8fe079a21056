"""Output dimensions, resampling and colour filters for the image stage."""
import logging
import math
from typing import Optional, Tuple

from PIL import Image, ImageEnhance

from converter.conversion.models import FilterSpec, ResizeSpec

logger = logging.getLogger("converter.resize")


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _given(value: Optional[int]) -> bool:
    return value is not None and value > 0


def compute_dimensions(
    original_width: int,
    original_height: int,
    target_width: Optional[int] = None,
    target_height: Optional[int] = None,
    aspect_locked: bool = False,
) -> Tuple[int, int]:
    """
    Output (width, height) for a resize request.
    - No target: original size.
    - Aspect lock with one target: derive the other from the original ratio.
    - Otherwise: given values, missing ones fall back to the original.
    Never returns a dimension below 1.
    """
    has_w = _given(target_width)
    has_h = _given(target_height)
    if not has_w and not has_h:
        return max(1, original_width), max(1, original_height)

    ratio = original_width / original_height if original_height else 1.0
    if ratio <= 0:
        ratio = 1.0

    if aspect_locked and has_w and not has_h:
        width = target_width
        height = round_half_up(target_width / ratio)
    elif aspect_locked and has_h and not has_w:
        width = round_half_up(target_height * ratio)
        height = target_height
    else:
        width = target_width if has_w else original_width
        height = target_height if has_h else original_height
    return max(1, width), max(1, height)


def dimensions_for(img: Image.Image, resize: ResizeSpec) -> Tuple[int, int]:
    w, h = img.size
    return compute_dimensions(w, h, resize.width, resize.height, resize.aspect_locked)


def apply_filters(img: Image.Image, filters: FilterSpec) -> Image.Image:
    """Equivalent of CSS brightness(100+b%) contrast(100+c%) saturate(100+s%)."""
    if filters.is_identity:
        return img
    if img.mode not in ("RGB", "RGBA"):
        img = img.convert("RGBA" if "A" in img.getbands() or "transparency" in img.info else "RGB")
    if filters.brightness:
        img = ImageEnhance.Brightness(img).enhance(max(0.0, (100 + filters.brightness) / 100.0))
    if filters.contrast:
        img = ImageEnhance.Contrast(img).enhance(max(0.0, (100 + filters.contrast) / 100.0))
    if filters.saturation:
        img = ImageEnhance.Color(img).enhance(max(0.0, (100 + filters.saturation) / 100.0))
    return img


def render(img: Image.Image, size: Tuple[int, int], filters: FilterSpec) -> Image.Image:
    """Resample into a surface of `size` (LANCZOS) and apply the colour filters."""
    if img.size != size:
        if img.mode == "P":
            img = img.convert("RGBA")
        out = img.resize(size, Image.Resampling.LANCZOS)
        logger.debug("Resampled %sx%s -> %sx%s", img.width, img.height, size[0], size[1])
    else:
        out = img.copy()
    return apply_filters(out, filters)
