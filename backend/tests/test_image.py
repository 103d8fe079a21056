import asyncio
import io

import pytest
from PIL import Image

from converter.conversion import image
from converter.conversion.errors import DecodeError, EncodeError
from converter.conversion.image import convert_image
from converter.conversion.models import FilterSpec, MediaFile, ResizeSpec

from conftest import image_file, make_image_bytes


def _convert(file, fmt="webp", quality=0.9, filters=None, resize=None, index=0, pattern="{name}"):
    return asyncio.run(
        convert_image(file, fmt, quality, filters or FilterSpec(), resize or ResizeSpec(), index, pattern)
    )


def test_png_to_webp_with_resize():
    result = _convert(image_file("photo.png", size=(100, 50)), "webp", resize=ResizeSpec(width=50))
    assert result.name == "photo.webp"
    assert result.format == "webp"
    assert result.mime_type == "image/webp"
    assert result.dimensions == (50, 25)
    assert result.original_dimensions == (100, 50)
    assert result.converted_size == len(result.data)
    with Image.open(io.BytesIO(result.data)) as out:
        assert out.format == "WEBP"
        assert out.size == (50, 25)


def test_transparent_png_to_jpeg_drops_alpha():
    result = _convert(image_file("logo.png", mode="RGBA"), "jpeg")
    with Image.open(io.BytesIO(result.data)) as out:
        assert out.format == "JPEG"
        assert out.mode == "RGB"


def test_bmp_and_gif_outputs():
    for fmt, pil_name in (("bmp", "BMP"), ("gif", "GIF"), ("png", "PNG")):
        result = _convert(image_file("photo.jpg", fmt="JPEG"), fmt)
        with Image.open(io.BytesIO(result.data)) as out:
            assert out.format == pil_name


def test_lower_quality_gives_smaller_jpeg():
    noise = Image.effect_noise((64, 64), 80).convert("RGB")
    buf = io.BytesIO()
    noise.save(buf, format="PNG")
    file = MediaFile.from_bytes("noise.png", buf.getvalue())
    low = _convert(file, "jpeg", quality=0.1)
    high = _convert(file, "jpeg", quality=1.0)
    assert low.converted_size < high.converted_size


def test_pattern_uses_index():
    result = _convert(image_file("photo.png"), "png", index=2, pattern="{name}_{index}")
    assert result.name == "photo_003.png"


def test_filters_applied():
    file = MediaFile.from_bytes("photo.png", make_image_bytes(color=(200, 100, 50)))
    result = _convert(file, "png", filters=FilterSpec(brightness=-100))
    with Image.open(io.BytesIO(result.data)) as out:
        assert out.convert("RGB").getpixel((0, 0)) == (0, 0, 0)


def test_corrupt_image_raises_decode_error():
    file = MediaFile.from_bytes("broken.png", b"not an image at all")
    with pytest.raises(DecodeError) as exc:
        _convert(file)
    assert exc.value.filename == "broken.png"
    assert "failed to load image" in exc.value.message


def test_full_hd_jpeg_to_webp_keeps_size():
    file = MediaFile.from_bytes("hd.jpg", make_image_bytes(fmt="JPEG", size=(1920, 1080)))
    result = _convert(file, "webp", quality=0.8)
    assert result.format == "webp"
    assert result.dimensions == (1920, 1080)
    expected = round((1 - result.converted_size / result.original_size) * 100, 1)
    assert result.compression_ratio == expected


def _track_close(img, closed):
    original = img.close

    def close():
        closed.append(img)
        original()

    img.close = close
    return img


def _tracked_decode(monkeypatch, closed):
    decode = image._decode
    decoded = []

    def wrapper(data, filename):
        img = _track_close(decode(data, filename), closed)
        decoded.append(img)
        return img

    monkeypatch.setattr(image, "_decode", wrapper)
    return decoded


def test_encode_failure_raises_encode_error(monkeypatch):
    def broken_save(self, fp, *args, **kwargs):
        raise OSError("disk full")

    src = image_file("photo.png")
    monkeypatch.setattr(Image.Image, "save", broken_save)
    with pytest.raises(EncodeError) as exc:
        _convert(src, "webp")
    assert exc.value.filename == "photo.png"
    assert "failed to encode photo.png as webp" in exc.value.message


def test_decoded_image_closed_after_success(monkeypatch):
    closed = []
    decoded = _tracked_decode(monkeypatch, closed)
    _convert(image_file("photo.png"), "png")
    assert len(decoded) == 1
    assert any(img is decoded[0] for img in closed)


def test_decoded_image_closed_after_encode_failure(monkeypatch):
    closed = []
    decoded = _tracked_decode(monkeypatch, closed)

    def broken_save(self, fp, *args, **kwargs):
        raise OSError("disk full")

    src = image_file("photo.png")
    monkeypatch.setattr(Image.Image, "save", broken_save)
    with pytest.raises(EncodeError):
        _convert(src, "jpeg")
    assert any(img is decoded[0] for img in closed)


def test_truncated_image_is_closed_before_decode_error(monkeypatch):
    noise = Image.effect_noise((64, 64), 80).convert("RGB")
    buf = io.BytesIO()
    noise.save(buf, format="PNG")
    truncated = buf.getvalue()[: len(buf.getvalue()) // 2]

    closed = []
    opened = []
    open_image = Image.open

    def tracked_open(fp, *args, **kwargs):
        img = _track_close(open_image(fp, *args, **kwargs), closed)
        opened.append(img)
        return img

    monkeypatch.setattr(Image, "open", tracked_open)
    with pytest.raises(DecodeError) as exc:
        _convert(MediaFile.from_bytes("cut.png", truncated))
    assert exc.value.filename == "cut.png"
    assert len(opened) == 1
    assert any(img is opened[0] for img in closed)
