"""Tests for the image sanitizer and text-run region mapping."""

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

import io

import pytest
from PIL import Image, ImageDraw

from bugscrub import ImageSanitizer, TextSanitizer
from bugscrub.errors import MalformedInputError
from bugscrub.image import decode_image, encode_png, regions_for_text_runs
from bugscrub.types import Rect, TextRun


def _white(w=100, h=60, mode="RGB"):
    return Image.new(mode, (w, h), "white")


def _striped(w=100, h=60):
    image = _white(w, h)
    draw = ImageDraw.Draw(image)
    for x in range(0, w, 2):
        draw.line((x, 0, x, h), fill="black")
    return image


# ── Fill / blur ──────────────────────────────────────────────────────

def test_fill_region():
    image = _white()
    out = ImageSanitizer().sanitize(image, [Rect(10, 10, 20, 20)])
    assert out.getpixel((15, 15)) == (0, 0, 0)
    assert out.getpixel((10, 10)) == (0, 0, 0)
    assert out.getpixel((29, 29)) == (0, 0, 0)
    assert out.getpixel((30, 30)) == (255, 255, 255)
    assert out.getpixel((5, 5)) == (255, 255, 255)


def test_input_not_mutated():
    image = _white()
    ImageSanitizer().sanitize(image, [Rect(0, 0, 50, 50)])
    assert image.getpixel((10, 10)) == (255, 255, 255)


def test_output_size_preserved():
    image = _white(123, 45)
    out = ImageSanitizer(mode="blur").sanitize(image, [Rect(-20, -20, 500, 500)])
    assert out.size == (123, 45)


def test_region_clamped_to_bounds():
    out = ImageSanitizer().sanitize(_white(), [Rect(90, 50, 40, 40)])
    assert out.getpixel((99, 59)) == (0, 0, 0)
    assert out.getpixel((89, 59)) == (255, 255, 255)


def test_zero_area_and_out_of_bounds_skipped():
    out = ImageSanitizer().sanitize(_white(), [Rect(10, 10, 0, 5), Rect(500, 500, 10, 10), Rect(-30, 0, 10, 10)])
    assert out.getcolors() == [(100 * 60, (255, 255, 255))]


def test_custom_fill_colour():
    out = ImageSanitizer(fill=(255, 0, 0)).sanitize(_white(), [Rect(0, 0, 5, 5)])
    assert out.getpixel((2, 2)) == (255, 0, 0)


def test_fill_rgba_is_opaque():
    image = _white(mode="RGBA")
    out = ImageSanitizer().sanitize(image, [Rect(0, 0, 5, 5)])
    assert out.getpixel((2, 2)) == (0, 0, 0, 255)


def test_palette_image_converted():
    image = _white().convert("P")
    out = ImageSanitizer().sanitize(image, [Rect(0, 0, 5, 5)])
    assert out.mode == "RGBA"
    assert out.getpixel((2, 2)) == (0, 0, 0, 255)


def test_blur_smooths_region():
    image = _striped()
    out = ImageSanitizer(mode="blur", blur_radius=4).sanitize(image, [Rect(20, 10, 40, 40)])
    inside = out.getpixel((40, 30))
    assert inside != (0, 0, 0) and inside != (255, 255, 255)
    assert out.getpixel((4, 30)) == image.getpixel((4, 30))


def test_mode_override_per_call():
    sanitizer = ImageSanitizer(mode="fill")
    out = sanitizer.sanitize(_striped(), [Rect(20, 10, 40, 40)], mode="blur")
    assert out.getpixel((40, 30)) != (0, 0, 0)


def test_padding_grows_region():
    out = ImageSanitizer(padding=3).sanitize(_white(), [Rect(10, 10, 5, 5)])
    assert out.getpixel((7, 7)) == (0, 0, 0)
    assert out.getpixel((6, 6)) == (255, 255, 255)


def test_unknown_mode():
    with pytest.raises(ValueError):
        ImageSanitizer(mode="pixelate")


# ── Decode / encode ──────────────────────────────────────────────────

def test_decode_garbage_is_malformed():
    with pytest.raises(MalformedInputError):
        decode_image(b"definitely not a png")


def test_decode_oversized_is_malformed(monkeypatch):
    data = encode_png(_white(64, 64))
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 100)
    with pytest.raises(MalformedInputError):
        decode_image(data)


def test_encode_png_roundtrip_size():
    data = encode_png(_white(30, 20))
    assert data.startswith(b"\x89PNG")
    assert decode_image(data).size == (30, 20)


def test_decode_jpeg():
    buf = io.BytesIO()
    _white(16, 16).save(buf, format="JPEG")
    assert decode_image(buf.getvalue()).size == (16, 16)


# ── Text runs ────────────────────────────────────────────────────────

def test_text_run_regions_proportional():
    # 20 chars over 200px -> 10px per char; email at chars 7..17
    run = TextRun("Email: a1234@b.io xx", Rect(0, 100, 200, 20))
    regions = regions_for_text_runs([run], TextSanitizer(), padding=0)
    assert regions == [Rect(70, 100, 100, 20)]


def test_text_run_regions_padding():
    run = TextRun("a@b.io", Rect(10, 10, 60, 10))
    regions = regions_for_text_runs([run], TextSanitizer(), padding=2)
    assert regions == [Rect(8, 8, 64, 14)]


def test_text_run_without_pii_or_box():
    runs = [
        TextRun("hello world", Rect(0, 0, 100, 10)),
        TextRun("", Rect(0, 0, 100, 10)),
        TextRun("a@b.io", Rect(0, 0, 0, 10)),
    ]
    assert regions_for_text_runs(runs, TextSanitizer()) == []


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
