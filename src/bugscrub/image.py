"""Image sanitizer — opaque fill or blur over rectangular regions of a screenshot.

Regions come from two places: rectangles the user drew by hand, and boxes
derived from PII found in DOM-rendered text runs.  The second source is a
heuristic: it assumes glyphs are evenly spaced across the run's box.
"""

from __future__ import annotations

import io
import logging
from typing import Iterable

from PIL import Image, ImageDraw, ImageFilter, UnidentifiedImageError

from .errors import MalformedInputError
from .redactor import TextSanitizer
from .types import Rect, TextRun

logger = logging.getLogger(__name__)

MODES = ("fill", "blur")


def decode_image(data: bytes) -> Image.Image:
    """Decode raw screenshot bytes (PNG, JPEG, WebP...)."""
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
        raise MalformedInputError(f"unreadable screenshot: {exc}") from exc
    return image


def encode_png(image: Image.Image) -> bytes:
    buf = io.BytesIO()
    image.save(buf, format="PNG", optimize=True)
    return buf.getvalue()


class ImageSanitizer:
    """Redacts regions of a bitmap. Output size always equals input size."""

    def __init__(
        self,
        *,
        mode: str = "fill",
        fill: tuple[int, int, int] = (0, 0, 0),
        blur_radius: int = 12,
        padding: int = 0,
    ) -> None:
        if mode not in MODES:
            raise ValueError(f"mode must be one of {MODES}, got {mode!r}")
        self.mode = mode
        self.fill = fill
        self.blur_radius = blur_radius
        self.padding = padding

    def sanitize(
        self,
        image: Image.Image,
        regions: Iterable[Rect],
        *,
        mode: str | None = None,
    ) -> Image.Image:
        """Return a redacted copy of ``image``."""
        mode = mode or self.mode
        if mode not in MODES:
            raise ValueError(f"mode must be one of {MODES}, got {mode!r}")

        width, height = image.size
        edited = image.convert("RGBA") if image.mode not in ("RGB", "RGBA") else image.copy()
        draw = ImageDraw.Draw(edited)
        applied = 0

        for region in regions:
            clamped = region.pad(self.padding).clamp(width, height)
            if clamped is None:
                continue
            box = clamped.box()
            if mode == "blur":
                patch = edited.crop(box).filter(ImageFilter.GaussianBlur(radius=self.blur_radius))
                edited.paste(patch, box)
            else:
                # Rectangle end coordinates are inclusive in Pillow
                color = self.fill + (255,) if edited.mode == "RGBA" else self.fill
                draw.rectangle((box[0], box[1], box[2] - 1, box[3] - 1), fill=color)
            applied += 1

        logger.debug("Redacted %d image region(s) (%s)", applied, mode)
        return edited


def regions_for_text_runs(
    runs: Iterable[TextRun],
    sanitizer: TextSanitizer,
    *,
    padding: int = 2,
) -> list[Rect]:
    """Map PII found in on-screen text runs to pixel rectangles.

    Best effort: runs without text or without a usable box contribute nothing.
    """
    regions: list[Rect] = []
    for run in runs:
        n = len(run.text)
        if n == 0 or run.rect.width <= 0 or run.rect.height <= 0:
            continue
        char_w = run.rect.width / n
        for span in sanitizer.find_spans(run.text):
            x1 = run.rect.x + int(span.start * char_w)
            x2 = run.rect.x + int(round(span.end * char_w))
            regions.append(
                Rect(x1, run.rect.y, max(x2 - x1, 1), run.rect.height).pad(padding)
            )
    return regions
