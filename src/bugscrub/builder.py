"""Report builder — turns raw captured input into a sanitized BugReport.

Usage:
    builder = ReportBuilder(TextSanitizer(), ImageSanitizer())
    report = builder.build(RawReport(
        title="Checkout broken",
        description="Card 4111 1111 1111 1111 was declined",
        screenshot=png_bytes,
        manual_regions=[Rect(10, 10, 200, 40)],
    ))

Nothing raw survives: every string is sanitized, the screenshot is redacted
and re-encoded.  Malformed input raises MalformedInputError.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable

from . import __version__
from .dedupe import fingerprint
from .errors import MalformedInputError
from .image import ImageSanitizer, decode_image, encode_png, regions_for_text_runs
from .redactor import TextSanitizer
from .types import (
    BugReport, CustomValue, EntryStatus, Rect, RedactionReport, Severity, Span, TextRun,
)


@dataclass
class RawReport:
    """Unsanitized capture, as handed over by the widget/instrumentation."""
    title: str
    description: str = ""
    severity: Severity | str = Severity.MEDIUM
    tags: set[str] | frozenset[str] | list[str] = field(default_factory=set)
    custom_data: dict[str, CustomValue] = field(default_factory=dict)
    text_fields: dict[str, str] = field(default_factory=dict)
    stack: str | None = None
    screenshot: bytes | None = None
    manual_regions: list[Rect] = field(default_factory=list)
    text_runs: list[TextRun] = field(default_factory=list)
    known_spans: dict[str, list[Span]] = field(default_factory=dict)   # field name -> spans
    replay: list[CustomValue] | None = None
    metadata: dict[str, CustomValue] = field(default_factory=dict)


class ReportBuilder:
    """Composes the text and image sanitizers into one report."""

    def __init__(
        self,
        text_sanitizer: TextSanitizer | None = None,
        image_sanitizer: ImageSanitizer | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.text = text_sanitizer or TextSanitizer()
        self.image = image_sanitizer or ImageSanitizer()
        self.clock = clock

    def _text(self, name: str, value: str, raw: RawReport, report: RedactionReport) -> str:
        if not isinstance(value, str):
            raise MalformedInputError(f"{name}: expected text, got {type(value).__name__}")
        result = self.text.sanitize(value, extra_spans=raw.known_spans.get(name, ()))
        report.merge(result.report)
        return result.text

    def _value(self, value: CustomValue, report: RedactionReport) -> CustomValue:
        clean, sub = self.text.sanitize_value(value)
        report.merge(sub)
        return clean

    def _screenshot(self, raw: RawReport) -> bytes | None:
        if raw.screenshot is None:
            return None
        image = decode_image(raw.screenshot)
        regions = list(raw.manual_regions)
        regions.extend(regions_for_text_runs(raw.text_runs, self.text))
        return encode_png(self.image.sanitize(image, regions))

    def build(self, raw: RawReport) -> BugReport:
        """Sanitize every field of ``raw`` and assemble a pending BugReport."""
        try:
            severity = Severity(raw.severity)
        except ValueError:
            raise MalformedInputError(f"severity: unknown value {raw.severity!r}") from None

        redactions = RedactionReport()
        title = self._text("title", raw.title, raw, redactions)
        description = self._text("description", raw.description, raw, redactions)
        stack = self._text("stack", raw.stack, raw, redactions) if raw.stack is not None else None
        text_fields = {
            name: self._text(name, value, raw, redactions)
            for name, value in raw.text_fields.items()
        }
        tags = frozenset(self._text("tags", tag, raw, redactions) for tag in raw.tags)
        custom_data = self._value(raw.custom_data, redactions)
        replay = self._value(raw.replay, redactions) if raw.replay is not None else None
        metadata = self._value(raw.metadata, redactions)
        screenshot = self._screenshot(raw)

        report = BugReport(
            id="",
            title=title,
            description=description,
            severity=severity,
            tags=tags,
            custom_data=custom_data,
            text_fields=text_fields,
            stack=stack,
            screenshot=screenshot,
            replay=replay,
            metadata={**metadata, "sdk_version": __version__, "redaction_counts": dict(redactions.by_kind)},
            redactions=redactions,
            created_at=self.clock(),
            attempts=0,
            status=EntryStatus.PENDING,
        )
        report.id = fingerprint(report)
        return report
