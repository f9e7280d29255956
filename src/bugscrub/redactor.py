"""Text sanitizer — runs the pattern registry over strings and nested values.

Usage:
    from bugscrub import PatternRegistry, TextSanitizer

    sanitizer = TextSanitizer(PatternRegistry.from_config("all"))
    result = sanitizer.sanitize("Email me at john@acme.com")
    print(result.text)            # "Email me at [REDACTED]"
    print(result.report.by_kind)  # {"email": 1}

Redaction is one-way: there is no token map and nothing can be rehydrated.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Callable, Iterable, Mapping

from .errors import MalformedInputError
from .patterns import PatternRegistry
from .types import CustomValue, RedactionReport, SanitizedText, Span

logger = logging.getLogger(__name__)

DEFAULT_TOKEN = "[REDACTED]"

# Caller-supplied spans outrank every detector on equal length.
_KNOWN_PRIORITY = 1 << 30
_KNOWN_ID = "known"


def resolve_overlaps(
    spans: Iterable[Span],
    rank: Callable[[Span], tuple],
) -> list[Span]:
    """Keep a non-overlapping subset of spans, best-ranked first.

    ``rank`` returns a sort key where smaller is better.  Returned spans are
    ordered by start offset.
    """
    taken: list[Span] = []
    for span in sorted(spans, key=rank):
        if not any(span.overlaps(t) for t in taken):
            taken.append(span)
    return sorted(taken, key=lambda s: s.start)


def _outside(span: Span, markers: list[tuple[int, int]]) -> list[Span]:
    pieces: list[Span] = []
    start = span.start
    for begin, end in markers:
        if end <= start or begin >= span.end:
            continue
        if begin > start:
            pieces.append(replace(span, start=start, end=begin))
        start = max(start, end)
    if start < span.end:
        pieces.append(replace(span, start=start, end=span.end))
    return pieces


class TextSanitizer:
    """Applies a PatternRegistry to text.

    Overlaps resolve as: longest span wins; equal length -> higher detector
    priority wins; still tied -> earlier registered detector wins.
    """

    def __init__(
        self,
        registry: PatternRegistry | None = None,
        *,
        tokens: Mapping[str, str] | None = None,
        default_token: str = DEFAULT_TOKEN,
    ) -> None:
        self.registry = registry if registry is not None else PatternRegistry.from_config("all")
        self.tokens = dict(tokens or {})
        self.default_token = default_token

    def token_for(self, kind: str) -> str:
        return self.tokens.get(kind, self.default_token)

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def _collect(self, text: str) -> list[Span]:
        spans: list[Span] = []
        for detector in self.registry.detectors():
            try:
                found = detector.match(text)
            except Exception:
                # One broken detector must not abort the rest of the document.
                logger.exception("Detector %r failed; contributing no spans", detector.id)
                continue
            spans.extend(
                s if s.detector == detector.id else replace(s, detector=detector.id)
                for s in found
                if 0 <= s.start < s.end <= len(text)
            )
        return spans

    def _marker_ranges(self, text: str) -> list[tuple[int, int]]:
        """Offsets of redaction tokens already present in the text."""
        ranges: list[tuple[int, int]] = []
        for token in {self.default_token, *self.tokens.values()}:
            if not token:
                continue
            idx = text.find(token)
            while idx != -1:
                ranges.append((idx, idx + len(token)))
                idx = text.find(token, idx + len(token))
        return ranges

    def find_spans(self, text: str, *, extra_spans: Iterable[Span] = ()) -> list[Span]:
        """Winning, non-overlapping spans in ``text`` (original offsets)."""
        if not text:
            return []
        candidates = self._collect(text)
        candidates.extend(
            Span(s.start, s.end, s.kind, s.confidence, s.detector or _KNOWN_ID)
            for s in extra_spans
            if 0 <= s.start < s.end <= len(text)
        )
        if not candidates:
            return []

        markers = sorted(self._marker_ranges(text))
        if markers:
            # Keep only the parts of a span that fall outside existing tokens
            candidates = [piece for s in candidates for piece in _outside(s, markers)]

        order = {d.id: idx for idx, d in enumerate(self.registry.detectors())}
        priority = {d.id: d.priority for d in self.registry.detectors()}

        def rank(span: Span) -> tuple:
            if span.detector in priority:
                prio, idx = priority[span.detector], order[span.detector]
            else:
                prio, idx = _KNOWN_PRIORITY, -1
            return (-span.length, -prio, idx, span.start)

        return resolve_overlaps(candidates, rank)

    def detect(self, text: str) -> dict[str, int]:
        """Count PII kinds in text without redacting it."""
        counts: dict[str, int] = {}
        for span in self.find_spans(text):
            counts[span.kind] = counts.get(span.kind, 0) + 1
        return counts

    # ------------------------------------------------------------------
    # Redaction
    # ------------------------------------------------------------------

    def sanitize(self, text: str, *, extra_spans: Iterable[Span] = ()) -> SanitizedText:
        """Redact PII from text.

        ``extra_spans`` are already-known PII ranges (e.g. from an earlier
        detection pass); they compete with detector spans like any other.
        """
        spans = self.find_spans(text, extra_spans=extra_spans)
        if not spans:
            return SanitizedText(text=text)

        report = RedactionReport()
        result = text
        # Right-to-left keeps earlier offsets valid
        for span in reversed(spans):
            result = result[:span.start] + self.token_for(span.kind) + result[span.end:]
            report.add(span.kind)
        return SanitizedText(text=result, report=report, spans=spans)

    def sanitize_value(self, value: CustomValue) -> tuple[CustomValue, RedactionReport]:
        """Sanitize a nested custom-data value.

        Strings are redacted, dict keys included.  Numbers, booleans and None
        pass through.  Anything outside that closed set is rejected.
        """
        report = RedactionReport()
        return self._walk(value, report, "$"), report

    def _walk(self, value: CustomValue, report: RedactionReport, path: str) -> CustomValue:
        if value is None or isinstance(value, (bool, int, float)):
            return value
        if isinstance(value, str):
            result = self.sanitize(value)
            report.merge(result.report)
            return result.text
        if isinstance(value, list):
            return [self._walk(v, report, f"{path}[{i}]") for i, v in enumerate(value)]
        if isinstance(value, dict):
            out: dict[str, CustomValue] = {}
            for key, val in value.items():
                if not isinstance(key, str):
                    raise MalformedInputError(f"{path}: non-string key of type {type(key).__name__}")
                clean_key = self._walk(key, report, path)
                if clean_key in out:
                    # Two keys redacted to the same token; keep both values
                    n = 2
                    while f"{clean_key}#{n}" in out:
                        n += 1
                    clean_key = f"{clean_key}#{n}"
                out[clean_key] = self._walk(val, report, f"{path}.{clean_key}")
            return out
        raise MalformedInputError(f"{path}: unsupported value type {type(value).__name__}")
