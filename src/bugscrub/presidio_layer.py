"""NER-based detection for unstructured PII (names, places, organizations).

Catches what regex can't reliably detect.  Uses Presidio + spaCy, which are
heavy, so the engine is loaded on first use and only when enabled.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from .types import Span

if TYPE_CHECKING:
    from presidio_analyzer import AnalyzerEngine

# One engine per language, loaded lazily
_engines: dict[str, AnalyzerEngine] = {}

DEFAULT_ENTITIES = [
    "PERSON",
    "LOCATION",
    "ORGANIZATION",
    "NRP",           # nationality, religious, political group
    "MEDICAL_LICENSE",
]


def _get_engine(language: str = "en") -> AnalyzerEngine:
    """Lazy-init the Presidio analyzer engine."""
    engine = _engines.get(language)
    if engine is None:
        from presidio_analyzer import AnalyzerEngine
        from presidio_analyzer.nlp_engine import NlpEngineProvider

        provider = NlpEngineProvider(nlp_configuration={
            "nlp_engine_name": "spacy",
            "models": [{"lang_code": language, "model_name": f"{language}_core_web_sm"}],
        })
        engine = AnalyzerEngine(nlp_engine=provider.create_engine(), supported_languages=[language])
        _engines[language] = engine
    return engine


class PresidioDetector:
    """Detector that delegates to a Presidio AnalyzerEngine.

    Entity types are lower-cased into span kinds ("PERSON" -> "person").
    """

    def __init__(
        self,
        *,
        id: str = "presidio",
        priority: int = 5,
        language: str = "en",
        entities: list[str] | None = None,
        score_threshold: float = 0.35,
        engine: AnalyzerEngine | None = None,
    ) -> None:
        self.id = id
        self.priority = priority
        self.language = language
        self.entities = entities or DEFAULT_ENTITIES
        self.score_threshold = score_threshold
        self._engine = engine

    def match(self, text: str) -> list[Span]:
        engine = self._engine or _get_engine(self.language)
        results = engine.analyze(
            text=text,
            language=self.language,
            entities=self.entities,
            score_threshold=self.score_threshold,
        )
        # Presidio may return overlapping results for one string; keep the
        # highest-scoring, then longest, so this detector's spans are disjoint.
        ranked = sorted(results, key=lambda r: (-r.score, -(r.end - r.start), r.start))
        spans: list[Span] = []
        for r in ranked:
            span = Span(r.start, r.end, r.entity_type.lower(), float(r.score), self.id)
            if not any(span.overlaps(s) for s in spans):
                spans.append(span)
        return sorted(spans, key=lambda s: s.start)
