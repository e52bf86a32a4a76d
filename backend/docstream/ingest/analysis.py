"""Text analysis capability used per window during document processing.

Production deployments plug a language-model backed analyzer in here; the
bundled :class:`KeywordAnalyzer` is a deterministic heuristic that keeps the
pipeline useful (and testable) without network access.
"""

from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol

_WORD_RE = re.compile(r"[A-Za-z][A-Za-z'-]+")
_QUOTE_RE = re.compile(r"[\"“]([^\"”]{20,300})[\"”]")
_ENTITY_RE = re.compile(r"\b([A-Z][a-z]+(?:\s+(?:of\s+|the\s+)?[A-Z][a-z]+)+)\b")
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")
_INSIGHT_CUES = ("need", "should", "must", "gap", "lack", "barrier", "improve", "recommend")

_STOPWORDS = frozenset(
    """
    a about above after again against all also am an and any are as at be because been before being
    below between both but by can could did do does doing down during each few for from further had
    has have having he her here hers herself him himself his how i if in into is it its itself just
    me more most my myself no nor not now of off on once only or other our ours ourselves out over
    own same she should so some such than that the their theirs them themselves then there these
    they this those through to too under until up very was we were what when where which while who
    whom why will with would you your yours yourself yourselves said says many much well like
    """.split()
)


@dataclass(slots=True)
class AnalysisResult:
    themes: list[str] = field(default_factory=list)
    quotes: list[str] = field(default_factory=list)
    insights: list[str] = field(default_factory=list)
    entities: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.themes or self.quotes or self.insights or self.entities)

    def to_dict(self) -> dict[str, list[str]]:
        return {
            "themes": list(self.themes),
            "quotes": list(self.quotes),
            "insights": list(self.insights),
            "entities": list(self.entities),
        }

    @classmethod
    def merge(cls, results: Iterable["AnalysisResult"], limit: int = 25) -> "AnalysisResult":
        """Combine per-window results into a document-level result, keeping first-seen order."""
        merged = cls()
        for result in results:
            for target, values in (
                (merged.themes, result.themes),
                (merged.quotes, result.quotes),
                (merged.insights, result.insights),
                (merged.entities, result.entities),
            ):
                for value in values:
                    if value not in target and len(target) < limit:
                        target.append(value)
        return merged


class Analyzer(Protocol):
    def analyze(self, text: str) -> AnalysisResult: ...


class KeywordAnalyzer:
    """Frequency and pattern based extraction of themes, quotes, insights, and entities."""

    def __init__(
        self,
        max_themes: int = 5,
        max_quotes: int = 3,
        max_insights: int = 3,
        max_entities: int = 10,
        extract_themes: bool = True,
        extract_quotes: bool = True,
        generate_insights: bool = True,
        extract_entities: bool = True,
    ) -> None:
        self.max_themes = max_themes
        self.max_quotes = max_quotes
        self.max_insights = max_insights
        self.max_entities = max_entities
        self.extract_themes = extract_themes
        self.extract_quotes = extract_quotes
        self.generate_insights = generate_insights
        self.extract_entities = extract_entities

    def analyze(self, text: str) -> AnalysisResult:
        if not text.strip():
            return AnalysisResult()
        return AnalysisResult(
            themes=self._themes(text) if self.extract_themes else [],
            quotes=self._quotes(text) if self.extract_quotes else [],
            insights=self._insights(text) if self.generate_insights else [],
            entities=self._entities(text) if self.extract_entities else [],
        )

    def _themes(self, text: str) -> list[str]:
        counts = Counter(
            word
            for word in (token.lower() for token in _WORD_RE.findall(text))
            if len(word) > 3 and word not in _STOPWORDS
        )
        # most_common keeps first-seen order for equal counts
        return [word for word, count in counts.most_common(self.max_themes) if count > 1]

    def _quotes(self, text: str) -> list[str]:
        return [match.strip() for match in _QUOTE_RE.findall(text)][: self.max_quotes]

    def _insights(self, text: str) -> list[str]:
        insights: list[str] = []
        for sentence in _SENTENCE_SPLIT_RE.split(text):
            lowered = sentence.lower()
            if any(cue in lowered for cue in _INSIGHT_CUES):
                insights.append(sentence.strip()[:280])
            if len(insights) >= self.max_insights:
                break
        return insights

    def _entities(self, text: str) -> list[str]:
        seen: list[str] = []
        for match in _ENTITY_RE.findall(text):
            if match not in seen:
                seen.append(match)
            if len(seen) >= self.max_entities:
                break
        return seen


def analysis_from_dict(payload: dict[str, Any] | None) -> AnalysisResult:
    if not payload:
        return AnalysisResult()
    return AnalysisResult(
        themes=list(payload.get("themes", [])),
        quotes=list(payload.get("quotes", [])),
        insights=list(payload.get("insights", [])),
        entities=list(payload.get("entities", [])),
    )


__all__ = ["AnalysisResult", "Analyzer", "KeywordAnalyzer", "analysis_from_dict"]
