"""
Structured context rendering.

Turns the retrieved hits into a markdown rendering for the LLM while
keeping the pediatric dosing block and the critical protocol elements
verbatim. Rendering problems are reported as a degraded result carrying
the unstructured context, never as an exception.
"""

import re
from dataclasses import dataclass
from typing import List, Optional

from .models import Document

PEDIATRIC_SECTION = re.compile(r"\*\*PEDIATRIC WEIGHT-BASED DOSING[\s\S]*?---")
CRITICAL_SECTION = re.compile(r"CRITICAL PROTOCOL ELEMENTS:[\s\S]*?---")

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+(?=[A-Z])")
_DOSE = re.compile(r"\b(\d+(?:\.\d+)?\s*(?:mg|mcg|g|mEq)(?:/kg)?)\b")


@dataclass
class RenderedContext:
    text: str
    degraded: bool = False
    reason: Optional[str] = None


class MarkdownRenderer:
    """Markdown rendering of retrieved protocol chunks."""

    def __init__(self, max_points: int = 12):
        self.max_points = max_points

    def render(self, context: str, hits: List[Document]) -> RenderedContext:
        if not hits:
            return RenderedContext(context, degraded=True, reason="no hits to render")

        sections = []
        for hit in hits:
            points = [p.strip() for p in _SENTENCE_SPLIT.split(hit.content.strip()) if p.strip()]
            if not points:
                return RenderedContext(context, degraded=True, reason=f"document {hit.id} has no content")
            sections.append(self._section(hit, points[: self.max_points]))

        prefix = ""
        for pattern in (PEDIATRIC_SECTION, CRITICAL_SECTION):
            preserved = pattern.search(context)
            if preserved:
                prefix += preserved.group(0) + "\n\n"

        return RenderedContext(prefix + "\n\n".join(sections))

    @staticmethod
    def _section(hit: Document, points: List[str]) -> str:
        source = hit.category + (f" / {hit.subcategory}" if hit.subcategory else "")
        lines = [f"## {hit.title}", f"*Source: {source}*", ""]
        for point in points:
            lines.append("- " + _DOSE.sub(r"**\1**", point))
        return "\n".join(lines)
