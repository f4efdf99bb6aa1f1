"""
Retrieval Orchestrator

Runs the synonym-aware search and assembles the LLM context:

    [pediatric weight-based dosing]   when the query has a weight + medication
    [critical protocol elements]      base contact, positioning, transport,
                                      warnings, contraindications
    [provider impressions reference]  when the query names a medical term
    #1 • title [category / subcategory]
    content ...

Hits are augmented so that protocols named by code in the query, the
MCG 1309 dosing reference (for dosing questions) and the base contact
reference (when asked) are always present. Missing metadata or a failed
structured rendering degrade the result; neither aborts retrieval.
"""

import logging
import re
from typing import Callable, List, Optional, Set, Tuple

from .config import get_settings
from .context_renderer import MarkdownRenderer
from .dosing import DosingRegistry, extract_weight_medication_queries
from .metadata_store import MetadataStore, normalize_protocol_code
from .models import Document, RetrievalResult
from .provider_impressions import ProviderImpressionCatalog, load_catalog
from .search_index import KnowledgeBase
from .validation_pipeline import extract_protocol_codes

logger = logging.getLogger(__name__)

# Ref 1200.2 protocols that require Base Hospital contact
KNOWN_BASE_CONTACT_CODES = frozenset({"1210", "1215", "1219", "1220", "1229", "1232", "1244"})

NO_MATCHES_MESSAGE = "No direct matches in knowledge base."
CHUNK_CHARACTER_LIMIT = 1400
CHUNK_SEPARATOR = "\n\n---\n\n"
PRIMARY_HIT_COUNT = 3
MIN_WARNING_LENGTH = 10

PEDIATRIC_HEADER = "**PEDIATRIC WEIGHT-BASED DOSING (LA County MCG 1309):**"
CRITICAL_HEADER = "CRITICAL PROTOCOL ELEMENTS:"

_TITLE_CODE = re.compile(r"\b(1[2-3]\d{2})\b")
_CONTENT_CODE = re.compile(r"\bTP\s*(\d{4})\b")
_QUERY_CODE = re.compile(r"\b(1[0-3]\d{2})\b")
_DOSING_HINT = re.compile(
    r"\b(dose|dosing|mg|mcg|medication|meds|epinephrine|epi|albuterol|ketorolac|"
    r"acetaminophen|midazolam|fentanyl|pediatric|weight)\b"
)


# ═══════════════════════════════════════════════════════════════════════════════
# Hit augmentation
# ═══════════════════════════════════════════════════════════════════════════════

def _is_dosing_reference(doc: Document) -> bool:
    return "mcg 1309" in (doc.subcategory or "").lower() or "mcg 1309" in doc.title.lower()


def augment_with_related_docs(query: str, hits: List[Document], all_docs: List[Document]) -> List[Document]:
    augmented = list(hits)
    lowered = query.lower()

    def ensure(predicate: Callable[[Document], bool], first: bool = False) -> None:
        existing = next((d for d in augmented if predicate(d)), None)
        if existing is not None:
            if first and augmented[0] is not existing:
                augmented.remove(existing)
                augmented.insert(0, existing)
            return
        found = next((d for d in all_docs if predicate(d)), None)
        if found is not None:
            if first:
                augmented.insert(0, found)
            else:
                augmented.append(found)

    for code in dict.fromkeys(_QUERY_CODE.findall(lowered)):
        ensure(lambda d, code=code: code in d.title.lower())

    wants_dosing = bool(_DOSING_HINT.search(lowered)) or any(
        "medication" in h.category.lower() for h in hits
    )
    if wants_dosing:
        ensure(_is_dosing_reference, first=True)

    if "base contact" in lowered:
        ensure(lambda d: "base contact" in d.title.lower())

    return augmented


# ═══════════════════════════════════════════════════════════════════════════════
# Context sections
# ═══════════════════════════════════════════════════════════════════════════════

def build_kb_chunks(hits: List[Document]) -> List[str]:
    chunks = []
    for i, doc in enumerate(hits, start=1):
        content = doc.content
        if len(content) > CHUNK_CHARACTER_LIMIT:
            content = content[:CHUNK_CHARACTER_LIMIT] + " …"
        source = doc.category + (f" / {doc.subcategory}" if doc.subcategory else "")
        chunks.append(f"#{i} • {doc.title} [{source}]\n{content}")
    return chunks


def primary_protocol_codes(hits: List[Document]) -> Set[str]:
    codes = set()
    for hit in hits[:PRIMARY_HIT_COUNT]:
        match = _TITLE_CODE.search(hit.title or "") or _CONTENT_CODE.search(hit.content or "")
        if match:
            codes.add(match.group(1))
    return codes


def build_critical_metadata(hits: List[Document], store: MetadataStore) -> Optional[str]:
    """Critical elements for hits relevant to the primary matched protocols."""
    primary = primary_protocol_codes(hits)
    elements: List[str] = []
    seen: Set[str] = set()

    for hit in hits:
        if hit.id in seen:
            continue
        seen.add(hit.id)

        metadata = store.get(hit.id)
        if metadata is None:
            continue

        codes = metadata.protocol_codes or []
        normalized = {normalize_protocol_code(c) for c in codes} | set(codes)
        if codes and not (normalized & primary):
            continue

        if metadata.base_contact.required and normalized & KNOWN_BASE_CONTACT_CODES:
            line = "BASE HOSPITAL CONTACT REQUIRED"
            if metadata.base_contact.criteria:
                line += f": {metadata.base_contact.criteria}"
            if metadata.base_contact.scenarios:
                line += f" ({', '.join(metadata.base_contact.scenarios)})"
            elements.append(line)

        if metadata.positioning:
            line = f"POSITIONING: {metadata.positioning.position}"
            if metadata.positioning.context:
                line += f" - {metadata.positioning.context}"
            elements.append(line)

        for transport in metadata.transport:
            line = f"TRANSPORT: {transport.destination}"
            if transport.criteria:
                line += f" - {transport.criteria}"
            elements.append(line)

        for warning in metadata.warnings:
            cleaned = warning.replace("**", "").replace("\n", " ").strip()
            if len(cleaned) > MIN_WARNING_LENGTH:
                elements.append(f"WARNING: {cleaned}")

        for contraindication in metadata.contraindications:
            elements.append(f"CONTRAINDICATION: {contraindication}")

    if not elements:
        return None
    return CRITICAL_HEADER + "\n" + "\n".join(f"- {e}" for e in elements) + "\n---"


def build_pediatric_block(items: List[Tuple[str, float]], registry: DosingRegistry) -> str:
    lines = [PEDIATRIC_HEADER]
    for medication, weight_kg in items:
        result = registry.calculate(medication, weight_kg=weight_kg, scenario="pediatric")
        if result is None:
            continue
        lines.append(f"• {result.summary_line}")
        if result.notes:
            lines.append(f"  Notes: {'; '.join(result.notes)}")
        lines.append(f"  Citations: {', '.join(result.citations)}")
    lines.append("---\n")
    return "\n".join(lines)


# ═══════════════════════════════════════════════════════════════════════════════
# Orchestrator
# ═══════════════════════════════════════════════════════════════════════════════

class RetrievalManager:
    """
    Search plus context assembly over a shared knowledge base.

    Usage:
        manager = RetrievalManager(KnowledgeBase())
        result = await manager.search("20kg child seizure midazolam")
        result.context, result.hits
    """

    def __init__(
        self,
        knowledge_base: KnowledgeBase,
        metadata_store: Optional[MetadataStore] = None,
        dosing: Optional[DosingRegistry] = None,
        catalog: Optional[ProviderImpressionCatalog] = None,
        renderer: Optional[MarkdownRenderer] = None,
        default_limit: Optional[int] = None,
        use_markdown: Optional[bool] = None,
        scope: Optional[str] = None,
    ):
        settings = get_settings()
        self.kb = knowledge_base
        self.metadata = metadata_store or MetadataStore()
        self.dosing = dosing or DosingRegistry()
        self.catalog = catalog or load_catalog()
        self.renderer = renderer or MarkdownRenderer()
        self.default_limit = default_limit or settings.retrieval_default_limit
        self.use_markdown = settings.enable_markdown_context if use_markdown is None else use_markdown
        self.scope = scope if scope is not None else settings.kb_scope

    async def search(self, query: str, max_chunks: Optional[int] = None,
                     use_markdown: Optional[bool] = None) -> RetrievalResult:
        await self.kb.initialize()
        limit = max_chunks or self.default_limit
        degraded = False

        hits = self.search_hits(query, limit)
        context = self.build_context(query, hits)

        metadata_load = await self.metadata.load()
        if metadata_load.available:
            critical = build_critical_metadata(hits, self.metadata)
            if critical:
                context = critical + "\n\n" + context
        else:
            degraded = True
            logger.warning(
                "Retrieval continuing without critical protocol metadata",
                extra={"metadata_status": metadata_load.status.value, "reason": metadata_load.reason}
            )

        pediatric = extract_weight_medication_queries(query)
        if pediatric:
            context = build_pediatric_block(pediatric, self.dosing) + context
        reference_codes = extract_protocol_codes(context)

        markdown = self.use_markdown if use_markdown is None else use_markdown
        if markdown:
            rendered = self.renderer.render(context, hits)
            if rendered.degraded:
                degraded = True
                logger.warning(
                    "Structured rendering unavailable, using unstructured context",
                    extra={"reason": rendered.reason}
                )
            context = rendered.text

        logger.debug(
            f"Retrieved {len(hits)} documents",
            extra={"hit_count": len(hits), "hit_ids": [h.id for h in hits], "degraded": degraded}
        )
        return RetrievalResult(context=context, hits=hits, degraded=degraded, reference_codes=reference_codes)

    def search_hits(self, query: str, limit: Optional[int] = None) -> List[Document]:
        hits = self.kb.search(query, limit or self.default_limit)
        return augment_with_related_docs(query, hits, self.kb.documents)

    def build_context(self, query: str, hits: List[Document]) -> str:
        if not hits:
            return NO_MATCHES_MESSAGE
        pcm_only = (self.scope or "").lower() == "pcm"
        section = self.catalog.build_section(query, pcm_only=pcm_only)
        return section + CHUNK_SEPARATOR.join(build_kb_chunks(hits))
