"""
Search Index

In-memory inverted index over the protocol corpus with field boosting,
prefix matching and fuzzy matching (about 20% edit tolerance, scored with
fuzzywuzzy). Relevance is BM25+ per field; ties keep corpus order so the
same query over the same corpus always returns the same ordered hits.

KnowledgeBase wraps the corpus and index behind an initialize-once
contract: concurrent first callers share a single in-flight build.
"""

import asyncio
import bisect
import logging
import math
import re
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from fuzzywuzzy import fuzz

from .corpus import CorpusStore
from .error_handling import KnowledgeBaseNotLoadedError
from .models import Document
from .query_expander import expand_query

logger = logging.getLogger(__name__)

# ═══════════════════════════════════════════════════════════════════════════════
# Scoring parameters
# ═══════════════════════════════════════════════════════════════════════════════

FIELD_BOOSTS: Dict[str, float] = {
    "title": 3.0,
    "category": 1.5,
    "subcategory": 1.0,
    "content": 1.0,
    "keywords": 1.0,
}

PREFIX_WEIGHT = 0.375
FUZZY_WEIGHT = 0.45
FUZZY_TOLERANCE = 0.2
FUZZY_MIN_RATIO = 80
FUZZY_MIN_LENGTH = 4

BM25_K1 = 1.2
BM25_B = 0.7
BM25_DELTA = 0.5

_EXPANSION_CACHE_SIZE = 4096

_TOKEN_SPLIT = re.compile(r"[\W_]+", re.UNICODE)


def tokenize(text: str) -> List[str]:
    return [t for t in _TOKEN_SPLIT.split((text or "").lower()) if t]


@dataclass(frozen=True)
class ScoredDocument:
    document: Document
    score: float


class SearchIndex:
    """Field-weighted inverted index over a fixed document list."""

    def __init__(self, documents: Sequence[Document], boosts: Optional[Dict[str, float]] = None):
        self._docs: List[Document] = list(documents)
        self._boosts = dict(boosts or FIELD_BOOSTS)
        # term -> field -> {doc position: term frequency}
        self._postings: Dict[str, Dict[str, Dict[int, int]]] = {}
        self._field_lengths: Dict[str, List[int]] = {f: [] for f in self._boosts}
        self._avg_lengths: Dict[str, float] = {}
        self._expansions: Dict[str, Dict[str, float]] = {}
        self._build()

    def __len__(self) -> int:
        return len(self._docs)

    @property
    def documents(self) -> List[Document]:
        return list(self._docs)

    @staticmethod
    def _field_text(doc: Document, field: str) -> str:
        if field == "keywords":
            return " ".join(doc.keywords)
        return getattr(doc, field) or ""

    def _build(self) -> None:
        for position, doc in enumerate(self._docs):
            for field in self._boosts:
                tokens = tokenize(self._field_text(doc, field))
                self._field_lengths[field].append(len(tokens))
                counts: Dict[str, int] = defaultdict(int)
                for token in tokens:
                    counts[token] += 1
                for token, tf in counts.items():
                    self._postings.setdefault(token, {}).setdefault(field, {})[position] = tf

        for field, lengths in self._field_lengths.items():
            self._avg_lengths[field] = (sum(lengths) / len(lengths)) if lengths else 0.0

        self._vocabulary = sorted(self._postings)
        self._terms_by_length: Dict[int, List[str]] = defaultdict(list)
        for term in self._vocabulary:
            self._terms_by_length[len(term)].append(term)

    # ───────────────────────────────────────────────────────────────────────────
    # Term expansion (exact, prefix, fuzzy)
    # ───────────────────────────────────────────────────────────────────────────

    def _expand_term(self, term: str) -> Dict[str, float]:
        cached = self._expansions.get(term)
        if cached is not None:
            return cached

        matches: Dict[str, float] = {}
        if term in self._postings:
            matches[term] = 1.0

        start = bisect.bisect_left(self._vocabulary, term)
        for candidate in self._vocabulary[start:]:
            if not candidate.startswith(term):
                break
            if candidate == term:
                continue
            distance = len(candidate) - len(term)
            weight = PREFIX_WEIGHT * len(term) / (len(term) + 0.3 * distance)
            matches[candidate] = max(matches.get(candidate, 0.0), weight)

        if len(term) >= FUZZY_MIN_LENGTH:
            max_edits = max(1, round(FUZZY_TOLERANCE * len(term)))
            for length in range(len(term) - max_edits, len(term) + max_edits + 1):
                for candidate in self._terms_by_length.get(length, ()):
                    if candidate == term:
                        continue
                    ratio = fuzz.ratio(term, candidate)
                    if ratio >= FUZZY_MIN_RATIO:
                        weight = FUZZY_WEIGHT * ratio / 100.0
                        matches[candidate] = max(matches.get(candidate, 0.0), weight)

        if len(self._expansions) >= _EXPANSION_CACHE_SIZE:
            self._expansions.clear()
        self._expansions[term] = matches
        return matches

    # ───────────────────────────────────────────────────────────────────────────
    # Search
    # ───────────────────────────────────────────────────────────────────────────

    def search_scored(self, query: str, limit: int = 6) -> List[ScoredDocument]:
        if limit <= 0 or not self._docs:
            return []

        total = len(self._docs)
        scores: Dict[int, float] = defaultdict(float)

        for term in dict.fromkeys(tokenize(query)):
            for index_term, match_weight in self._expand_term(term).items():
                for field, postings in self._postings[index_term].items():
                    boost = self._boosts[field]
                    df = len(postings)
                    idf = math.log(1 + (total - df + 0.5) / (df + 0.5))
                    avg = self._avg_lengths[field] or 1.0
                    lengths = self._field_lengths[field]
                    for position, tf in postings.items():
                        norm = tf * (BM25_K1 + 1) / (
                            tf + BM25_K1 * (1 - BM25_B + BM25_B * lengths[position] / avg)
                        )
                        scores[position] += match_weight * boost * idf * (norm + BM25_DELTA)

        ranked = sorted(scores.items(), key=lambda item: (-item[1], item[0]))[:limit]
        return [ScoredDocument(self._docs[position], score) for position, score in ranked]

    def search(self, query: str, limit: int = 6) -> List[Document]:
        return [hit.document for hit in self.search_scored(query, limit)]


# ═══════════════════════════════════════════════════════════════════════════════
# Knowledge base (initialize-once)
# ═══════════════════════════════════════════════════════════════════════════════

class KnowledgeBase:
    """
    Process-wide corpus and index, built at most once.

    Usage:
        kb = KnowledgeBase(CorpusStore())
        await kb.initialize()
        hits = kb.search("cant breathe", limit=6)
    """

    def __init__(self, corpus: Optional[CorpusStore] = None):
        self.corpus = corpus or CorpusStore()
        self._index: Optional[SearchIndex] = None
        self._init_task: Optional[asyncio.Future] = None

    @property
    def is_loaded(self) -> bool:
        return self._index is not None

    @property
    def index(self) -> SearchIndex:
        if self._index is None:
            raise KnowledgeBaseNotLoadedError(
                "Knowledge base not loaded. Call initialize() before searching."
            )
        return self._index

    @property
    def documents(self) -> List[Document]:
        return self.index.documents

    async def initialize(self) -> None:
        """Build the index once; concurrent callers await the same build."""
        if self._index is not None:
            return
        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._build())
        task = self._init_task
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            raise
        except Exception:
            if self._init_task is task:
                self._init_task = None
            raise

    async def _build(self) -> None:
        start = time.time()
        docs = await self.corpus.load()
        index = await asyncio.to_thread(SearchIndex, docs)
        self._index = index
        logger.info(
            f"Knowledge base initialized with {len(index)} documents",
            extra={"document_count": len(index), "duration_ms": round((time.time() - start) * 1000, 2)}
        )

    def search(self, query: str, limit: int = 6) -> List[Document]:
        """Synonym-expanded search over the index."""
        return self.index.search(expand_query(query), limit)

    def get(self, doc_id: str) -> Optional[Document]:
        return next((d for d in self.index.documents if d.id == doc_id), None)

    def find(self, predicate: Callable[[Document], bool]) -> Optional[Document]:
        return next((d for d in self.index.documents if predicate(d)), None)
