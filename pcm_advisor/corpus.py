"""
Corpus Store

Loads the knowledge-base document set from its JSON export and applies the
scope filter. Data errors (missing file, bad JSON, malformed entries) are
logged and degrade to fewer documents; they never raise.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, List, Optional, Union

from pydantic import ValidationError as SchemaError

from .config import get_settings
from .models import Document

logger = logging.getLogger(__name__)

PCM_CATEGORIES = {"markdown", "pdf"}
PCM_SUBCATEGORY_MARKER = "la county ems"


def is_pcm_document(doc: Document) -> bool:
    """Protocol-manual documents come from the PDF/Markdown ingest tagged 'LA County EMS'."""
    category = (doc.category or "").lower()
    subcategory = (doc.subcategory or "").lower()
    return category in PCM_CATEGORIES and PCM_SUBCATEGORY_MARKER in subcategory


def apply_scope_filter(docs: List[Document], scope: str) -> List[Document]:
    if (scope or "").lower() == "pcm":
        return [d for d in docs if is_pcm_document(d)]
    return list(docs)


class CorpusStore:
    """File-backed document source."""

    def __init__(self, path: Optional[Union[str, Path]] = None, scope: Optional[str] = None):
        settings = get_settings()
        self.path = Path(path) if path else settings.knowledge_base_file
        self.scope = scope if scope is not None else settings.kb_scope

    async def load(self) -> List[Document]:
        raw = await asyncio.to_thread(self._read)
        docs = self._parse(raw)
        scoped = apply_scope_filter(docs, self.scope)
        logger.info(
            f"Corpus loaded: {len(scoped)} of {len(docs)} documents in scope",
            extra={"path": str(self.path), "scope": self.scope, "document_count": len(scoped)}
        )
        return scoped

    def _read(self) -> Any:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            logger.error(f"Knowledge base file not found: {self.path}")
        except (OSError, json.JSONDecodeError) as e:
            logger.error(
                f"Knowledge base file unreadable: {self.path}",
                extra={"path": str(self.path), "reason": str(e)}
            )
        return []

    def _parse(self, raw: Any) -> List[Document]:
        if isinstance(raw, dict):
            raw = raw.get("documents", [])
        if not isinstance(raw, list):
            logger.error("Knowledge base must be a list of documents", extra={"path": str(self.path)})
            return []

        docs: List[Document] = []
        seen_ids = set()
        for i, entry in enumerate(raw):
            try:
                doc = Document.model_validate(entry)
            except SchemaError as e:
                logger.warning(
                    f"Skipping malformed document at index {i}",
                    extra={"index": i, "reason": str(e.errors()[:1])}
                )
                continue
            if doc.id in seen_ids:
                logger.warning(f"Skipping duplicate document id {doc.id}")
                continue
            seen_ids.add(doc.id)
            docs.append(doc)
        return docs
