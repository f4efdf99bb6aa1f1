"""
Protocol Retrieval Backends

- HttpProtocolBackend: database-backed protocol API (PostgREST-style REST
  over the protocols / protocol_chunks tables). Transient failures raise
  BackendUnavailableError so the recovery layer can retry them.
- DatabaseRetrievalAdapter: feature-flagged wrapper returning documents in
  knowledge-base shape; disabled or failing calls return empty results so
  callers fall back to the file path.
- FileProtocolSource: Protocol records rebuilt from the metadata side table
  plus knowledge-base text, used as the file fallback. Protocols without a
  metadata row are rebuilt from their knowledge-base document alone.

Configuration (environment variables):
    USE_DATABASE_PROTOCOLS=false
    PROTOCOL_API_URL=https://db.example.org/rest/v1
    PROTOCOL_API_KEY=...
    PROTOCOL_API_TIMEOUT=10
"""

import logging
from datetime import date
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError as SchemaError

from .config import get_settings
from .error_handling import BackendDisabledError, BackendUnavailableError, ProtocolAdvisorError
from .metadata_store import MetadataStore, normalize_protocol_code
from .models import Document, Protocol
from .search_index import KnowledgeBase
from .structured_logging import get_correlation_headers

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


def _parse_date(value: Any) -> Optional[date]:
    if not value:
        return None
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def row_to_protocol(row: Dict[str, Any]) -> Protocol:
    """Map a protocols table row onto the Protocol model."""
    return Protocol(
        tp_code=row["tp_code"],
        name=row.get("tp_name") or row.get("name") or "",
        category=row.get("tp_category") or row.get("category") or "",
        version=str(row.get("version") or "1"),
        effective_date=_parse_date(row.get("effective_date")) or date.today(),
        expiration_date=_parse_date(row.get("expiration_date")),
        is_current=row.get("is_current", True),
        full_text=row.get("full_text") or "",
        keywords=row.get("keywords") or [],
        base_contact_required=bool(row.get("base_contact_required")),
        warnings=row.get("warnings") or [],
        contraindications=row.get("contraindications") or [],
    )


def protocol_to_document(protocol: Protocol) -> Document:
    return Document(
        id=protocol.tp_code,
        title=f"{protocol.tp_code}: {protocol.name}",
        category=protocol.category or "Protocol",
        keywords=protocol.keywords,
        content=protocol.full_text,
    )


def row_to_document(row: Dict[str, Any]) -> Document:
    return Document(
        id=str(row["id"]),
        title=row.get("title") or "",
        category=row.get("category") or "Protocol",
        subcategory=row.get("subcategory"),
        keywords=row.get("keywords") or [],
        content=row.get("content") or "",
    )


# ═══════════════════════════════════════════════════════════════════════════════
# HTTP backend
# ═══════════════════════════════════════════════════════════════════════════════

class HttpProtocolBackend:
    """
    HTTP client for the protocol database API.

    Usage:
        backend = HttpProtocolBackend()
        protocol = await backend.get_protocol_by_code("1210")
        await backend.close()
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.base_url = (base_url if base_url is not None else settings.protocol_api_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.protocol_api_key
        self.timeout = timeout or settings.protocol_api_timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the async HTTP client"""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json", **get_correlation_headers()}
        if self.api_key:
            headers["apikey"] = self.api_key
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        if not self.base_url:
            raise BackendDisabledError("Protocol API URL is not configured")

        client = await self._get_client()
        try:
            response = await client.request(method, path, headers=self._headers(), **kwargs)
        except httpx.TransportError as e:
            logger.warning(f"Protocol API unreachable: {type(e).__name__}", extra={"path": path})
            raise BackendUnavailableError(f"Protocol API unreachable: {type(e).__name__}") from e

        status = response.status_code
        if status in RETRYABLE_STATUS_CODES:
            logger.warning(
                f"Protocol API returned {status}",
                extra={"status_code": status, "path": path}
            )
            raise BackendUnavailableError(f"Protocol API returned {status}", status_code=status)
        if status >= 400:
            logger.error(
                f"Protocol API returned non-retryable error {status}",
                extra={"status_code": status, "path": path}
            )
            raise ProtocolAdvisorError(f"Protocol API returned {status}")
        return response.json()

    async def get_protocol_by_code(self, tp_code: str) -> Optional[Protocol]:
        """Current version of a protocol, or None when no such code exists."""
        rows = await self._request("GET", "/protocols", params={
            "tp_code": f"eq.{tp_code}",
            "is_current": "eq.true",
            "deleted_at": "is.null",
            "select": "*",
        })
        if not rows:
            logger.debug(f"Protocol not found: {tp_code}")
            return None
        try:
            return row_to_protocol(rows[0])
        except (KeyError, ValueError, SchemaError) as e:
            raise ProtocolAdvisorError(f"Malformed protocol record for {tp_code}") from e

    async def search_protocols(self, query: str, limit: int = 10) -> List[Protocol]:
        rows = await self._request("POST", "/rpc/search_protocols_fulltext",
                                   json={"p_query": query, "p_limit": limit})
        return [row_to_protocol(r) for r in rows or []]

    async def search_protocol_chunks(self, query: str, limit: int = 6) -> List[Document]:
        rows = await self._request("GET", "/protocol_chunks", params={
            "content": f"wfts(english).{query}",
            "limit": str(limit),
            "select": "*",
        })
        return [row_to_document(r) for r in rows or []]


# ═══════════════════════════════════════════════════════════════════════════════
# Feature-flagged adapter
# ═══════════════════════════════════════════════════════════════════════════════

class DatabaseRetrievalAdapter:
    """
    Knowledge-base shaped view of the database backend.

    Returns [] / None when disabled or on failure; callers then use the
    file-based path.
    """

    def __init__(self, backend: Optional[HttpProtocolBackend] = None, enabled: Optional[bool] = None):
        self.enabled = get_settings().use_database_protocols if enabled is None else enabled
        self.backend = backend or HttpProtocolBackend()
        if self.enabled:
            logger.info("Database protocol retrieval enabled")
        else:
            logger.info("Database protocol retrieval disabled (using file-based fallback)")

    def is_enabled(self) -> bool:
        return self.enabled

    async def search_protocols(self, query: str, limit: int = 10) -> List[Document]:
        if not self.enabled:
            return []
        try:
            protocols = await self.backend.search_protocols(query, limit)
        except ProtocolAdvisorError as e:
            logger.error("Database search failed, falling back to file-based", extra={"error": str(e)})
            return []
        return [protocol_to_document(p) for p in protocols]

    async def get_protocol_by_code(self, tp_code: str) -> Optional[Document]:
        if not self.enabled:
            return None
        try:
            protocol = await self.backend.get_protocol_by_code(tp_code)
        except ProtocolAdvisorError as e:
            logger.error(f"Failed to get protocol by code {tp_code}", extra={"error": str(e)})
            return None
        return protocol_to_document(protocol) if protocol else None

    async def search_protocol_chunks(self, query: str, limit: int = 6) -> List[Document]:
        if not self.enabled:
            return []
        try:
            return await self.backend.search_protocol_chunks(query, limit)
        except ProtocolAdvisorError as e:
            logger.error("Database chunk search failed", extra={"error": str(e)})
            return []


# ═══════════════════════════════════════════════════════════════════════════════
# File fallback
# ═══════════════════════════════════════════════════════════════════════════════

class FileProtocolSource:
    """Protocols rebuilt from the packaged metadata and knowledge base."""

    def __init__(self, knowledge_base: KnowledgeBase, metadata_store: Optional[MetadataStore] = None):
        self.kb = knowledge_base
        self.metadata = metadata_store or MetadataStore()

    async def get_protocol(self, tp_code: str) -> Optional[Protocol]:
        await self.kb.initialize()
        load = await self.metadata.load()
        entry = self.metadata.find_by_code(tp_code) if load.available else None
        doc = self.kb.get(entry.id) if entry else self.find_document(tp_code)
        if entry is None and doc is None:
            return None

        if entry is None:
            logger.debug(f"No metadata for {tp_code}, rebuilding from knowledge base document {doc.id}")
            return Protocol(
                tp_code=tp_code,
                name=doc.title,
                category="General",
                effective_date=date.today(),
                full_text=doc.content,
                keywords=doc.keywords,
            )

        return Protocol(
            tp_code=tp_code,
            name=entry.title,
            category=entry.category or "General",
            effective_date=date.today(),
            full_text=doc.content if doc else "",
            keywords=doc.keywords if doc else [],
            base_contact_required=entry.base_contact.required,
            warnings=entry.warnings,
            contraindications=entry.contraindications,
        )

    def find_document(self, tp_code: str) -> Optional[Document]:
        """Knowledge-base document for a treatment protocol code (exact code, no pediatric fallback)."""
        code = normalize_protocol_code(tp_code)
        doc_id = f"tp-{code.lower()}"
        title_prefix = f"TP {code} "
        return self.kb.find(lambda d: d.id == doc_id or d.title.upper().startswith(title_prefix))

    async def search(self, query: str, limit: int = 10) -> List[Document]:
        await self.kb.initialize()
        return self.kb.search(query, limit)
