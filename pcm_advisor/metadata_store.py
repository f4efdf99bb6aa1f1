"""
Metadata Store

Lazily loaded side table of critical protocol elements (base contact,
positioning, transport, warnings, contraindications) keyed by document id.

Loading never raises: the outcome is a MetadataLoad whose status says
whether metadata is available, so retrieval can degrade explicitly.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Union

from pydantic import ValidationError as SchemaError

from .config import get_settings
from .models import ProtocolMetadata

logger = logging.getLogger(__name__)


class MetadataStatus(str, Enum):
    LOADED = "loaded"
    MISSING = "missing"
    INVALID = "invalid"


@dataclass
class MetadataLoad:
    status: MetadataStatus
    entries: List[ProtocolMetadata] = field(default_factory=list)
    path: Optional[str] = None
    reason: Optional[str] = None

    @property
    def available(self) -> bool:
        return self.status == MetadataStatus.LOADED


def normalize_protocol_code(code: str) -> str:
    """Legacy metadata writes 12xx codes as 10xx."""
    code = code.strip().upper()
    if len(code) == 4 and code.startswith("10") and code.isdigit():
        return "12" + code[2:]
    return code


class MetadataStore:
    """Read-only metadata table loaded once on first use."""

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path else get_settings().metadata_file
        self._load: Optional[MetadataLoad] = None
        self._by_id: Dict[str, ProtocolMetadata] = {}
        self._lock = asyncio.Lock()

    async def load(self) -> MetadataLoad:
        if self._load is not None:
            return self._load
        async with self._lock:
            if self._load is None:
                result = await asyncio.to_thread(self._read)
                self._by_id = {m.id: m for m in result.entries}
                self._load = result
        return self._load

    def _read(self) -> MetadataLoad:
        path = str(self.path)
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except FileNotFoundError:
            logger.warning(f"Protocol metadata file not found: {path}", extra={"path": path})
            return MetadataLoad(MetadataStatus.MISSING, path=path, reason="file not found")
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(
                f"Protocol metadata file unreadable: {path}",
                extra={"path": path, "reason": str(e)}
            )
            return MetadataLoad(MetadataStatus.INVALID, path=path, reason=str(e))

        try:
            entries = [ProtocolMetadata.model_validate(entry) for entry in raw]
        except (SchemaError, TypeError) as e:
            logger.warning(
                f"Protocol metadata file malformed: {path}",
                extra={"path": path, "reason": str(e)}
            )
            return MetadataLoad(MetadataStatus.INVALID, path=path, reason="malformed entries")

        logger.debug(f"Protocol metadata loaded: {len(entries)} entries")
        return MetadataLoad(MetadataStatus.LOADED, entries=entries, path=path)

    def get(self, doc_id: str) -> Optional[ProtocolMetadata]:
        return self._by_id.get(doc_id)

    def find_by_code(self, code: str) -> Optional[ProtocolMetadata]:
        wanted = normalize_protocol_code(code)
        for entry in self._by_id.values():
            codes = entry.protocol_codes or []
            if any(normalize_protocol_code(c) == wanted for c in codes):
                return entry
        return None
