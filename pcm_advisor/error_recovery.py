"""
Error Recovery Coordinator

Keeps protocol retrieval available when the database backend misbehaves.

Features:
- Retry with exponential backoff (base_delay * 2^(attempt-1)) via tenacity
- Per-key circuit breakers, created lazily on first use
- In-memory TTL cache of successfully retrieved protocols
- Fallback cascade for protocol lookup:
    database (with retry) -> cache -> file index -> conservative default
- Search cascade: database chunk search -> file search -> no results

Nothing here fabricates medical content: when every strategy fails the
result carries the fixed conservative message and fallback=True.

Usage:
    recovery = ErrorRecoveryCoordinator(knowledge_base=kb)
    result = await recovery.retrieve_protocol_with_fallback("1210")
    if result.success:
        protocol = result.data
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, Tuple, Type, TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .backend import FileProtocolSource, HttpProtocolBackend
from .circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from .config import get_settings
from .error_handling import (
    CONSERVATIVE_MESSAGE,
    BackendUnavailableError,
    CircuitOpenError,
    ProtocolAdvisorError,
)
from .metadata_store import MetadataStore
from .models import Document, Protocol
from .search_index import KnowledgeBase

logger = logging.getLogger(__name__)

T = TypeVar("T")

DATABASE_BREAKER_KEY = "protocol-database"
SEARCH_BREAKER_KEY = "protocol-search"

# Failures worth another attempt against the protocol backend
RETRYABLE_ERRORS: Tuple[Type[BaseException], ...] = (BackendUnavailableError, asyncio.TimeoutError)


@dataclass
class RecoveryResult(Generic[T]):
    success: bool
    data: Optional[T] = None
    error: Optional[BaseException] = None
    strategy_used: str = "primary"
    attempts: int = 0
    fallbacks_used: List[str] = field(default_factory=list)
    recovery_time_ms: Optional[float] = None
    fallback: bool = False
    message: Optional[str] = None


@dataclass
class CacheEntry:
    key: str
    value: Any
    cached_at: float
    ttl: float

    def expired(self, now: float) -> bool:
        return now - self.cached_at > self.ttl


def _elapsed_ms(start: float) -> float:
    return round((time.monotonic() - start) * 1000, 2)


class ErrorRecoveryCoordinator:
    """
    Retry, circuit breaker, cache and fallback chain around the protocol
    backend. Breakers and cache are shared by all concurrent requests and
    only mutated under their locks.
    """

    def __init__(
        self,
        knowledge_base: Optional[KnowledgeBase] = None,
        backend: Optional[Any] = None,
        file_source: Optional[FileProtocolSource] = None,
        metadata_store: Optional[MetadataStore] = None,
        use_database: Optional[bool] = None,
        breaker_config: Optional[CircuitBreakerConfig] = None,
        cache_ttl: Optional[float] = None,
        retry_attempts: int = 2,
        retry_base_delay: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ):
        settings = get_settings()
        self.use_database = settings.use_database_protocols if use_database is None else use_database
        self.backend = backend if backend is not None else (HttpProtocolBackend() if self.use_database else None)
        self.file_source = file_source or FileProtocolSource(knowledge_base or KnowledgeBase(), metadata_store)
        self.breaker_config = breaker_config or CircuitBreakerConfig.from_settings()
        self.cache_ttl = settings.protocol_cache_ttl if cache_ttl is None else cache_ttl
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay
        self._clock = clock

        self._breakers: Dict[str, CircuitBreaker] = {}
        self._breakers_lock = threading.Lock()
        self._cache: Dict[str, CacheEntry] = {}
        self._cache_lock = threading.Lock()

    # ───────────────────────────────────────────────────────────────────────────
    # Retry
    # ───────────────────────────────────────────────────────────────────────────

    async def retry_with_backoff(
        self,
        operation: Callable[[], Awaitable[T]],
        max_attempts: int = 3,
        base_delay: float = 1.0,
        label: str = "unknown",
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    ) -> RecoveryResult[T]:
        """
        Run operation up to max_attempts times, sleeping base_delay * 2^(n-1)
        seconds after the n-th failure. Errors outside retry_on fail at once.
        The last error is kept on the result. Cancellation is never retried
        and propagates out of a backoff wait.
        """
        start = time.monotonic()
        attempts = 0
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(max_attempts),
                wait=wait_exponential(multiplier=base_delay, exp_base=2),
                retry=retry_if_exception_type(retry_on),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            ):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    logger.debug(f"Attempting {label}, attempt {attempts}/{max_attempts}")
                    data = await operation()
        except Exception as e:
            logger.error(
                f"Operation exhausted retries: {label}",
                extra={"attempts": attempts, "error": str(e), "recovery_time_ms": _elapsed_ms(start)}
            )
            return RecoveryResult(
                success=False, error=e, strategy_used="retry", attempts=attempts,
                recovery_time_ms=_elapsed_ms(start),
            )

        return RecoveryResult(
            success=True, data=data, strategy_used="retry", attempts=attempts,
            recovery_time_ms=_elapsed_ms(start),
        )

    # ───────────────────────────────────────────────────────────────────────────
    # Circuit breaker
    # ───────────────────────────────────────────────────────────────────────────

    def get_circuit_breaker(self, key: str) -> CircuitBreaker:
        with self._breakers_lock:
            breaker = self._breakers.get(key)
            if breaker is None:
                breaker = CircuitBreaker(key, self.breaker_config, clock=self._clock)
                self._breakers[key] = breaker
            return breaker

    async def execute_with_circuit_breaker(
        self,
        key: str,
        operation: Callable[[], Awaitable[T]],
        fallback: Optional[Callable[[], Awaitable[T]]] = None,
    ) -> RecoveryResult[T]:
        start = time.monotonic()
        breaker = self.get_circuit_breaker(key)

        if breaker.is_open():
            logger.warning(
                f"Circuit open for {key}, skipping primary operation",
                extra={"circuit_key": key, **breaker.status()}
            )
            if fallback is not None:
                return await self._run_fallback(key, fallback, start, attempts=0)
            return RecoveryResult(
                success=False,
                error=CircuitOpenError(f"Circuit breaker open: {key}"),
                strategy_used="circuit-breaker-blocked",
                recovery_time_ms=_elapsed_ms(start),
            )

        try:
            data = await self._guarded(operation)
        except asyncio.CancelledError:
            breaker.release_trial()
            raise
        except Exception as e:
            breaker.record_failure()
            logger.warning(
                f"Circuit breaker recorded failure for {key}",
                extra={"circuit_key": key, **breaker.status()}
            )
            if fallback is not None:
                return await self._run_fallback(key, fallback, start, attempts=1)
            return RecoveryResult(
                success=False, error=e, strategy_used="circuit-breaker-failed", attempts=1,
                recovery_time_ms=_elapsed_ms(start),
            )

        breaker.record_success()
        return RecoveryResult(
            success=True, data=data, strategy_used="primary", attempts=1,
            recovery_time_ms=_elapsed_ms(start),
        )

    async def _guarded(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Await operation within the breaker's per-call timeout."""
        return await asyncio.wait_for(operation(), timeout=self.breaker_config.timeout)

    async def _run_fallback(self, key: str, fallback: Callable[[], Awaitable[T]],
                            start: float, attempts: int) -> RecoveryResult[T]:
        try:
            data = await fallback()
        except Exception as e:
            logger.error(f"Fallback also failed for {key}", extra={"circuit_key": key, "error": str(e)})
            return RecoveryResult(
                success=False, error=e, strategy_used="fallback-failed", attempts=attempts,
                fallbacks_used=[key], recovery_time_ms=_elapsed_ms(start), fallback=True,
            )
        return RecoveryResult(
            success=True, data=data, strategy_used="fallback", attempts=attempts,
            fallbacks_used=[key], recovery_time_ms=_elapsed_ms(start), fallback=True,
        )

    # ───────────────────────────────────────────────────────────────────────────
    # Cache
    # ───────────────────────────────────────────────────────────────────────────

    def _cache_put(self, key: str, value: Any) -> None:
        with self._cache_lock:
            self._cache[key] = CacheEntry(key, value, self._clock(), self.cache_ttl)
        logger.debug(f"Protocol cached: {key}")

    def _cache_get(self, key: str) -> Optional[Any]:
        with self._cache_lock:
            entry = self._cache.get(key)
            if entry is None:
                return None
            if entry.expired(self._clock()):
                del self._cache[key]
                logger.debug(f"Cache entry expired: {key}")
                return None
            return entry.value

    # ───────────────────────────────────────────────────────────────────────────
    # Protocol retrieval cascade
    # ───────────────────────────────────────────────────────────────────────────

    async def retrieve_protocol_with_fallback(self, tp_code: str) -> RecoveryResult[Protocol]:
        start = time.monotonic()
        tried: List[str] = []

        if self.use_database and self.backend is not None:
            tried.append("database")
            result = await self._database_lookup(tp_code)
            if result is not None:
                result.recovery_time_ms = _elapsed_ms(start)
                return result

        cached = self._cache_get(tp_code)
        if cached is not None:
            logger.info(f"Using cached protocol: {tp_code}", extra={"strategy": "cache"})
            return RecoveryResult(
                success=True, data=cached, strategy_used="cache", fallbacks_used=list(tried),
                recovery_time_ms=_elapsed_ms(start),
            )
        tried.append("cache")

        try:
            protocol = await self.file_source.get_protocol(tp_code)
        except ProtocolAdvisorError as e:
            logger.error("File fallback failed", extra={"tp_code": tp_code, "error": str(e)})
            protocol = None
        if protocol is not None:
            self._cache_put(tp_code, protocol)
            logger.info(f"Protocol retrieved from file system: {tp_code}", extra={"strategy": "file-fallback"})
            return RecoveryResult(
                success=True, data=protocol, strategy_used="file-fallback", fallbacks_used=list(tried),
                recovery_time_ms=_elapsed_ms(start), fallback=True,
            )
        tried.append("file")

        logger.error(f"All strategies failed for {tp_code}, returning conservative guidance")
        return RecoveryResult(
            success=False,
            error=ProtocolAdvisorError(f"All retrieval strategies failed for {tp_code}"),
            strategy_used="conservative-default",
            fallbacks_used=tried,
            recovery_time_ms=_elapsed_ms(start),
            fallback=True,
            message=CONSERVATIVE_MESSAGE,
        )

    async def _database_lookup(self, tp_code: str) -> Optional[RecoveryResult[Protocol]]:
        breaker = self.get_circuit_breaker(DATABASE_BREAKER_KEY)
        if breaker.is_open():
            logger.warning(f"Circuit open for {DATABASE_BREAKER_KEY}, skipping database lookup")
            return None

        try:
            result = await self.retry_with_backoff(
                lambda: self._guarded(lambda: self.backend.get_protocol_by_code(tp_code)),
                max_attempts=self.retry_attempts,
                base_delay=self.retry_base_delay,
                label=f"database-lookup-{tp_code}",
                retry_on=RETRYABLE_ERRORS,
            )
        except asyncio.CancelledError:
            breaker.release_trial()
            raise
        if not result.success:
            breaker.record_failure()
            logger.warning(f"Database retrieval failed for {tp_code}, trying fallbacks")
            return None

        breaker.record_success()
        if result.data is None:
            return None

        self._cache_put(tp_code, result.data)
        logger.info(f"Protocol retrieved from database: {tp_code}", extra={"strategy": "database"})
        result.strategy_used = "database"
        return result

    # ───────────────────────────────────────────────────────────────────────────
    # Search cascade
    # ───────────────────────────────────────────────────────────────────────────

    async def search_with_fallback(self, query: str, limit: int = 10) -> RecoveryResult[List[Document]]:
        start = time.monotonic()
        tried: List[str] = []

        if self.use_database and self.backend is not None:
            tried.append("database")
            result = await self.execute_with_circuit_breaker(
                SEARCH_BREAKER_KEY, lambda: self.backend.search_protocol_chunks(query, limit)
            )
            if result.success and result.data:
                logger.info(
                    f"Search successful via database: {len(result.data)} results",
                    extra={"strategy": "database-hybrid"}
                )
                return RecoveryResult(
                    success=True, data=result.data, strategy_used="database-hybrid", attempts=1,
                    recovery_time_ms=_elapsed_ms(start),
                )

        try:
            docs = await self.file_source.search(query, limit)
        except ProtocolAdvisorError as e:
            logger.error("File search failed", extra={"error": str(e)})
            docs = []
        if docs:
            logger.info(f"Search successful via file system: {len(docs)} results", extra={"strategy": "file-search"})
            return RecoveryResult(
                success=True, data=docs, strategy_used="file-search", attempts=1,
                fallbacks_used=list(tried), recovery_time_ms=_elapsed_ms(start), fallback=bool(tried),
            )
        tried.append("file")

        logger.warning(f"No results found for query: {query!r}")
        return RecoveryResult(
            success=False, data=[], error=ProtocolAdvisorError("No results found"),
            strategy_used="no-results", attempts=1, fallbacks_used=tried,
            recovery_time_ms=_elapsed_ms(start), fallback=True, message=CONSERVATIVE_MESSAGE,
        )

    # ───────────────────────────────────────────────────────────────────────────
    # Administration
    # ───────────────────────────────────────────────────────────────────────────

    def get_cache_stats(self) -> Dict[str, Any]:
        now = self._clock()
        with self._cache_lock:
            entries = [
                {"tp_code": key, "age": round(now - entry.cached_at, 3), "ttl": entry.ttl}
                for key, entry in self._cache.items()
            ]
        return {"size": len(entries), "entries": entries}

    def clear_cache(self) -> None:
        with self._cache_lock:
            size = len(self._cache)
            self._cache.clear()
        logger.info("Clearing protocol cache", extra={"cached_items": size})

    def get_circuit_breaker_status(self) -> Dict[str, Dict[str, Any]]:
        with self._breakers_lock:
            breakers = list(self._breakers.items())
        return {key: breaker.status() for key, breaker in breakers}

    async def aclose(self) -> None:
        """Close the HTTP backend, if one was opened."""
        if isinstance(self.backend, HttpProtocolBackend):
            await self.backend.close()

    def reset_all_circuit_breakers(self) -> None:
        logger.info("Resetting all circuit breakers")
        with self._breakers_lock:
            breakers = list(self._breakers.values())
        for breaker in breakers:
            breaker.reset()
