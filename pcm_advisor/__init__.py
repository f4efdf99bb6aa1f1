"""
PCM Protocol Advisor

Retrieval, validation and resilience core for an LA County Prehospital
Care Manual assistant.

Usage:
    from pcm_advisor import KnowledgeBase, RetrievalManager, ValidationPipeline
    kb = KnowledgeBase()
    result = await RetrievalManager(kb).search("cant breathe")

Or mount the HTTP surface:
    from pcm_advisor import create_app
    app = create_app()
"""

from .advisor import AdvisorResponse, ProtocolAdvisor
from .backend import DatabaseRetrievalAdapter, FileProtocolSource, HttpProtocolBackend
from .circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitState
from .config import Settings, get_settings
from .corpus import CorpusStore
from .dosing import DosingRegistry, extract_medication_doses
from .error_handling import (
    CONSERVATIVE_MESSAGE,
    BackendDisabledError,
    BackendUnavailableError,
    ErrorCode,
    KnowledgeBaseNotLoadedError,
    ProtocolAdvisorError,
    ToolCallError,
    sanitize_error_message,
)
from .error_recovery import ErrorRecoveryCoordinator, RecoveryResult
from .guardrails import GuardrailEngine
from .medication_validator import (
    get_authorized_medications,
    is_authorized_medication,
    normalize_to_generic,
    validate_medications,
)
from .metadata_store import MetadataStore
from .models import (
    Document,
    GuardrailCheck,
    Protocol,
    ProtocolMetadata,
    RetrievalResult,
    Severity,
    ValidationResult,
    ValidationStage,
)
from .protocol_validator import get_protocol_name, get_valid_protocols, is_valid_protocol, validate_protocol_citations
from .provider_impressions import ProviderImpressionCatalog, load_catalog
from .query_expander import expand_query
from .retrieval import RetrievalManager
from .routes import AdvisorServices, create_app, router
from .search_index import KnowledgeBase, SearchIndex
from .structured_logging import configure_logging, log_context
from .tools import ProtocolToolHandler, parse_tool_call
from .validation_monitor import ValidationMonitor
from .validation_pipeline import ValidationPipeline

__all__ = [
    # Orchestration
    "ProtocolAdvisor",
    "AdvisorResponse",
    "ProtocolToolHandler",
    "parse_tool_call",
    # Retrieval
    "CorpusStore",
    "KnowledgeBase",
    "SearchIndex",
    "MetadataStore",
    "RetrievalManager",
    "ProviderImpressionCatalog",
    "load_catalog",
    "expand_query",
    "DosingRegistry",
    "extract_medication_doses",
    # Validation
    "ValidationPipeline",
    "GuardrailEngine",
    "ValidationMonitor",
    "validate_medications",
    "is_authorized_medication",
    "normalize_to_generic",
    "get_authorized_medications",
    "validate_protocol_citations",
    "get_valid_protocols",
    "is_valid_protocol",
    "get_protocol_name",
    # Resilience
    "ErrorRecoveryCoordinator",
    "RecoveryResult",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitState",
    "HttpProtocolBackend",
    "DatabaseRetrievalAdapter",
    "FileProtocolSource",
    # Models
    "Document",
    "Protocol",
    "ProtocolMetadata",
    "RetrievalResult",
    "ValidationResult",
    "ValidationStage",
    "Severity",
    "GuardrailCheck",
    # Config, logging, errors
    "Settings",
    "get_settings",
    "configure_logging",
    "log_context",
    "ProtocolAdvisorError",
    "KnowledgeBaseNotLoadedError",
    "BackendUnavailableError",
    "BackendDisabledError",
    "ToolCallError",
    "ErrorCode",
    "CONSERVATIVE_MESSAGE",
    "sanitize_error_message",
    # HTTP
    "AdvisorServices",
    "create_app",
    "router",
]
