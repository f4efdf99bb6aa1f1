"""
Error Handling Module

Exception hierarchy for the advisor core plus sanitization of any message
that leaves it. Backend and internal errors are never surfaced raw: callers
get a stable error code and a scrubbed message.
"""

import logging
import re
import uuid
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    """Standardized error codes for client responses."""
    # Knowledge base
    KB_NOT_LOADED = "KB_001"

    # Resource errors
    PROTOCOL_NOT_FOUND = "RES_001"

    # Validation errors
    INVALID_TOOL_CALL = "VAL_002"
    UNKNOWN_TOOL = "VAL_003"

    # External service errors
    BACKEND_UNAVAILABLE = "EXT_001"
    BACKEND_DISABLED = "EXT_002"
    CIRCUIT_OPEN = "EXT_003"

    # Internal errors
    INTERNAL_ERROR = "INT_001"


# ═══════════════════════════════════════════════════════════════════════════════
# Exceptions
# ═══════════════════════════════════════════════════════════════════════════════

class ProtocolAdvisorError(Exception):
    """Base class for advisor errors"""

    error_code = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, error_code: Optional[ErrorCode] = None):
        super().__init__(message)
        if error_code is not None:
            self.error_code = error_code


class KnowledgeBaseNotLoadedError(ProtocolAdvisorError):
    """Raised when retrieval is used before the knowledge base is initialized"""

    error_code = ErrorCode.KB_NOT_LOADED


class BackendUnavailableError(ProtocolAdvisorError):
    """Transient protocol backend failure that should be retried"""

    error_code = ErrorCode.BACKEND_UNAVAILABLE

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class BackendDisabledError(ProtocolAdvisorError):
    """Raised when the database path is used while it is switched off"""

    error_code = ErrorCode.BACKEND_DISABLED


class CircuitOpenError(ProtocolAdvisorError):
    """Raised in place of a call the circuit breaker blocked"""

    error_code = ErrorCode.CIRCUIT_OPEN


class ToolCallError(ProtocolAdvisorError):
    """Malformed tool-call payload rejected before dispatch"""

    error_code = ErrorCode.INVALID_TOOL_CALL


# ═══════════════════════════════════════════════════════════════════════════════
# Sanitization
# ═══════════════════════════════════════════════════════════════════════════════

# Patterns that indicate sensitive information
SENSITIVE_PATTERNS = [
    # File paths and stack traces
    r'/[a-zA-Z0-9_\-./]+\.(py|json|sql|ts|js)',
    r'File "[^"]+", line \d+',
    r'Traceback \(most recent call last\)',

    # Database details
    r'(postgresql|postgres|sqlite|redis)://[^\s]+',
    r'connection.*refused',
    r'(SELECT|INSERT|UPDATE|DELETE|DROP|CREATE)\s+',
    r'relation "[^"]+" does not exist',

    # API keys and secrets
    r'(api[_-]?key|apikey|secret|token|password|authorization)["\']?\s*[:=]\s*["\']?[a-zA-Z0-9_\-]+',
    r'Bearer [a-zA-Z0-9\-._~+/]+=*',

    # URLs with credentials and internal hosts
    r'https?://[^\s/]+:[^\s/]+@[^\s]+',
    r'localhost:\d+',
    r'127\.0\.0\.1:\d+',

    # Internal class names
    r'[A-Z][a-zA-Z]+(Exception|Error)\b',
]

_compiled_patterns = [re.compile(p, re.IGNORECASE | re.MULTILINE) for p in SENSITIVE_PATTERNS]

GENERIC_ERROR_MESSAGE = "An error occurred while processing your request"

# Returned instead of any protocol or dosing text when nothing safe is available
CONSERVATIVE_MESSAGE = (
    "I can only provide guidance backed by the LA County Prehospital Care Manual. "
    "Please ask using protocol names/numbers or relevant LA County terms."
)


def generate_error_id() -> str:
    """Generate a short ID for correlating a client error with server logs."""
    return str(uuid.uuid4())[:8].upper()


def contains_sensitive_info(message: str) -> bool:
    """Check if message contains sensitive information."""
    if not message:
        return False
    return any(pattern.search(message) for pattern in _compiled_patterns)


def sanitize_error_message(message: Optional[str]) -> str:
    """
    Sanitize an error message by removing sensitive information.

    Returns a generic message when anything sensitive is detected and
    truncates long messages to 200 characters.
    """
    if not message:
        return "An error occurred"

    if contains_sensitive_info(message):
        return GENERIC_ERROR_MESSAGE

    if len(message) > 200:
        message = message[:200] + "..."

    return message


def get_safe_error_response(
    error: Exception,
    error_id: Optional[str] = None
) -> Dict[str, Any]:
    """
    Build a client-safe error body for an exception.

    Advisor errors keep their (sanitized) message and code; anything else
    collapses to the generic internal error.
    """
    error_id = error_id or generate_error_id()

    if isinstance(error, ProtocolAdvisorError):
        message = sanitize_error_message(str(error))
        code = error.error_code
    else:
        message = GENERIC_ERROR_MESSAGE
        code = ErrorCode.INTERNAL_ERROR

    logger.warning(
        f"Error [{error_id}]: {type(error).__name__}",
        extra={"error_id": error_id, "error_type": type(error).__name__, "error_code": code.value}
    )

    return {
        "error": message,
        "code": code.value,
        "request_id": error_id,
    }
