"""Custom exceptions for Notegraph.

Provides a structured exception hierarchy with error codes, failure
categories and machine-readable error information. Errors raised by the
analysis provider are tagged with their category at the source; untagged
exceptions are classified by inspecting their message.
"""
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Item errors (1xxx)
    ITEM_NOT_FOUND = 1001
    ITEM_VALIDATION_FAILED = 1002
    ITEM_ACCESS_DENIED = 1003
    ITEM_CONTENT_INSUFFICIENT = 1004

    # Connection errors (2xxx)
    CONNECTION_INVALID = 2001
    CONNECTION_SELF_REFERENCE = 2002

    # Storage errors (4xxx)
    STORAGE_READ_FAILED = 4001
    STORAGE_WRITE_FAILED = 4002
    STORAGE_CONNECTION_FAILED = 4004

    # AI service errors (5xxx)
    AI_AUTH_FAILED = 5001
    AI_TIMEOUT = 5002
    AI_QUOTA_EXCEEDED = 5003
    AI_NETWORK_FAILED = 5004
    AI_MODEL_UNAVAILABLE = 5005
    AI_RESPONSE_INVALID = 5006

    # Configuration errors (6xxx)
    CONFIG_INVALID = 6001
    CONFIG_MISSING = 6002

    # Validation errors (7xxx)
    VALIDATION_FAILED = 7001
    INVALID_ITEM_KIND = 7002

    # Unclassified (9xxx)
    UNKNOWN = 9001


class ErrorCategory(str, Enum):
    """Failure categories reported to callers of the processing pipeline."""

    INSUFFICIENT_CONTENT = "insufficient-content"
    NOT_FOUND = "not-found"
    FORBIDDEN = "forbidden"
    AI_AUTH = "ai-auth"
    AI_TIMEOUT = "ai-timeout"
    AI_QUOTA = "ai-quota"
    NETWORK = "network"
    MODEL_UNAVAILABLE = "model-unavailable"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        """Whether a later attempt may succeed without user intervention."""
        return self in _RETRYABLE_CATEGORIES

    @property
    def user_message(self) -> str:
        """Fixed, user-safe description stored on the item."""
        return _USER_MESSAGES[self]


_RETRYABLE_CATEGORIES = frozenset(
    {ErrorCategory.AI_TIMEOUT, ErrorCategory.NETWORK, ErrorCategory.AI_QUOTA}
)

_USER_MESSAGES: Dict[ErrorCategory, str] = {
    ErrorCategory.INSUFFICIENT_CONTENT: "Not enough content to process",
    ErrorCategory.NOT_FOUND: "Item not found",
    ErrorCategory.FORBIDDEN: "Forbidden",
    ErrorCategory.AI_AUTH: "AI service authentication failed",
    ErrorCategory.AI_TIMEOUT: "AI service timed out, please retry",
    ErrorCategory.AI_QUOTA: "AI quota exceeded, please try again later",
    ErrorCategory.NETWORK: "Network error while contacting the AI service",
    ErrorCategory.MODEL_UNAVAILABLE: "AI model is currently unavailable",
    ErrorCategory.UNKNOWN: "Processing failed",
}


class NotegraphError(Exception):
    """Base exception for all Notegraph errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        category: Failure category reported to pipeline callers
        details: Additional context about the error
    """

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return self.category.retryable

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "code": self.code.value,
            "code_name": self.code.name,
            "category": self.category.value,
            "retryable": self.retryable,
            "message": self.message,
            "details": self.details,
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"


class ItemNotFoundError(NotegraphError):
    """Raised when an item cannot be found."""

    category = ErrorCategory.NOT_FOUND

    def __init__(self, item_id: str, message: Optional[str] = None):
        super().__init__(
            message or f"Item with ID '{item_id}' not found",
            code=ErrorCode.ITEM_NOT_FOUND,
            details={"item_id": item_id},
        )
        self.item_id = item_id


class ItemAccessError(NotegraphError):
    """Raised when the caller does not own the item it is acting on."""

    category = ErrorCategory.FORBIDDEN

    def __init__(self, item_id: str, owner_id: str):
        super().__init__(
            f"Item '{item_id}' does not belong to the caller",
            code=ErrorCode.ITEM_ACCESS_DENIED,
            details={"item_id": item_id, "owner_id": owner_id},
        )
        self.item_id = item_id
        self.owner_id = owner_id


class InsufficientContentError(NotegraphError):
    """Raised when an item has too little text to analyze."""

    category = ErrorCategory.INSUFFICIENT_CONTENT

    def __init__(self, item_id: str, length: int, minimum: int):
        super().__init__(
            f"Item '{item_id}' has {length} non-whitespace characters, "
            f"at least {minimum} are required",
            code=ErrorCode.ITEM_CONTENT_INSUFFICIENT,
            details={"item_id": item_id, "length": length, "minimum": minimum},
        )
        self.item_id = item_id


class ValidationError(NotegraphError):
    """Raised for general validation errors."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
    ):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]  # Truncate for safety

        super().__init__(message, code=code, details=details)
        self.field = field
        self.value = value


class InvalidConnectionError(NotegraphError):
    """Raised for invalid connection writes (e.g. an item linked to itself)."""

    def __init__(
        self,
        message: str,
        item_a: Optional[str] = None,
        item_b: Optional[str] = None,
        code: ErrorCode = ErrorCode.CONNECTION_INVALID,
    ):
        details = {}
        if item_a:
            details["item_a"] = item_a
        if item_b:
            details["item_b"] = item_b
        super().__init__(message, code=code, details=details)


class StorageError(NotegraphError):
    """Raised for storage/persistence errors."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORAGE_READ_FAILED,
        original_error: Optional[Exception] = None,
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.original_error = original_error


class ConfigurationError(NotegraphError):
    """Raised for configuration-related errors."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        code: ErrorCode = ErrorCode.CONFIG_INVALID,
    ):
        details = {}
        if config_key:
            details["config_key"] = config_key

        super().__init__(message, code=code, details=details)
        self.config_key = config_key


# =============================================================================
# AI service errors (tagged at the provider boundary)
# =============================================================================


class AIServiceError(NotegraphError):
    """Raised by an analysis provider when an upstream AI call fails.

    Subclasses fix the category; the base class accepts an explicit one
    for responses that fit no specific variant.
    """

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        category: Optional[ErrorCategory] = None,
        code: ErrorCode = ErrorCode.AI_RESPONSE_INVALID,
        original_error: Optional[Exception] = None,
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        if category is not None:
            self.category = category
        self.operation = operation
        self.original_error = original_error


class AIAuthError(AIServiceError):
    category = ErrorCategory.AI_AUTH

    def __init__(self, message: str, **kwargs: Any):
        kwargs.setdefault("code", ErrorCode.AI_AUTH_FAILED)
        super().__init__(message, **kwargs)


class AITimeoutError(AIServiceError):
    category = ErrorCategory.AI_TIMEOUT

    def __init__(self, message: str, **kwargs: Any):
        kwargs.setdefault("code", ErrorCode.AI_TIMEOUT)
        super().__init__(message, **kwargs)


class AIQuotaError(AIServiceError):
    category = ErrorCategory.AI_QUOTA

    def __init__(self, message: str, **kwargs: Any):
        kwargs.setdefault("code", ErrorCode.AI_QUOTA_EXCEEDED)
        super().__init__(message, **kwargs)


class AINetworkError(AIServiceError):
    category = ErrorCategory.NETWORK

    def __init__(self, message: str, **kwargs: Any):
        kwargs.setdefault("code", ErrorCode.AI_NETWORK_FAILED)
        super().__init__(message, **kwargs)


class ModelUnavailableError(AIServiceError):
    category = ErrorCategory.MODEL_UNAVAILABLE

    def __init__(self, message: str, **kwargs: Any):
        kwargs.setdefault("code", ErrorCode.AI_MODEL_UNAVAILABLE)
        super().__init__(message, **kwargs)


# =============================================================================
# Classification
# =============================================================================

# Checked in order; the first category with a matching keyword wins.
_MESSAGE_KEYWORDS: Tuple[Tuple[ErrorCategory, Tuple[str, ...]], ...] = (
    (
        ErrorCategory.AI_QUOTA,
        ("insufficient_quota", "quota", "rate limit", "rate_limit", "429"),
    ),
    (ErrorCategory.AI_TIMEOUT, ("timed out", "timeout", "etimedout")),
    (
        ErrorCategory.AI_AUTH,
        ("api key", "api_key", "unauthorized", "authentication", "401"),
    ),
    (
        ErrorCategory.MODEL_UNAVAILABLE,
        ("model_not_found", "does not exist", "overloaded", "503", "unavailable"),
    ),
    (
        ErrorCategory.NETWORK,
        (
            "network",
            "econnrefused",
            "econnreset",
            "enotfound",
            "fetch failed",
            "connection",
            "unreachable",
        ),
    ),
)


def classify_message(message: str) -> ErrorCategory:
    """Classify a failure message by keyword substrings.

    Used only for exceptions that do not carry a category of their own.
    """
    lowered = (message or "").lower()
    for category, keywords in _MESSAGE_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return category
    return ErrorCategory.UNKNOWN


def classify_exception(error: BaseException) -> ErrorCategory:
    """Return the failure category for an exception."""
    if isinstance(error, NotegraphError):
        if error.category is not ErrorCategory.UNKNOWN:
            return error.category
        return classify_message(error.message)
    if isinstance(error, TimeoutError):
        return ErrorCategory.AI_TIMEOUT
    if isinstance(error, ConnectionError):
        return ErrorCategory.NETWORK
    return classify_message(str(error))
