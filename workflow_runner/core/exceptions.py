"""Exception hierarchy and error classification for the workflow runner."""

import errno
import traceback
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from enum import Enum

import httpx


class ErrorSeverity(Enum):
    """Error severity levels for categorizing exceptions."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Categories of errors for better classification."""
    VALIDATION = "validation"
    EXECUTION = "execution"
    STORAGE = "storage"
    NETWORK = "network"
    CONFIGURATION = "configuration"
    SECURITY = "security"
    BUSINESS_LOGIC = "business_logic"


class ErrorType(str, Enum):
    """Error taxonomy surfaced on step records and tool results."""
    MISSING_API_KEY = "missing_api_key"
    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    INVALID_INPUT = "invalid_input"
    CONFIGURATION = "configuration"
    UNKNOWN = "unknown"


class WorkflowEngineError(Exception):
    """Base exception for all workflow runner errors."""

    error_type: ErrorType = ErrorType.UNKNOWN

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.EXECUTION,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
        retry_after: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.severity = severity
        self.category = category
        self.details = details or {}
        self.recoverable = recoverable
        self.retry_after = retry_after
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc)
        self.traceback_info = traceback.format_stack()

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging and API responses."""
        return {
            "error_code": self.error_code,
            "error_type": self.error_type.value,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "details": self.details,
            "recoverable": self.recoverable,
            "retry_after": self.retry_after,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "exception_type": self.__class__.__name__
        }

    def add_context(self, **kwargs):
        """Add additional context to the exception."""
        self.context.update(kwargs)
        return self

    def add_details(self, **kwargs):
        """Add additional details to the exception."""
        self.details.update(kwargs)
        return self


class ConfigurationError(WorkflowEngineError):
    """Raised when a workflow definition or application setting is invalid."""

    error_type = ErrorType.CONFIGURATION

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        validation_errors: Optional[List[str]] = None,
        **kwargs
    ):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.CONFIGURATION)
        super().__init__(message, **kwargs)
        self.validation_errors = validation_errors or []
        if config_key:
            self.add_context(config_key=config_key)
        if validation_errors:
            self.add_details(validation_errors=validation_errors)


class PathSyntaxError(ConfigurationError):
    """Raised when a path expression cannot be parsed."""

    def __init__(self, message: str, expression: str, position: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.expression = expression
        self.add_details(expression=expression)
        if position is not None:
            self.add_details(position=position)


class UnresolvedPathError(ConfigurationError):
    """Raised when a path expression does not resolve against its data."""

    def __init__(self, expression: str, segment: Any = None, **kwargs):
        message = f"Path '{expression}' could not be resolved"
        if segment is not None:
            message += f" (missing segment {segment!r})"
        super().__init__(message, **kwargs)
        self.expression = expression
        self.add_details(expression=expression)


class InvalidInputError(WorkflowEngineError):
    """Raised when a step, tool or request receives unusable input."""

    error_type = ErrorType.INVALID_INPUT

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        kwargs.setdefault("category", ErrorCategory.VALIDATION)
        super().__init__(message, **kwargs)
        self.status_code = status_code
        if status_code is not None:
            self.add_details(status_code=status_code)


class GateFailedError(InvalidInputError):
    """Raised when a gate condition is not met. Halts the pipeline."""

    def __init__(self, condition: str, actual: Any = None, **kwargs):
        super().__init__(f"Gate condition not met: {condition}", **kwargs)
        self.condition = condition
        self.actual = actual
        self.add_details(condition=condition, actual=actual)


class MissingAPIKeyError(WorkflowEngineError):
    """Raised when no API key is configured for a model's provider."""

    error_type = ErrorType.MISSING_API_KEY

    def __init__(self, model: str, provider: Optional[str] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.CONFIGURATION)
        super().__init__(f"Missing API key for model: {model}", **kwargs)
        self.model = model
        self.add_context(model=model)
        if provider:
            self.add_context(provider=provider)


class RateLimitError(WorkflowEngineError):
    """Raised when a provider or tool reports a rate limit."""

    error_type = ErrorType.RATE_LIMIT

    def __init__(self, message: str, retry_after: Optional[int] = None, status_code: int = 429, **kwargs):
        kwargs.setdefault("category", ErrorCategory.NETWORK)
        super().__init__(message, recoverable=True, retry_after=retry_after, **kwargs)
        self.status_code = status_code


class NetworkError(WorkflowEngineError):
    """Raised for connection failures and transport timeouts."""

    error_type = ErrorType.NETWORK

    def __init__(self, message: str, code: Optional[str] = None, **kwargs):
        kwargs.setdefault("category", ErrorCategory.NETWORK)
        super().__init__(message, recoverable=True, **kwargs)
        self.code = code
        if code:
            self.add_details(code=code)


class ProviderError(WorkflowEngineError):
    """Raised when an LLM provider answers with an unexpected HTTP status."""

    def __init__(self, message: str, status_code: int, provider: Optional[str] = None, **kwargs):
        kwargs.setdefault("category", ErrorCategory.NETWORK)
        super().__init__(message, recoverable=status_code >= 500, **kwargs)
        self.status_code = status_code
        self.add_details(status_code=status_code)
        if provider:
            self.add_context(provider=provider)


class ToolRegistryError(WorkflowEngineError):
    """Raised when tool registry operations fail."""

    error_type = ErrorType.CONFIGURATION

    def __init__(
        self,
        message: str,
        tool_name: Optional[str] = None,
        operation: Optional[str] = None,
        **kwargs
    ):
        kwargs.setdefault("category", ErrorCategory.CONFIGURATION)
        super().__init__(message, **kwargs)
        if tool_name:
            self.add_context(tool_name=tool_name)
        if operation:
            self.add_context(operation=operation)


class ToolCallError(WorkflowEngineError):
    """Raised when a tool invocation reports failure."""

    def __init__(
        self,
        message: str,
        tool_name: str,
        error_type: ErrorType = ErrorType.UNKNOWN,
        retry_after: Optional[int] = None,
        **kwargs
    ):
        super().__init__(
            message,
            recoverable=error_type in (ErrorType.RATE_LIMIT, ErrorType.NETWORK),
            retry_after=retry_after,
            **kwargs
        )
        self.error_type = error_type
        self.tool_name = tool_name
        self.add_context(tool_name=tool_name)


class InvalidTransitionError(WorkflowEngineError):
    """Raised when a status change is not permitted by the transition table."""

    error_type = ErrorType.INVALID_INPUT

    def __init__(self, entity: str, current: str, target: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.BUSINESS_LOGIC)
        super().__init__(
            f"Invalid {entity} status transition: {current} -> {target}",
            **kwargs
        )
        self.current = current
        self.target = target
        self.add_details(entity=entity, current=current, target=target)


class NotFoundError(WorkflowEngineError):
    """Raised when a requested record does not exist."""

    def __init__(self, resource: str, identifier: str, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.LOW)
        kwargs.setdefault("category", ErrorCategory.VALIDATION)
        super().__init__(f"{resource} not found: {identifier}", **kwargs)
        self.add_context(resource=resource, identifier=identifier)


class StorageError(WorkflowEngineError):
    """Raised when storage operations fail."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        **kwargs
    ):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.STORAGE)
        super().__init__(message, recoverable=True, retry_after=3, **kwargs)
        if operation:
            self.add_context(operation=operation)
        if table:
            self.add_context(table=table)


class EnvironmentScopeError(WorkflowEngineError):
    """Raised when a record from another environment is read or written."""

    def __init__(self, resource: str, identifier: str, env: str, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.SECURITY)
        super().__init__(
            f"{resource} {identifier} is not accessible from environment '{env}'",
            **kwargs
        )
        self.add_context(resource=resource, identifier=identifier, env=env)


_NETWORK_ERRNOS = {errno.ECONNRESET, errno.ETIMEDOUT, errno.ECONNREFUSED, errno.EPIPE}
_NETWORK_CODES = {"ECONNRESET", "ETIMEDOUT", "ENOTFOUND", "ECONNREFUSED"}


def get_status_code(error: BaseException) -> Optional[int]:
    """Return the HTTP status carried by an exception, if any."""
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    status = getattr(error, "status_code", None) or getattr(error, "status", None)
    if isinstance(status, int):
        return status
    response = getattr(error, "response", None)
    status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def is_network_failure(error: BaseException) -> bool:
    """Check whether an exception is a connection, DNS or timeout failure."""
    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError, TimeoutError, ConnectionError)):
        return True
    if isinstance(error, OSError) and error.errno in _NETWORK_ERRNOS:
        return True
    code = getattr(error, "code", None)
    return isinstance(code, str) and code in _NETWORK_CODES


def classify_error(error: BaseException) -> ErrorType:
    """Map any exception onto the error taxonomy.

    Engine errors carry their type; other exceptions are classified by
    HTTP status, transport failure type and finally by message sniffing.
    """
    if isinstance(error, WorkflowEngineError):
        return error.error_type

    declared = getattr(error, "error_type", None) or getattr(error, "type", None)
    if declared:
        try:
            return ErrorType(str(getattr(declared, "value", declared)))
        except ValueError:
            pass

    status = get_status_code(error)
    if status == 401:
        return ErrorType.MISSING_API_KEY
    if status == 429:
        return ErrorType.RATE_LIMIT
    if is_network_failure(error):
        return ErrorType.NETWORK

    message = str(error)
    lowered = message.lower()
    if "api key" in lowered:
        return ErrorType.MISSING_API_KEY
    if "rate limit" in lowered or "429" in message:
        return ErrorType.RATE_LIMIT
    if "network" in lowered or "fetch" in lowered:
        return ErrorType.NETWORK
    if "invalid" in lowered or "required" in lowered:
        return ErrorType.INVALID_INPUT
    return ErrorType.UNKNOWN


def get_retry_after(error: BaseException) -> Optional[int]:
    """Return the retry-after hint in seconds carried by an exception."""
    value = getattr(error, "retry_after", None)
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def create_error_response(error: WorkflowEngineError) -> Dict[str, Any]:
    """Create a standardized error response from a WorkflowEngineError."""
    return {
        "error": error.error_code,
        "message": error.message,
        "details": {
            **error.details,
            "error_type": error.error_type.value,
            "severity": error.severity.value,
            "category": error.category.value,
            "recoverable": error.recoverable,
            "retry_after": error.retry_after,
            "timestamp": error.timestamp.isoformat()
        },
        "context": error.context
    }
