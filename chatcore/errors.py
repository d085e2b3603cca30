"""Error taxonomy shared by the gateway, tool executor and workflow engine."""

from enum import StrEnum


class ErrorKind(StrEnum):
    """Internal error kinds, used for logs, retry decisions and UI badges."""

    # Gateway
    AUTH_ERROR = "AuthError"
    RATE_LIMITED = "RateLimited"
    PROVIDER_UNAVAILABLE = "ProviderUnavailable"
    MALFORMED = "Malformed"

    # Tool executor
    INVALID_INPUT = "InvalidInput"
    EXECUTION_ERROR = "ExecutionError"
    TIMEOUT = "Timeout"

    # Workflow engine
    STEP_LIMIT_EXCEEDED = "StepLimitExceeded"
    WORKFLOW_TIMEOUT = "WorkflowTimeout"
    HANDLER_NOT_FOUND = "HandlerNotFound"

    # Store
    CONCURRENT_GENERATION = "ConcurrentGeneration"
    NOT_FOUND = "NotFound"


USER_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.AUTH_ERROR: "The model provider rejected the API key. Check your provider settings.",
    ErrorKind.RATE_LIMITED: "The model provider is busy right now. Please try again in a moment.",
    ErrorKind.PROVIDER_UNAVAILABLE: "The model provider could not be reached. Please try again.",
    ErrorKind.MALFORMED: "The model returned a response we could not understand.",
    ErrorKind.INVALID_INPUT: "A tool was called with invalid input.",
    ErrorKind.EXECUTION_ERROR: "Something went wrong while running this request.",
    ErrorKind.TIMEOUT: "A tool took too long to respond.",
    ErrorKind.STEP_LIMIT_EXCEEDED: "The assistant needed too many steps and was stopped.",
    ErrorKind.WORKFLOW_TIMEOUT: "The request took too long and was stopped.",
    ErrorKind.HANDLER_NOT_FOUND: "This workflow is not configured correctly.",
    ErrorKind.CONCURRENT_GENERATION: "A response is already being generated for this conversation.",
    ErrorKind.NOT_FOUND: "The requested item could not be found.",
}


def user_message_for(kind: ErrorKind) -> str:
    """Short, non-technical summary for an error kind."""
    return USER_MESSAGES.get(kind, USER_MESSAGES[ErrorKind.EXECUTION_ERROR])


class ChatCoreError(Exception):
    """Base class for all typed runtime errors."""

    kind: ErrorKind = ErrorKind.EXECUTION_ERROR

    def __init__(self, message: str, *, attempts: int = 1):
        super().__init__(message)
        self.attempts = attempts

    @property
    def user_message(self) -> str:
        return user_message_for(self.kind)

    def as_dict(self) -> dict[str, object]:
        return {"kind": str(self.kind), "message": self.user_message, "attempts": self.attempts}


class GatewayError(ChatCoreError):
    """Error raised by a provider adapter or the gateway."""

    def __init__(self, message: str, *, provider: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class AuthError(GatewayError):
    kind = ErrorKind.AUTH_ERROR


class RateLimited(GatewayError):
    kind = ErrorKind.RATE_LIMITED

    def __init__(
        self,
        message: str,
        *,
        retry_after_ms: int | None = None,
        provider: str | None = None,
        status_code: int | None = 429,
    ):
        super().__init__(message, provider=provider, status_code=status_code)
        self.retry_after_ms = retry_after_ms


class ProviderUnavailable(GatewayError):
    kind = ErrorKind.PROVIDER_UNAVAILABLE


class Malformed(GatewayError):
    kind = ErrorKind.MALFORMED


class WorkflowError(ChatCoreError):
    """Terminal workflow failure."""


class StepLimitExceeded(WorkflowError):
    kind = ErrorKind.STEP_LIMIT_EXCEEDED


class WorkflowTimeout(WorkflowError):
    kind = ErrorKind.WORKFLOW_TIMEOUT


class HandlerNotFound(WorkflowError):
    kind = ErrorKind.HANDLER_NOT_FOUND


class ConcurrentGenerationError(ChatCoreError):
    """A second generation was started while one is still streaming."""

    kind = ErrorKind.CONCURRENT_GENERATION


class NotFoundError(ChatCoreError, KeyError):
    kind = ErrorKind.NOT_FOUND

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "not found"


class DuplicateToolError(ValueError):
    """A tool with the same name is already registered."""


class DuplicateAgentError(ValueError):
    """An agent with the same id is already registered."""


def error_from_status(
    status_code: int,
    message: str,
    *,
    provider: str | None = None,
    retry_after_ms: int | None = None,
) -> GatewayError:
    """Map an HTTP status code from a provider to a typed gateway error."""
    if status_code in (401, 403):
        return AuthError(message, provider=provider, status_code=status_code)
    if status_code == 429:
        return RateLimited(message, retry_after_ms=retry_after_ms, provider=provider, status_code=status_code)
    if status_code >= 500 or status_code == 408:
        return ProviderUnavailable(message, provider=provider, status_code=status_code)
    return Malformed(message, provider=provider, status_code=status_code)


def parse_retry_after(value: str | None) -> int | None:
    """Parse a ``retry-after`` header value (seconds) into milliseconds."""
    if value is None:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    if seconds < 0:
        return None
    return int(seconds * 1000)
