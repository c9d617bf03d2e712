# classes/errors.py
from typing import Any, Dict, List, Mapping, Optional


class GenerationServiceError(Exception):
    """
    A failure reported by the external generative text service.
    `status` is the HTTP status when the provider exposed one, `headers` may carry
    `retry-after-ms` / `retry-after` hints.
    """

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        headers: Optional[Mapping[str, str]] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status = status
        self.headers: Dict[str, str] = {str(k).lower(): str(v) for k, v in (headers or {}).items()}
        self.code = code

    def __str__(self) -> str:
        if self.status is not None:
            return f"[{self.status}] {self.message}"
        return self.message


class TransportError(GenerationServiceError):
    """Network failure, timeout or 5xx from the service."""


class RateLimitError(GenerationServiceError):
    """429 from the service."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("status", 429)
        super().__init__(message, **kwargs)


class ContentShapeError(Exception):
    """The service answered, but with output we cannot use (empty, malformed, incomplete)."""


class RecoveryError(ContentShapeError):
    """JSON could not be made syntactically valid, even after repair."""

    def __init__(self, message: str, *, text: str = "", offset: Optional[int] = None):
        super().__init__(message)
        self.text = text
        self.offset = offset


class ValidationError(ContentShapeError):
    """Recovered JSON parsed fine but does not match the declared shape."""

    def __init__(self, message: str, *, context: str = "", issues: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.context = context
        self.issues: List[Dict[str, Any]] = list(issues or [])

    @property
    def error_types(self) -> set:
        return {issue.get("type") for issue in self.issues}


class ContaminationWarning(UserWarning):
    """
    Soft finding from the output scan. Never raised by the pipeline, only logged
    and attached to the response metadata.
    """

    def __init__(self, issues: List[str]):
        super().__init__("; ".join(issues) if issues else "no contamination")
        self.issues = list(issues)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "contamination_warning", "issues": list(self.issues)}


class ConcurrencyLimitError(Exception):
    """User already holds the maximum number of non-terminal operations."""

    def __init__(self, message: str, *, user_id: Any = None, limit: Optional[int] = None):
        super().__init__(message)
        self.user_id = user_id
        self.limit = limit


class OperationConflictError(ConcurrencyLimitError):
    """User already has a non-terminal operation of the same type."""


class OperationTimeoutError(TimeoutError):
    def __init__(self, operation_id: str, timeout_seconds: float):
        super().__init__(f"Operation {operation_id} timed out after {timeout_seconds:g}s")
        self.operation_id = operation_id
        self.timeout_seconds = timeout_seconds


class OperationCancelledError(Exception):
    def __init__(self, operation_id: str):
        super().__init__(f"Operation {operation_id} was cancelled")
        self.operation_id = operation_id
