# classes/operation_store.py

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Set


class OperationStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (OperationStatus.COMPLETED, OperationStatus.FAILED, OperationStatus.CANCELLED)


@dataclass
class Operation:
    id: str
    user_id: Any
    operation_type: str
    status: OperationStatus = OperationStatus.PENDING
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_time: Optional[datetime] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    # monotonic clock readings, used for timeout and retention
    created_at: float = 0.0
    finished_at: Optional[float] = None
    sequence: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "operation_type": self.operation_type,
            "status": self.status.value,
            "start_time": self.start_time.isoformat(),
            "completed_time": self.completed_time.isoformat() if self.completed_time else None,
            "error": self.error,
            "error_type": self.error_type,
            "metadata": self.metadata,
        }


class OperationStore(Protocol):
    """
    Storage seam for operation bookkeeping. A multi-process deployment needs a
    shared backend with atomic compare-and-swap on `set`.
    """

    def get(self, operation_id: str) -> Optional[Operation]: ...

    def set(self, operation: Operation) -> None: ...

    def delete(self, operation_id: str) -> Optional[Operation]: ...

    def list_by_user(self, user_id: Any) -> List[Operation]: ...

    def list_all(self) -> List[Operation]: ...


class InMemoryOperationStore:
    """
    Process-local operation table with a per-user index.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._operations: Dict[str, Operation] = {}
        self._by_user: Dict[Any, Set[str]] = {}

    def get(self, operation_id: str) -> Optional[Operation]:
        with self._lock:
            return self._operations.get(operation_id)

    def set(self, operation: Operation) -> None:
        with self._lock:
            self._operations[operation.id] = operation
            self._by_user.setdefault(operation.user_id, set()).add(operation.id)

    def delete(self, operation_id: str) -> Optional[Operation]:
        with self._lock:
            operation = self._operations.pop(operation_id, None)
            if operation is None:
                return None
            user_ops = self._by_user.get(operation.user_id)
            if user_ops is not None:
                user_ops.discard(operation_id)
                if not user_ops:
                    del self._by_user[operation.user_id]
            return operation

    def list_by_user(self, user_id: Any) -> List[Operation]:
        with self._lock:
            ids = list(self._by_user.get(user_id, ()))
            return [self._operations[i] for i in ids if i in self._operations]

    def list_all(self) -> List[Operation]:
        with self._lock:
            return list(self._operations.values())

    def user_count(self) -> int:
        with self._lock:
            return len(self._by_user)
