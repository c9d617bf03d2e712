# classes/operation_state_manager.py
"""
Per-user bookkeeping of long-running generation operations.

    pending -> in_progress -> completed | failed | cancelled
    pending -> cancelled

Terminal states are final. Every transition is a synchronous call on the store,
so a check-then-act sequence (has_conflict, then start) is safe on one event loop
as long as nothing is awaited in between.
"""
import asyncio
import itertools
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from classes import settings
from classes.errors import (
    ConcurrencyLimitError,
    OperationCancelledError,
    OperationConflictError,
    OperationTimeoutError,
)
from classes.operation_store import InMemoryOperationStore, Operation, OperationStatus, OperationStore

logger = logging.getLogger("draftguard_backend")

T = TypeVar("T")


class OperationStateManager:
    def __init__(
        self,
        store: OperationStore | None = None,
        *,
        max_concurrent: int = settings.MAX_CONCURRENT_OPERATIONS,
        timeout_seconds: float = settings.OPERATION_TIMEOUT_SECONDS,
        retention_seconds: Dict[str, float] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store if store is not None else InMemoryOperationStore()
        self.max_concurrent = max_concurrent
        self.timeout_seconds = timeout_seconds
        self.retention_seconds = dict(settings.RETENTION_SECONDS)
        self.retention_seconds.update(retention_seconds or {})
        self.clock = clock
        self._sequence = itertools.count(1)
        self._timers: Dict[Tuple[str, str], asyncio.TimerHandle] = {}

    # -----------------------
    # Timers
    # -----------------------

    def _schedule(self, operation_id: str, kind: str, delay: float, callback: Callable[[str], Any]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # no loop to host the timer; sweep() enforces the same deadline lazily
            logger.debug(f"[OPERATION STATE] No running loop, {kind} timer for {operation_id} left to sweep()")
            return
        self._cancel_timer(operation_id, kind)
        self._timers[(operation_id, kind)] = loop.call_later(delay, callback, operation_id)

    def _cancel_timer(self, operation_id: str, kind: str) -> None:
        handle = self._timers.pop((operation_id, kind), None)
        if handle is not None:
            handle.cancel()

    # -----------------------
    # Transitions
    # -----------------------

    def start(self, user_id: Any, operation_type: str, metadata: Optional[Dict[str, Any]] = None) -> str:
        """
        Create a pending operation and schedule its timeout.
        Raises ConcurrencyLimitError when the user already holds max_concurrent
        non-terminal operations.
        """
        self._expire_overdue(self.store.list_by_user(user_id))
        active = [op for op in self.store.list_by_user(user_id) if not op.status.is_terminal]
        if len(active) >= self.max_concurrent:
            raise ConcurrencyLimitError(
                f"Too many concurrent operations. Limit: {self.max_concurrent}",
                user_id=user_id,
                limit=self.max_concurrent,
            )

        operation_id = f"{operation_type}_{user_id}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"
        self.store.set(Operation(
            id=operation_id,
            user_id=user_id,
            operation_type=operation_type,
            metadata=dict(metadata or {}),
            created_at=self.clock(),
            sequence=next(self._sequence),
        ))
        self._schedule(operation_id, "timeout", self.timeout_seconds, self._timeout_operation)

        logger.info(f"[OPERATION STATE] Started operation {operation_id} for user {user_id}")
        return operation_id

    def mark_in_progress(self, operation_id: str, **details: Any) -> bool:
        operation = self.store.get(operation_id)
        if operation is None:
            logger.error(f"[OPERATION STATE] Operation not found: {operation_id}")
            return False
        if operation.status is not OperationStatus.PENDING:
            logger.warning(f"[OPERATION STATE] Operation {operation_id} already in state: {operation.status.value}")
            return False

        operation.status = OperationStatus.IN_PROGRESS
        operation.metadata.update(details)
        self.store.set(operation)
        logger.debug(f"[OPERATION STATE] Operation {operation_id} in progress")
        return True

    def _finish(self, operation_id: str, status: OperationStatus, *, error: Any = None, result: Any = None) -> bool:
        operation = self.store.get(operation_id)
        if operation is None:
            logger.error(f"[OPERATION STATE] Operation not found: {operation_id}")
            return False
        if operation.status.is_terminal:
            logger.warning(
                f"[OPERATION STATE] Cannot move {operation_id} to {status.value}: already {operation.status.value}"
            )
            return False

        operation.status = status
        operation.completed_time = datetime.now(timezone.utc)
        operation.finished_at = self.clock()
        if status is OperationStatus.COMPLETED:
            operation.metadata["result"] = result
        if error is not None:
            operation.error = str(error)
            operation.error_type = type(error).__name__ if isinstance(error, BaseException) else None
        self.store.set(operation)

        self._cancel_timer(operation_id, "timeout")
        self._schedule(operation_id, "cleanup", self.retention_seconds[status.value], self._cleanup_operation)
        return True

    def complete(self, operation_id: str, data: Any = None) -> bool:
        done = self._finish(operation_id, OperationStatus.COMPLETED, result=data)
        if done:
            logger.info(f"[OPERATION STATE] Operation {operation_id} completed successfully")
        return done

    def fail(self, operation_id: str, error: Any) -> bool:
        done = self._finish(operation_id, OperationStatus.FAILED, error=error)
        if done:
            logger.error(f"[OPERATION STATE] Operation {operation_id} failed: {error}")
        return done

    def cancel(self, operation_id: str) -> bool:
        done = self._finish(operation_id, OperationStatus.CANCELLED)
        if done:
            logger.info(f"[OPERATION STATE] Operation {operation_id} cancelled")
        return done

    def _timeout_operation(self, operation_id: str) -> None:
        self._timers.pop((operation_id, "timeout"), None)
        operation = self.store.get(operation_id)
        if operation is not None and not operation.status.is_terminal:
            self.fail(operation_id, OperationTimeoutError(operation_id, self.timeout_seconds))

    def _cleanup_operation(self, operation_id: str) -> None:
        self._cancel_timer(operation_id, "timeout")
        self._cancel_timer(operation_id, "cleanup")
        if self.store.delete(operation_id) is not None:
            logger.debug(f"[OPERATION STATE] Cleaned up operation {operation_id}")

    def _expire_overdue(self, operations: List[Operation]) -> None:
        now = self.clock()
        for op in operations:
            if not op.status.is_terminal and now - op.created_at >= self.timeout_seconds:
                self._timeout_operation(op.id)

    # -----------------------
    # Queries
    # -----------------------

    def get_operation(self, operation_id: str) -> Optional[Operation]:
        return self.store.get(operation_id)

    def get_user_operations(self, user_id: Any) -> List[Operation]:
        """Most recent first. Observability only."""
        return sorted(
            self.store.list_by_user(user_id),
            key=lambda op: (op.start_time, op.sequence),
            reverse=True,
        )

    def has_conflict(self, user_id: Any, operation_type: str) -> bool:
        return any(
            op.operation_type == operation_type and not op.status.is_terminal
            for op in self.store.list_by_user(user_id)
        )

    def get_stats(self) -> Dict[str, Any]:
        operations = self.store.list_all()
        status_counts = {status.value: 0 for status in OperationStatus}
        for op in operations:
            status_counts[op.status.value] += 1
        return {
            "total_operations": len(operations),
            "processing_operations": status_counts[OperationStatus.IN_PROGRESS.value],
            "user_count": len({op.user_id for op in operations}),
            "status_counts": status_counts,
        }

    # -----------------------
    # Maintenance
    # -----------------------

    def cleanup_user_operations(self, user_id: Any) -> int:
        """Cancel every open operation of the user (session end). Returns how many were cancelled."""
        cancelled = sum(
            1 for op in self.store.list_by_user(user_id)
            if not op.status.is_terminal and self.cancel(op.id)
        )
        logger.info(f"[OPERATION STATE] Cancelled {cancelled} open operation(s) for user {user_id}")
        return cancelled

    def sweep(self) -> int:
        """
        Enforce timeouts and retention from stored timestamps.
        Safe to call on every worker cycle. Returns how many operations were removed.
        """
        self._expire_overdue(self.store.list_all())
        now = self.clock()
        removed = 0
        for op in self.store.list_all():
            if op.finished_at is None:
                continue
            if now - op.finished_at >= self.retention_seconds[op.status.value]:
                self._cleanup_operation(op.id)
                removed += 1
        return removed

    # -----------------------
    # Tracked execution
    # -----------------------

    async def run_tracked(
        self,
        user_id: Any,
        operation_type: str,
        work: Callable[[str], Awaitable[T]],
        metadata: Optional[Dict[str, Any]] = None,
        summarize: Optional[Callable[[T], Any]] = None,
    ) -> T:
        """
        Run `work(operation_id)` as a tracked operation. Duplicate same-type requests
        are rejected up front. Cancellation is cooperative: in-flight work is not
        aborted, but its result is discarded if the operation was cancelled or timed
        out meanwhile.

        The result goes back to the caller only; the operation record keeps
        `summarize(result)` (or nothing) so retained records stay small.
        """
        if self.has_conflict(user_id, operation_type):
            raise OperationConflictError(
                f"Another {operation_type} operation is already in progress. Please wait for it to complete.",
                user_id=user_id,
                limit=self.max_concurrent,
            )
        operation_id = self.start(user_id, operation_type, metadata)
        self.mark_in_progress(operation_id)

        try:
            result = await work(operation_id)
        except Exception as e:
            self.fail(operation_id, e)
            raise

        summary = summarize(result) if summarize is not None else None
        if not self.complete(operation_id, summary):
            operation = self.get_operation(operation_id)
            if operation is not None and operation.status is OperationStatus.CANCELLED:
                raise OperationCancelledError(operation_id)
            raise OperationTimeoutError(operation_id, self.timeout_seconds)
        return result
