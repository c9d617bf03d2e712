import asyncio

import pytest

from classes.errors import (
    ConcurrencyLimitError,
    OperationCancelledError,
    OperationConflictError,
    OperationTimeoutError,
)
from classes.operation_state_manager import OperationStateManager
from classes.operation_store import InMemoryOperationStore, OperationStatus


@pytest.fixture
def manager(fake_clock):
    # no running loop in sync tests: timers fall back to sweep()
    return OperationStateManager(max_concurrent=3, timeout_seconds=30.0, clock=fake_clock)


# =============================================================================
# START & CONCURRENCY
# =============================================================================


def test_start_creates_pending_operation(manager):
    op_id = manager.start("user-1", "email_sequence", {"source": "test"})

    op = manager.get_operation(op_id)
    assert op.status is OperationStatus.PENDING
    assert op.user_id == "user-1"
    assert op.operation_type == "email_sequence"
    assert op.metadata == {"source": "test"}
    assert op_id.startswith("email_sequence_user-1_")


def test_fourth_start_for_same_user_raises(manager):
    for _ in range(3):
        manager.start("user-1", "email_sequence")

    with pytest.raises(ConcurrencyLimitError) as exc_info:
        manager.start("user-1", "video_scripts")

    assert exc_info.value.limit == 3
    assert "Limit: 3" in str(exc_info.value)
    # other users are unaffected
    manager.start("user-2", "email_sequence")


def test_terminal_operations_free_their_slot(manager):
    ids = [manager.start("user-1", "t") for _ in range(3)]
    manager.complete(ids[0], {"ok": True})
    manager.start("user-1", "t")


def test_ids_are_unique(manager):
    ids = {manager.start(f"user-{i % 50}", "t") for i in range(100)}
    assert len(ids) == 100


# =============================================================================
# TRANSITIONS
# =============================================================================


def test_is_terminal_flags():
    assert not OperationStatus.PENDING.is_terminal
    assert not OperationStatus.IN_PROGRESS.is_terminal
    assert all(s.is_terminal for s in (OperationStatus.COMPLETED, OperationStatus.FAILED, OperationStatus.CANCELLED))


def test_mark_in_progress_only_from_pending(manager):
    op_id = manager.start("u", "t")
    assert manager.mark_in_progress(op_id, step="calling model")
    assert manager.get_operation(op_id).metadata["step"] == "calling model"
    assert not manager.mark_in_progress(op_id)
    assert not manager.mark_in_progress("missing")


def test_complete_stores_result(manager):
    op_id = manager.start("u", "t")
    manager.mark_in_progress(op_id)
    assert manager.complete(op_id, {"emails": 5})

    op = manager.get_operation(op_id)
    assert op.status is OperationStatus.COMPLETED
    assert op.metadata["result"] == {"emails": 5}
    assert op.completed_time is not None


def test_fail_records_error(manager):
    op_id = manager.start("u", "t")
    assert manager.fail(op_id, ValueError("bad prompt"))

    op = manager.get_operation(op_id)
    assert op.status is OperationStatus.FAILED
    assert op.error == "bad prompt"
    assert op.error_type == "ValueError"


def test_cancel_from_pending_is_legal(manager):
    op_id = manager.start("u", "t")
    assert manager.cancel(op_id)
    assert manager.get_operation(op_id).status is OperationStatus.CANCELLED


@pytest.mark.parametrize("first", ["complete", "fail", "cancel"])
def test_terminal_states_are_final(manager, first):
    op_id = manager.start("u", "t")
    manager.mark_in_progress(op_id)
    getattr(manager, first)(*([op_id, "x"] if first != "cancel" else [op_id]))
    status = manager.get_operation(op_id).status

    assert not manager.complete(op_id)
    assert not manager.fail(op_id, "again")
    assert not manager.cancel(op_id)
    assert not manager.mark_in_progress(op_id)
    assert manager.get_operation(op_id).status is status


def test_has_conflict_only_for_open_same_type(manager):
    op_id = manager.start("u", "email_sequence")
    assert manager.has_conflict("u", "email_sequence")
    assert not manager.has_conflict("u", "video_scripts")
    assert not manager.has_conflict("other", "email_sequence")
    manager.complete(op_id)
    assert not manager.has_conflict("u", "email_sequence")


def test_user_operations_most_recent_first(manager):
    ids = [manager.start("u", f"t{i}") for i in range(3)]
    assert [op.id for op in manager.get_user_operations("u")] == list(reversed(ids))
    assert manager.get_user_operations("nobody") == []


# =============================================================================
# TIMEOUT, RETENTION, SWEEP
# =============================================================================


def test_sweep_fails_overdue_operation(manager, fake_clock):
    op_id = manager.start("u", "t")
    fake_clock.advance(29.0)
    manager.sweep()
    assert manager.get_operation(op_id).status is OperationStatus.PENDING

    fake_clock.advance(2.0)
    manager.sweep()

    op = manager.get_operation(op_id)
    assert op.status is OperationStatus.FAILED
    assert op.error_type == "OperationTimeoutError"
    assert "timed out" in op.error


def test_start_expires_stuck_operations_before_counting(manager, fake_clock):
    for _ in range(3):
        manager.start("u", "t")
    fake_clock.advance(31.0)
    manager.start("u", "t")


def test_sweep_removes_after_retention(fake_clock):
    manager = OperationStateManager(
        timeout_seconds=30.0,
        retention_seconds={"completed": 300, "failed": 600, "cancelled": 60},
        clock=fake_clock,
    )
    done = manager.start("u", "a")
    manager.complete(done)
    cancelled = manager.start("u", "b")
    manager.cancel(cancelled)

    fake_clock.advance(61)
    assert manager.sweep() == 1
    assert manager.get_operation(cancelled) is None
    assert manager.get_operation(done) is not None

    fake_clock.advance(240)
    assert manager.sweep() == 1
    assert manager.get_operation(done) is None


def test_cleanup_user_operations_and_stats(manager):
    a = manager.start("u", "a")
    b = manager.start("u", "b")
    manager.mark_in_progress(b)
    c = manager.start("u", "c")
    manager.complete(c)
    manager.start("other", "a")

    assert manager.cleanup_user_operations("u") == 2
    assert manager.get_operation(a).status is OperationStatus.CANCELLED

    stats = manager.get_stats()
    assert stats["total_operations"] == 4
    assert stats["processing_operations"] == 0
    assert stats["user_count"] == 2
    assert stats["status_counts"]["cancelled"] == 2
    assert stats["status_counts"]["pending"] == 1


def test_injected_store_is_used(fake_clock):
    store = InMemoryOperationStore()
    manager = OperationStateManager(store, clock=fake_clock)
    op_id = manager.start("u", "t")
    assert store.get(op_id) is not None
    assert store.user_count() == 1


@pytest.mark.asyncio
async def test_timeout_timer_fails_pending_operation():
    manager = OperationStateManager(timeout_seconds=0.05)
    op_id = manager.start("u", "t")

    await asyncio.sleep(0.15)

    op = manager.get_operation(op_id)
    assert op.status is OperationStatus.FAILED
    assert op.error_type == "OperationTimeoutError"


@pytest.mark.asyncio
async def test_cleanup_timer_removes_terminal_operation():
    manager = OperationStateManager(retention_seconds={"completed": 0.05})
    op_id = manager.start("u", "t")
    manager.complete(op_id)

    await asyncio.sleep(0.15)

    assert manager.get_operation(op_id) is None


# =============================================================================
# TRACKED EXECUTION
# =============================================================================


@pytest.mark.asyncio
async def test_run_tracked_completes():
    manager = OperationStateManager()

    async def work(operation_id):
        assert manager.get_operation(operation_id).status is OperationStatus.IN_PROGRESS
        return "done"

    assert await manager.run_tracked("u", "t", work) == "done"
    [op] = manager.get_user_operations("u")
    assert op.status is OperationStatus.COMPLETED
    assert op.metadata["result"] is None


@pytest.mark.asyncio
async def test_run_tracked_keeps_only_summary_on_record():
    manager = OperationStateManager()
    payload = {"emails": ["x" * 10_000] * 5}

    async def work(operation_id):
        return payload

    result = await manager.run_tracked("u", "t", work, summarize=lambda r: {"emails": len(r["emails"])})

    assert result is payload
    [op] = manager.get_user_operations("u")
    assert op.metadata["result"] == {"emails": 5}


@pytest.mark.asyncio
async def test_run_tracked_fails_and_reraises():
    manager = OperationStateManager()

    async def work(operation_id):
        raise RuntimeError("model exploded")

    with pytest.raises(RuntimeError):
        await manager.run_tracked("u", "t", work)
    [op] = manager.get_user_operations("u")
    assert op.status is OperationStatus.FAILED
    assert op.error == "model exploded"


@pytest.mark.asyncio
async def test_run_tracked_rejects_duplicate_type():
    manager = OperationStateManager()
    release = asyncio.Event()

    async def slow(operation_id):
        await release.wait()
        return 1

    first = asyncio.create_task(manager.run_tracked("u", "email_sequence", slow))
    await asyncio.sleep(0)

    with pytest.raises(OperationConflictError):
        await manager.run_tracked("u", "email_sequence", slow)

    release.set()
    assert await first == 1


@pytest.mark.asyncio
async def test_run_tracked_discards_result_of_cancelled_operation():
    manager = OperationStateManager()
    started = asyncio.Event()
    release = asyncio.Event()

    async def work(operation_id):
        started.set()
        await release.wait()
        return "late"

    task = asyncio.create_task(manager.run_tracked("u", "t", work))
    await started.wait()
    [op] = manager.get_user_operations("u")
    manager.cancel(op.id)
    release.set()

    with pytest.raises(OperationCancelledError):
        await task
    assert manager.get_operation(op.id).metadata.get("result") is None


@pytest.mark.asyncio
async def test_run_tracked_discards_result_after_timeout():
    manager = OperationStateManager(timeout_seconds=0.05)

    async def work(operation_id):
        await asyncio.sleep(0.15)
        return "late"

    with pytest.raises(OperationTimeoutError):
        await manager.run_tracked("u", "t", work)
