from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from nudge_queue.domain.dto import EnqueueNudgeCommand
from nudge_queue.domain.errors import DomainValidationError, StaleClaimError, StoreUnavailableError
from nudge_queue.domain.models import NudgeStatus, OutcomeKind
from nudge_queue.domain.use_cases.dispatch import claim_nudges, report_failure, report_success
from nudge_queue.domain.use_cases.enqueue import enqueue_nudge
from nudge_queue.repositories.stub import InMemoryNudgeStore
from tests.unit.clock import FakeClock


async def _enqueue(store: InMemoryNudgeStore, member_id: str = "member-1") -> tuple[str, str]:
    result = await enqueue_nudge(
        store,
        EnqueueNudgeCommand(
            hub_id="hub-1",
            member_id=member_id,
            recipe_name="welcome",
            message=f"Hello {member_id}",
        ),
    )
    assert result.queue_id is not None and result.log_id is not None
    return result.queue_id, result.log_id


@pytest.mark.unit
def test_claim_locks_items_oldest_first() -> None:
    clock = FakeClock()
    store = InMemoryNudgeStore(clock=clock)

    async def _run() -> None:
        first, _ = await _enqueue(store, "member-1")
        clock.advance(seconds=1)
        second, _ = await _enqueue(store, "member-2")
        clock.advance(seconds=1)

        claimed = await claim_nudges(store, batch_size=10, worker_id="w-1", lease_seconds=60)

        assert [item.id for item in claimed] == [first, second]
        for item in claimed:
            assert item.locked_by == "w-1"
            assert item.locked_at == clock.now
            assert item.lease_expires_at == clock.now + timedelta(seconds=60)
            assert item.log_id is not None

        again = await claim_nudges(store, batch_size=10, worker_id="w-2", lease_seconds=60)
        assert again == []

    asyncio.run(_run())


@pytest.mark.unit
def test_claim_respects_batch_size_and_zero() -> None:
    store = InMemoryNudgeStore(clock=FakeClock())

    async def _run() -> None:
        for idx in range(3):
            await _enqueue(store, f"member-{idx}")

        assert await claim_nudges(store, batch_size=0, worker_id="w-1", lease_seconds=60) == []
        claimed = await claim_nudges(store, batch_size=2, worker_id="w-1", lease_seconds=60)
        assert len(claimed) == 2

        with pytest.raises(DomainValidationError):
            await claim_nudges(store, batch_size=1, worker_id="", lease_seconds=60)

    asyncio.run(_run())


@pytest.mark.unit
def test_concurrent_claimers_never_share_items() -> None:
    store = InMemoryNudgeStore(clock=FakeClock())

    async def _run() -> None:
        for idx in range(5):
            await _enqueue(store, f"member-{idx}")

        batches = await asyncio.gather(
            *(claim_nudges(store, batch_size=2, worker_id=f"w-{idx}", lease_seconds=60) for idx in range(4))
        )
        claimed_ids = [item.id for batch in batches for item in batch]

        assert len(claimed_ids) == len(set(claimed_ids))
        assert len(claimed_ids) == 5

    asyncio.run(_run())


@pytest.mark.unit
def test_success_removes_item_and_marks_log_sent() -> None:
    clock = FakeClock()
    store = InMemoryNudgeStore(clock=clock)

    async def _run() -> None:
        queue_id, log_id = await _enqueue(store)
        await claim_nudges(store, batch_size=1, worker_id="w-1", lease_seconds=60)
        clock.advance(seconds=3)

        outcome = await report_success(store, queue_id=queue_id, worker_id="w-1")

        assert outcome == OutcomeKind.SENT
        assert await store.get_queue_item(queue_id=queue_id) is None
        log = await store.get_log(log_id=log_id)
        assert log is not None
        assert log.status == NudgeStatus.SENT
        assert log.sent_at == clock.now
        assert log.attempt == 1

    asyncio.run(_run())
    assert store.transitions[-1][1:] == ("queued", "sent")


@pytest.mark.unit
def test_transient_failures_back_off_exponentially_then_fail() -> None:
    clock = FakeClock()
    store = InMemoryNudgeStore(clock=clock)

    async def _fail_once() -> OutcomeKind:
        claimed = await claim_nudges(store, batch_size=1, worker_id="w-1", lease_seconds=60)
        assert len(claimed) == 1
        return await report_failure(
            store,
            queue_id=claimed[0].id,
            worker_id="w-1",
            error="smtp 421",
            max_retries=5,
        )

    async def _run() -> None:
        queue_id, log_id = await _enqueue(store)

        assert await _fail_once() == OutcomeKind.REQUEUED
        item = await store.get_queue_item(queue_id=queue_id)
        assert item is not None
        assert item.attempt == 1
        assert item.available_at == clock.now + timedelta(minutes=1)
        assert item.locked_by is None and item.lease_expires_at is None

        assert await claim_nudges(store, batch_size=1, worker_id="w-1", lease_seconds=60) == []

        clock.advance(minutes=1)
        assert await _fail_once() == OutcomeKind.REQUEUED
        item = await store.get_queue_item(queue_id=queue_id)
        assert item is not None
        assert item.attempt == 2
        assert item.available_at == clock.now + timedelta(minutes=2)

        log = await store.get_log(log_id=log_id)
        assert log is not None
        assert log.status == NudgeStatus.QUEUED
        assert log.attempt == 2
        assert log.error == "smtp 421"
        assert log.error_code == "transport_failed"

        clock.advance(minutes=2)
        assert await _fail_once() == OutcomeKind.REQUEUED
        clock.advance(minutes=4)
        assert await _fail_once() == OutcomeKind.REQUEUED
        clock.advance(minutes=8)
        assert await _fail_once() == OutcomeKind.FAILED

        assert await store.get_queue_item(queue_id=queue_id) is None
        log = await store.get_log(log_id=log_id)
        assert log is not None
        assert log.status == NudgeStatus.FAILED
        assert log.attempt == 5

    asyncio.run(_run())


@pytest.mark.unit
def test_permanent_failure_is_terminal_on_first_attempt() -> None:
    store = InMemoryNudgeStore(clock=FakeClock())

    async def _run() -> None:
        queue_id, log_id = await _enqueue(store)
        await claim_nudges(store, batch_size=1, worker_id="w-1", lease_seconds=60)

        outcome = await report_failure(
            store,
            queue_id=queue_id,
            worker_id="w-1",
            error="member has left the hub",
            error_code="recipient_invalid",
            max_retries=3,
        )

        assert outcome == OutcomeKind.FAILED
        assert await store.get_queue_item(queue_id=queue_id) is None
        log = await store.get_log(log_id=log_id)
        assert log is not None
        assert log.status == NudgeStatus.FAILED
        assert log.attempt == 1
        assert log.error_code == "recipient_invalid"

    asyncio.run(_run())


@pytest.mark.unit
def test_unknown_error_code_is_normalized_to_internal_error() -> None:
    store = InMemoryNudgeStore(clock=FakeClock())

    async def _run() -> None:
        queue_id, log_id = await _enqueue(store)
        await claim_nudges(store, batch_size=1, worker_id="w-1", lease_seconds=60)

        outcome = await report_failure(
            store,
            queue_id=queue_id,
            worker_id="w-1",
            error="boom",
            error_code="provider_exploded",
            max_retries=3,
        )

        assert outcome == OutcomeKind.REQUEUED
        log = await store.get_log(log_id=log_id)
        assert log is not None
        assert log.error_code == "internal_error"

    asyncio.run(_run())


@pytest.mark.unit
def test_stale_owner_cannot_report() -> None:
    clock = FakeClock()
    store = InMemoryNudgeStore(clock=clock)

    async def _run() -> None:
        queue_id, log_id = await _enqueue(store)
        await claim_nudges(store, batch_size=1, worker_id="w-1", lease_seconds=30)
        clock.advance(seconds=31)

        reclaimed = await claim_nudges(store, batch_size=1, worker_id="w-2", lease_seconds=30)
        assert [item.id for item in reclaimed] == [queue_id]

        with pytest.raises(StaleClaimError):
            await report_success(store, queue_id=queue_id, worker_id="w-1")
        with pytest.raises(StaleClaimError):
            await report_failure(store, queue_id=queue_id, worker_id="w-1", error="late", max_retries=3)

        log = await store.get_log(log_id=log_id)
        assert log is not None
        assert log.status == NudgeStatus.QUEUED

        await report_success(store, queue_id=queue_id, worker_id="w-2")

    asyncio.run(_run())


@pytest.mark.unit
def test_reclaim_expired_claims_counts_as_transient_failure() -> None:
    clock = FakeClock()
    store = InMemoryNudgeStore(clock=clock)

    async def _run() -> None:
        queue_id, log_id = await _enqueue(store)
        await claim_nudges(store, batch_size=1, worker_id="w-crashed", lease_seconds=30)

        assert await store.reclaim_expired_claims(max_retries=3) == 0
        clock.advance(seconds=30)
        assert await store.reclaim_expired_claims(max_retries=3) == 1

        item = await store.get_queue_item(queue_id=queue_id)
        assert item is not None
        assert item.attempt == 1
        assert item.locked_by is None
        assert item.available_at == clock.now + timedelta(minutes=1)
        log = await store.get_log(log_id=log_id)
        assert log is not None
        assert log.error_code == "lease_expired"

    asyncio.run(_run())


@pytest.mark.unit
def test_heartbeat_renews_only_owned_leases() -> None:
    clock = FakeClock()
    store = InMemoryNudgeStore(clock=clock)

    async def _run() -> None:
        first, _ = await _enqueue(store, "member-1")
        second, _ = await _enqueue(store, "member-2")
        await claim_nudges(store, batch_size=2, worker_id="w-1", lease_seconds=30)
        clock.advance(seconds=20)

        renewed = await store.heartbeat_claims(queue_ids=[first, second, "nq_missing"], worker_id="w-1", lease_seconds=30)
        assert renewed == {first, second}

        foreign = await store.heartbeat_claims(queue_ids=[first], worker_id="w-2", lease_seconds=30)
        assert foreign == set()

        item = await store.get_queue_item(queue_id=first)
        assert item is not None
        assert item.lease_expires_at == clock.now + timedelta(seconds=30)

    asyncio.run(_run())


@pytest.mark.unit
def test_report_failure_requires_positive_retry_budget() -> None:
    store = InMemoryNudgeStore(clock=FakeClock())

    with pytest.raises(DomainValidationError):
        asyncio.run(report_failure(store, queue_id="nq_x", worker_id="w-1", error="e", max_retries=0))


@pytest.mark.unit
def test_claim_propagates_store_outage() -> None:
    store = InMemoryNudgeStore(clock=FakeClock(), available=False)

    with pytest.raises(StoreUnavailableError):
        asyncio.run(claim_nudges(store, batch_size=5, worker_id="w-1", lease_seconds=60))


@pytest.mark.unit
def test_log_lookup_falls_back_to_heuristic_without_log_id() -> None:
    from dataclasses import replace

    store = InMemoryNudgeStore(clock=FakeClock())

    async def _run() -> None:
        queue_id, log_id = await _enqueue(store)
        store.queue[queue_id] = replace(store.queue[queue_id], log_id=None)

        log = await store.find_log_for_queue_item(queue_id=queue_id)
        assert log is not None
        assert log.id == log_id

        await claim_nudges(store, batch_size=1, worker_id="w-1", lease_seconds=60)
        await report_success(store, queue_id=queue_id, worker_id="w-1")
        sent = await store.get_log(log_id=log_id)
        assert sent is not None
        assert sent.status == NudgeStatus.SENT

    asyncio.run(_run())
