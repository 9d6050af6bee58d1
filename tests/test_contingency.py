"""
Testes da fila de contingencia offline
"""
import asyncio
from datetime import timedelta

import pytest

from nfe_server.core.exceptions import QueueError
from nfe_server.models import QueueStatus
from nfe_server.repositories.memory import MemoryQueueStore
from nfe_server.services.constants import Environment, SendMode
from nfe_server.services.contingency import ContingencyQueue
from nfe_server.utils.formatting import utcnow


@pytest.fixture
def store():
    return MemoryQueueStore()


@pytest.fixture
def queue(store):
    return ContingencyQueue(store)


async def _enqueue(queue, document_id="doc-1"):
    return await queue.enqueue(
        related_document_id=document_id,
        company_id="empresa-1",
        environment=Environment.HOMOLOGATION,
        send_mode=SendMode.NORMAL,
        signed_xml="<NFe/>",
        reason="Timeout na comunicacao com a SEFAZ",
    )


async def test_enqueue_creates_pending_entry(queue):
    entry = await _enqueue(queue)

    assert entry.status == QueueStatus.PENDING.value
    assert entry.attempt_count == 0
    assert entry.environment == "2"
    assert entry.send_mode == "NORMAL"
    assert entry.next_attempt_at <= utcnow()
    assert [e.id for e in await queue.due_entries(10)] == [entry.id]


async def test_enqueue_persistence_failure(queue, store):
    store.fail_on_add = RuntimeError("disco cheio")

    with pytest.raises(QueueError) as exc:
        await _enqueue(queue)
    assert "disco cheio" in exc.value.message


async def test_claim_and_mark_sent(queue):
    entry = await _enqueue(queue)
    claimed = await queue.claim(entry.id)

    assert claimed.status == QueueStatus.SENDING.value
    assert await queue.mark_sent(claimed) is True

    stored = await queue.store.get(entry.id)
    assert stored.status == QueueStatus.SENT.value
    assert stored.attempt_count == 1
    assert stored.sent_at is not None
    assert await queue.due_entries(10) == []


async def test_claim_only_once(queue):
    entry = await _enqueue(queue)

    results = await asyncio.gather(queue.claim(entry.id), queue.claim(entry.id))

    assert sum(1 for result in results if result is not None) == 1


async def test_reschedule_pushes_next_attempt(queue):
    entry = await _enqueue(queue)
    claimed = await queue.claim(entry.id)

    assert await queue.reschedule(claimed, "Servico paralisado", timedelta(minutes=15)) is True

    stored = await queue.store.get(entry.id)
    assert stored.status == QueueStatus.PENDING.value
    assert stored.attempt_count == 1
    assert stored.last_error == "Servico paralisado"
    assert stored.next_attempt_at > utcnow() + timedelta(minutes=14)
    assert await queue.due_entries(10) == []


async def test_mark_failed_without_counting_attempt(queue):
    entry = await _enqueue(queue)
    claimed = await queue.claim(entry.id)

    await queue.mark_failed(claimed, "Certificado expirado", count_attempt=False)

    stored = await queue.store.get(entry.id)
    assert stored.status == QueueStatus.FAILED.value
    assert stored.attempt_count == 0


async def test_transition_requires_sending_status(queue):
    entry = await _enqueue(queue)
    # Sem claim a entrada continua PENDING: o compare-and-swap recusa
    assert await queue.mark_sent(entry) is False
    assert (await queue.store.get(entry.id)).status == QueueStatus.PENDING.value


async def test_list_by_status(queue):
    first = await _enqueue(queue, "doc-1")
    await _enqueue(queue, "doc-2")
    await queue.claim(first.id)

    assert len(await queue.list()) == 2
    assert [e.id for e in await queue.list(QueueStatus.SENDING.value)] == [first.id]


async def test_stale_sending_entry_is_due_again(store):
    queue = ContingencyQueue(store, timedelta(minutes=20))
    entry = await _enqueue(queue)
    await queue.claim(entry.id)

    assert await queue.due_entries(10) == []

    later = utcnow() + timedelta(minutes=21)
    due = await queue.due_entries(10, now=later)
    assert [e.id for e in due] == [entry.id]

    reclaimed = await queue.claim(entry.id, now=later)
    assert reclaimed.status == QueueStatus.SENDING.value
    assert await queue.claim(entry.id, now=later) is None


async def test_stale_sending_does_not_block_document(store):
    queue = ContingencyQueue(store, timedelta(minutes=20))
    stuck = await _enqueue(queue)
    sibling = await _enqueue(queue)
    await queue.claim(stuck.id)

    assert await queue.claim(sibling.id) is None
    assert await queue.claim(sibling.id, now=utcnow() + timedelta(minutes=21)) is not None


async def test_without_lease_sending_is_never_due(queue):
    entry = await _enqueue(queue)
    await queue.claim(entry.id)

    assert await queue.due_entries(10, now=utcnow() + timedelta(days=1)) == []
