"""
Testes das stores SQLAlchemy sobre SQLite (aiosqlite)
"""
from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from nfe_server.core.exceptions import AuditConflictError, NotFoundError
from nfe_server.database import init_db
from nfe_server.models import AuditEvent, FiscalDocument, FiscalDocumentStatus, QueueStatus
from nfe_server.repositories import SqlStores
from nfe_server.services.audit import AuditAction, AuditChain
from nfe_server.services.constants import Environment, SendMode
from nfe_server.services.contingency import ContingencyQueue
from nfe_server.utils.formatting import utcnow


@pytest.fixture
async def sql_stores(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'nfe_test.db'}")
    await init_db(engine)
    stores = SqlStores(async_sessionmaker(engine, expire_on_commit=False))
    yield stores
    await engine.dispose()


def _document(company_id, document_id="doc-1", number=1):
    return FiscalDocument(
        id=document_id,
        company_id=company_id,
        order_id="PED-1",
        series=1,
        number=number,
        environment="2",
        status=FiscalDocumentStatus.BUILT.value,
    )


async def _enqueue(queue, document_id="doc-1"):
    return await queue.enqueue(
        related_document_id=document_id,
        company_id="empresa-1",
        environment=Environment.HOMOLOGATION,
        send_mode=SendMode.NORMAL,
        signed_xml="<NFe/>",
        reason="Timeout",
    )


async def test_company_and_document(sql_stores, company):
    await sql_stores.companies.add(company)
    stored = await sql_stores.companies.get("empresa-1")
    assert stored.cnpj == company.cnpj
    assert await sql_stores.companies.get("outra") is None

    await sql_stores.documents.add(_document(company.id))
    updated = await sql_stores.documents.update(
        "doc-1", status=FiscalDocumentStatus.SIGNED.value, access_key="4" * 44,
    )

    assert updated.status == FiscalDocumentStatus.SIGNED.value
    assert (await sql_stores.documents.get_by_access_key("4" * 44)).id == "doc-1"


async def test_update_unknown_document(sql_stores):
    with pytest.raises(NotFoundError):
        await sql_stores.documents.update("nao-existe", status="SIGNED")


async def test_claim_is_compare_and_swap(sql_stores):
    queue = ContingencyQueue(sql_stores.queue)
    entry = await _enqueue(queue)

    first = await queue.claim(entry.id)
    second = await queue.claim(entry.id)

    assert first.status == QueueStatus.SENDING.value
    assert second is None


async def test_busy_document_cannot_be_claimed(sql_stores):
    queue = ContingencyQueue(sql_stores.queue)
    first = await _enqueue(queue)
    second = await _enqueue(queue)
    other = await _enqueue(queue, "doc-2")

    await queue.claim(first.id)

    assert await queue.claim(second.id) is None
    assert await queue.claim(other.id) is not None


async def test_transition_from_wrong_status(sql_stores):
    queue = ContingencyQueue(sql_stores.queue)
    entry = await _enqueue(queue)

    assert await queue.mark_sent(entry) is False

    claimed = await queue.claim(entry.id)
    assert await queue.reschedule(claimed, "Servico paralisado", timedelta(minutes=15)) is True

    stored = await sql_stores.queue.get(entry.id)
    assert stored.status == QueueStatus.PENDING.value
    assert stored.attempt_count == 1
    assert stored.next_attempt_at > utcnow() + timedelta(minutes=14)


async def test_due_entries_in_creation_order(sql_stores):
    queue = ContingencyQueue(sql_stores.queue)
    first = await _enqueue(queue, "doc-1")
    second = await _enqueue(queue, "doc-2")
    later = await _enqueue(queue, "doc-3")
    await sql_stores.queue.transition(
        later.id, QueueStatus.PENDING.value, QueueStatus.PENDING.value,
        next_attempt_at=utcnow() + timedelta(hours=1),
    )

    due = await queue.due_entries(10)

    assert [entry.id for entry in due] == [first.id, second.id]
    assert len(await queue.list(QueueStatus.PENDING.value)) == 3


async def test_duplicate_audit_sequence(sql_stores):
    def event(event_id):
        return AuditEvent(
            id=event_id, chain_id="doc-1", sequence=1, action="NFE_EMISSAO_INICIADA",
            entity="NFe", entity_id="doc-1", hash="a" * 64, created_at=utcnow(),
        )

    await sql_stores.audit.append(event("evt-1"))
    with pytest.raises(AuditConflictError):
        await sql_stores.audit.append(event("evt-2"))


async def test_audit_chain_over_sql(sql_stores):
    chain = AuditChain(sql_stores.audit)
    await chain.record("doc-1", AuditAction.EMISSAO_INICIADA, "Emissao iniciada", metadata={"total": "21.00"})
    await chain.record("doc-1", AuditAction.EMISSAO_VALIDADA, "XML validado")
    await chain.record("doc-1", AuditAction.EMISSAO_ASSINADA, "XML assinado")

    result = await chain.verify("doc-1")

    assert result.valid is True
    assert result.length == 3
    assert [event.sequence for event in await chain.events("doc-1")] == [1, 2, 3]


async def test_stale_sending_entry_is_reclaimed(sql_stores):
    queue = ContingencyQueue(sql_stores.queue, timedelta(minutes=20))
    stuck = await _enqueue(queue)
    sibling = await _enqueue(queue)
    await queue.claim(stuck.id)

    assert [entry.id for entry in await queue.due_entries(10)] == [sibling.id]
    assert await queue.claim(sibling.id) is None

    later = utcnow() + timedelta(minutes=21)
    assert [entry.id for entry in await queue.due_entries(10, now=later)] == [stuck.id, sibling.id]

    reclaimed = await queue.claim(stuck.id, now=later)
    assert reclaimed is not None
    assert reclaimed.status == QueueStatus.SENDING.value
    assert await queue.claim(stuck.id, now=later) is None
    # O dono novo da nota tem lease valido: o irmao continua bloqueado
    assert await queue.claim(sibling.id, now=later) is None
