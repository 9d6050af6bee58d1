"""
Testes do worker da fila de contingencia
"""
import asyncio
from datetime import timedelta

import pytest

from nfe_server.core.exceptions import CertificateExpiredError, QueueError, TransportError
from nfe_server.models import FiscalDocumentStatus, QueueStatus
from nfe_server.services.orchestrator import EmissionOutcome
from nfe_server.services.worker import run_worker_loop
from nfe_server.utils.formatting import utcnow


def _timeout():
    return TransportError("Timeout na comunicacao com a SEFAZ (30s)", retryable=True)


@pytest.fixture
async def queued(services, script, order, company):
    """NF-e na fila: SEFAZ de origem e SVC fora do ar no momento da emissao"""
    script.set_authorize("NORMAL", _timeout())
    script.set_authorize("SVC-AN", _timeout())
    result = await services.orchestrator.emit(company.id, order)
    assert result.outcome is EmissionOutcome.CONTINGENCY_QUEUED
    return result.queue_entry


async def _actions(services, document_id):
    return [event.action for event in await services.audit.events(document_id)]


async def test_resend_authorizes(services, stores, script, queued):
    script.set_authorize("NORMAL", "authorized")

    report = await services.worker.process_due()

    assert report.to_dict() == {"processed": 1, "sent": 1, "rescheduled": 0, "failed": 0, "skipped": 0}
    entry = await stores.queue.get(queued.id)
    assert entry.status == QueueStatus.SENT.value
    assert entry.attempt_count == 1

    document = await stores.documents.get(queued.related_document_id)
    assert document.status == FiscalDocumentStatus.AUTHORIZED.value
    assert document.emission_mode == "NORMAL"
    assert script.operations("authorize")[-1][2] == queued.signed_xml

    actions = await _actions(services, document.id)
    assert actions[-2:] == ["NFE_EMISSAO_AUTORIZADA", "NFE_CONTINGENCIA_REENVIO_SUCESSO"]
    assert (await services.audit.verify(document.id)).valid is True


async def test_transport_failure_reschedules(services, stores, queued):
    report = await services.worker.process_due()

    assert report.rescheduled == 1
    entry = await stores.queue.get(queued.id)
    assert entry.status == QueueStatus.PENDING.value
    assert entry.attempt_count == 1
    assert "Timeout" in entry.last_error
    assert entry.next_attempt_at > utcnow() + timedelta(minutes=14)
    assert entry.next_attempt_at <= utcnow() + timedelta(minutes=16)
    assert (await _actions(services, queued.related_document_id))[-1] == "NFE_CONTINGENCIA_REENVIO_FALHA"


async def test_rescheduled_entry_is_not_due(services, queued):
    await services.worker.process_due()

    report = await services.worker.process_due()

    assert report.processed == 0


async def test_unexpected_error_uses_error_backoff(services, stores, script, queued):
    script.set_authorize("NORMAL", RuntimeError("resposta inesperada"))

    report = await services.worker.process_due()

    assert report.rescheduled == 1
    entry = await stores.queue.get(queued.id)
    assert entry.last_error == "RuntimeError: resposta inesperada"
    assert entry.next_attempt_at > utcnow() + timedelta(minutes=29)


async def test_max_attempts_discards_entry(services, stores, notifier, queued):
    services.config.NFE_QUEUE_MAX_ATTEMPTS = 1

    report = await services.worker.process_due()

    assert report.failed == 1
    entry = await stores.queue.get(queued.id)
    assert entry.status == QueueStatus.FAILED.value
    assert entry.attempt_count == 1
    assert "NFE_QUEUE_MAX_ATTEMPTS" in notifier.types
    assert (await _actions(services, queued.related_document_id))[-1] == "NFE_CONTINGENCIA_DESCARTADA"


async def test_certificate_error_fails_without_counting(services, stores, script, notifier, queued):
    def expired(company):
        raise CertificateExpiredError("Certificado expirado em 01/01/2024")

    services.worker.credentials_loader = expired
    sent_before = len(script.operations("authorize"))

    report = await services.worker.process_due()

    assert report.failed == 1
    entry = await stores.queue.get(queued.id)
    assert entry.status == QueueStatus.FAILED.value
    assert entry.attempt_count == 0
    assert notifier.types[-1] == "NFE_CERTIFICATE_ERROR"
    assert len(script.operations("authorize")) == sent_before


async def test_missing_company_fails_entry(services, stores, notifier, queued):
    del stores.companies._rows[queued.company_id]

    report = await services.worker.process_due()

    assert report.failed == 1
    assert (await stores.queue.get(queued.id)).status == QueueStatus.FAILED.value
    assert notifier.types[-1] == "NFE_QUEUE_ERROR"


async def test_claimed_entry_is_skipped(services, queued):
    assert await services.queue.claim(queued.id) is not None

    assert await services.worker.process_entry(queued) == "skipped"


async def test_same_document_is_not_sent_twice(services, stores, queued):
    # Segunda entrada para o mesmo documento enquanto a primeira esta em envio
    second = await services.queue.enqueue(
        related_document_id=queued.related_document_id,
        company_id=queued.company_id,
        environment=queued.environment,
        send_mode=queued.send_mode,
        signed_xml=queued.signed_xml,
    )
    await services.queue.claim(queued.id)

    assert await services.queue.claim(second.id) is None
    assert (await stores.queue.get(second.id)).status == QueueStatus.PENDING.value


async def test_already_authorized_document_is_closed(services, stores, script, queued):
    await stores.documents.update(queued.related_document_id, status=FiscalDocumentStatus.AUTHORIZED.value)
    sent_before = len(script.operations("authorize"))

    report = await services.worker.process_due()

    assert report.sent == 1
    assert (await stores.queue.get(queued.id)).status == QueueStatus.SENT.value
    assert len(script.operations("authorize")) == sent_before


async def test_receipt_pending_marks_entry_sent(services, stores, script, queued):
    script.set_authorize("NORMAL", "received")
    script.poll = ["processing"]

    report = await services.worker.process_due()

    assert report.sent == 1
    assert (await stores.queue.get(queued.id)).status == QueueStatus.SENT.value
    document = await stores.documents.get(queued.related_document_id)
    assert document.status == FiscalDocumentStatus.AWAITING_RECEIPT.value


async def test_rejection_on_resend_is_rescheduled(services, stores, script, queued):
    script.set_authorize("NORMAL", "rejected")

    report = await services.worker.process_due()

    assert report.rescheduled == 1
    entry = await stores.queue.get(queued.id)
    assert entry.status == QueueStatus.PENDING.value
    assert "539" in entry.last_error


async def test_failure_after_claim_reschedules_and_batch_continues(services, stores, script, monkeypatch, queued):
    orphan = await services.queue.enqueue(
        related_document_id="doc-inexistente",
        company_id=queued.company_id,
        environment=queued.environment,
        send_mode=queued.send_mode,
        signed_xml=queued.signed_xml,
    )
    original_get = stores.documents.get

    async def unavailable(document_id):
        if document_id == queued.related_document_id:
            raise RuntimeError("banco indisponivel")
        return await original_get(document_id)

    monkeypatch.setattr(stores.documents, "get", unavailable)

    report = await services.worker.process_due()

    assert report.to_dict() == {"processed": 2, "sent": 0, "rescheduled": 1, "failed": 1, "skipped": 0}
    entry = await stores.queue.get(queued.id)
    assert entry.status == QueueStatus.PENDING.value
    assert entry.attempt_count == 1
    assert entry.last_error == "RuntimeError: banco indisponivel"
    assert entry.next_attempt_at > utcnow() + timedelta(minutes=29)
    assert (await stores.queue.get(orphan.id)).status == QueueStatus.FAILED.value

    monkeypatch.undo()
    stores.queue._rows[queued.id].next_attempt_at = utcnow()
    script.set_authorize("NORMAL", "authorized")

    report = await services.worker.process_due()

    assert report.sent == 1
    assert (await stores.queue.get(queued.id)).status == QueueStatus.SENT.value


async def test_stranded_sending_entry_recovered_after_lease(services, stores, script, notifier, monkeypatch, queued):
    async def unavailable(*args, **kwargs):
        raise QueueError("Falha ao atualizar entrada: banco indisponivel")

    monkeypatch.setattr(stores.queue, "transition", unavailable)

    report = await services.worker.process_due()

    assert report.failed == 1
    assert notifier.types[-1] == "NFE_QUEUE_ERROR"
    assert (await stores.queue.get(queued.id)).status == QueueStatus.SENDING.value

    monkeypatch.undo()
    script.set_authorize("NORMAL", "authorized")

    # Dentro do lease ninguem mexe na entrada
    assert (await services.worker.process_due()).processed == 0

    stores.queue._rows[queued.id].updated_at = utcnow() - timedelta(minutes=21)
    report = await services.worker.process_due()

    assert report.sent == 1
    entry = await stores.queue.get(queued.id)
    assert entry.status == QueueStatus.SENT.value
    assert entry.attempt_count == 1
    document = await stores.documents.get(queued.related_document_id)
    assert document.status == FiscalDocumentStatus.AUTHORIZED.value


async def test_credentials_loader_crash_reschedules(services, stores, queued):
    def broken(company):
        raise OSError("arquivo do certificado inacessivel")

    services.worker.credentials_loader = broken

    report = await services.worker.process_due()

    assert report.rescheduled == 1
    entry = await stores.queue.get(queued.id)
    assert entry.status == QueueStatus.PENDING.value
    assert entry.last_error == "OSError: arquivo do certificado inacessivel"


class CountingWorker:
    def __init__(self, stop_event, fail_first=False):
        self.stop_event = stop_event
        self.fail_first = fail_first
        self.calls = 0

    async def process_due(self):
        self.calls += 1
        if self.fail_first and self.calls == 1:
            raise RuntimeError("banco indisponivel")
        self.stop_event.set()


async def test_worker_loop_stops_on_event():
    stop_event = asyncio.Event()
    worker = CountingWorker(stop_event)

    await asyncio.wait_for(run_worker_loop(worker, interval=0.01, stop_event=stop_event), timeout=2)

    assert worker.calls == 1


async def test_worker_loop_survives_errors():
    stop_event = asyncio.Event()
    worker = CountingWorker(stop_event, fail_first=True)

    await asyncio.wait_for(run_worker_loop(worker, interval=0.01, stop_event=stop_event), timeout=2)

    assert worker.calls == 2
