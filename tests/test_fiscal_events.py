"""
Testes dos eventos posteriores a emissao (cancelamento, CC-e, inutilizacao,
manifestacao e consulta de situacao)
"""
from datetime import timedelta

import pytest

from conftest import CNPJ
from nfe_server.core.exceptions import AuthorityRejection, NotFoundError, ReceiptPendingError, ValidationError
from nfe_server.models import FiscalDocument, FiscalDocumentStatus
from nfe_server.services.constants import EVENTO_CIENCIA_OPERACAO
from nfe_server.services.responses import EventResult, InvalidationResult
from nfe_server.utils.access_key import generate_access_key
from nfe_server.utils.formatting import utcnow

REFUSED = EventResult(128, "Lote de Evento Processado", 501, "Rejeicao: Prazo de cancelamento superior ao previsto")


@pytest.fixture
async def authorized(services, order, company):
    result = await services.orchestrator.emit(company.id, order)
    return result.document


async def _actions(services, chain_id):
    return [event.action for event in await services.audit.events(chain_id)]


async def _production_document(stores, company, authorized_at):
    key = generate_access_key("SC", CNPJ, "55", 1, 7, "1", "87654321")
    return await stores.documents.add(FiscalDocument(
        id="doc-producao",
        company_id=company.id,
        access_key=key,
        series=1,
        number=7,
        environment="1",
        emission_mode="NORMAL",
        status=FiscalDocumentStatus.AUTHORIZED.value,
        protocol_number="142240000000321",
        authorized_at=authorized_at,
    ))


# =====================================================
# CANCELAMENTO
# =====================================================

async def test_cancel_authorized_document(services, stores, script, authorized):
    result = await services.events.cancel(authorized.id, "Pedido cancelado pelo cliente")

    assert result.success is True
    call = script.operations("cancel")[0]
    assert call[2:] == (authorized.access_key, "Pedido cancelado pelo cliente", "142240000000001")

    document = await stores.documents.get(authorized.id)
    assert document.status == FiscalDocumentStatus.CANCELLED.value
    assert document.cancel_protocol_number == "142240000000099"
    assert document.cancelled_at is not None
    assert (await _actions(services, authorized.id))[-1] == "NFE_CANCELAMENTO"


async def test_cancel_requires_authorized_document(services, stores, script, order, company):
    script.set_authorize("NORMAL", "rejected")
    with pytest.raises(AuthorityRejection) as exc:
        await services.orchestrator.emit(company.id, order)

    with pytest.raises(ValidationError):
        await services.events.cancel(exc.value.details["document_id"], "Pedido cancelado pelo cliente")
    assert script.operations("cancel") == []


async def test_cancel_unknown_document(services):
    with pytest.raises(NotFoundError):
        await services.events.cancel("nao-existe", "Pedido cancelado pelo cliente")


async def test_cancel_window_expired_in_production(services, stores, script, company):
    document = await _production_document(stores, company, utcnow() - timedelta(hours=25))

    with pytest.raises(ValidationError) as exc:
        await services.events.cancel(document.id, "Pedido cancelado pelo cliente")

    assert "24h" in exc.value.message
    assert script.operations("cancel") == []


async def test_cancel_inside_window_in_production(services, stores, script, company):
    document = await _production_document(stores, company, utcnow() - timedelta(hours=1))

    await services.events.cancel(document.id, "Pedido cancelado pelo cliente")

    assert script.operations("cancel")[0][1] == "NORMAL"
    assert (await stores.documents.get(document.id)).status == FiscalDocumentStatus.CANCELLED.value


async def test_cancel_refused_by_authority(services, stores, script, authorized):
    script.event = REFUSED

    with pytest.raises(AuthorityRejection) as exc:
        await services.events.cancel(authorized.id, "Pedido cancelado pelo cliente")

    assert exc.value.status_code == 501
    assert (await stores.documents.get(authorized.id)).status == FiscalDocumentStatus.AUTHORIZED.value
    events = await services.audit.events(authorized.id)
    assert events[-1].action == "NFE_CANCELAMENTO"
    assert events[-1].description.startswith("Evento recusado")


# =====================================================
# CARTA DE CORRECAO
# =====================================================

async def test_corrections_increment_sequence(services, stores, script, authorized):
    await services.events.correct(authorized.id, "Correcao do endereco do destinatario")
    await services.events.correct(authorized.id, "Correcao do complemento do endereco")

    assert [call[4] for call in script.operations("correct")] == [1, 2]
    assert (await stores.documents.get(authorized.id)).correction_sequence == 2
    assert (await _actions(services, authorized.id))[-2:] == ["NFE_CARTA_CORRECAO", "NFE_CARTA_CORRECAO"]


async def test_correction_limit(services, stores, script, authorized):
    await stores.documents.update(authorized.id, correction_sequence=20)

    with pytest.raises(ValidationError):
        await services.events.correct(authorized.id, "Correcao do endereco do destinatario")
    assert script.operations("correct") == []


# =====================================================
# INUTILIZACAO
# =====================================================

async def test_invalidate_range(services, script, company):
    result = await services.events.invalidate(company.id, 1, 10, 20, "Falha na sequencia de numeracao")

    assert result.protocol_number == "142240000000777"
    assert script.operations("invalidate_range")[0][2:] == (1, 10, 20, "Falha na sequencia de numeracao")

    chain_id = f"INUT-{CNPJ}-1-10-20"
    assert await _actions(services, chain_id) == ["NFE_INUTILIZACAO"]


async def test_invalidation_refused(services, script, company):
    script.invalidation = InvalidationResult(241, "Rejeicao: Um numero da faixa ja foi utilizado")

    with pytest.raises(AuthorityRejection) as exc:
        await services.events.invalidate(company.id, 1, 10, 20, "Falha na sequencia de numeracao")

    assert exc.value.status_code == 241
    events = await services.audit.events(f"INUT-{CNPJ}-1-10-20")
    assert events[0].description.startswith("Inutilizacao recusada")


# =====================================================
# MANIFESTACAO
# =====================================================

async def test_manifestation_audited_on_access_key(services, script, company):
    key = generate_access_key("PR", "98765432000198", "55", 1, 55, "1", "11111111")

    result = await services.events.manifest(company.id, key, EVENTO_CIENCIA_OPERACAO)

    assert result.success is True
    assert script.operations("recipient_manifestation")[0][2:] == (key, EVENTO_CIENCIA_OPERACAO, None)
    events = await services.audit.events(key)
    assert [event.action for event in events] == ["NFE_MANIFESTACAO"]
    assert events[0].metadata_["event_type"] == EVENTO_CIENCIA_OPERACAO


# =====================================================
# CONSULTA DE SITUACAO
# =====================================================

async def test_reconcile_resolves_pending_receipt(services, stores, script, order, company):
    script.set_authorize("NORMAL", "received")
    script.poll = ["processing"]
    with pytest.raises(ReceiptPendingError) as exc:
        await services.orchestrator.emit(company.id, order)

    script.status = "authorized"
    document = await services.events.reconcile(exc.value.document_id)

    assert document.status == FiscalDocumentStatus.AUTHORIZED.value
    assert document.merged_xml.startswith("<nfeProc")
    actions = await _actions(services, document.id)
    assert actions[-2:] == ["NFE_CONSULTA_SITUACAO", "NFE_EMISSAO_AUTORIZADA"]


async def test_reconcile_detects_cancellation(services, stores, script, authorized):
    script.status = "cancelled"

    document = await services.events.reconcile(authorized.id)

    assert document.status == FiscalDocumentStatus.CANCELLED.value
    assert document.cancel_protocol_number == "142240000000555"


async def test_reconcile_unknown_to_authority(services, stores, script, authorized):
    document = await services.events.reconcile(authorized.id)

    assert document.status == FiscalDocumentStatus.AUTHORIZED.value
    assert script.operations("query_status")[0][2] == authorized.access_key
    assert (await _actions(services, authorized.id))[-1] == "NFE_CONSULTA_SITUACAO"


async def test_service_status(services, script, company):
    status = await services.events.service_status(company.id)

    assert status.online is True
    assert script.operations("health_check")[0][1] == "NORMAL"
