"""
NF-e Server - NF-e API
Emissao, eventos, fila de contingencia e auditoria
"""
from functools import lru_cache
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import Response
from slowapi import Limiter
from slowapi.util import get_remote_address

from nfe_server.core.exceptions import NotFoundError
from nfe_server.repositories import SqlStores
from nfe_server.schemas import (
    AccessKeyResponse,
    CancelRequest,
    CorrectionRequest,
    EmissionRequest,
    EmissionResponse,
    EventResponse,
    FiscalDocumentResponse,
    InvalidationRequest,
    ManifestationRequest,
    QueueProcessResponse,
    ServiceStatusResponse,
)
from nfe_server.services.constants import SendMode
from nfe_server.services.factory import NFeServices
from nfe_server.utils.access_key import parse_access_key, validate_access_key

limiter = Limiter(key_func=get_remote_address)

router = APIRouter(prefix="/nfe", tags=["NF-e"])


@lru_cache()
def get_services() -> NFeServices:
    """Servicos sobre o banco configurado (sobrescrito nos testes)"""
    return NFeServices(SqlStores())


def _event_response(result) -> EventResponse:
    return EventResponse(
        success=result.success,
        status_code=result.status_code,
        status_message=result.status_message,
        protocol_number=result.protocol_number,
        event_status_code=getattr(result, "event_status_code", None),
        event_status_message=getattr(result, "event_status_message", None),
    )


async def _get_document(services: NFeServices, document_id: str):
    document = await services.stores.documents.get(document_id)
    if document is None:
        raise NotFoundError(f"Documento {document_id} nao encontrado")
    return document


# =====================================================
# EMISSAO
# =====================================================

@router.post("/emissions", response_model=EmissionResponse)
@limiter.limit("60/minute")
async def emit_nfe(
    request: Request,
    payload: EmissionRequest,
    services: NFeServices = Depends(get_services),
):
    """
    Emite uma NF-e.

    Retorna AUTHORIZED ou CONTINGENCY_QUEUED. Lote sem resultado apos as
    consultas responde 202 (use /reconcile depois).
    """
    result = await services.orchestrator.emit(payload.company_id, payload.order, payload.environment)
    return result.to_dict()


@router.get("/documents/{document_id}", response_model=FiscalDocumentResponse)
async def get_document(document_id: str, services: NFeServices = Depends(get_services)):
    return await _get_document(services, document_id)


@router.get("/documents/{document_id}/xml")
async def get_document_xml(document_id: str, services: NFeServices = Depends(get_services)):
    """nfeProc quando autorizada, senao o XML assinado"""
    document = await _get_document(services, document_id)
    xml = document.merged_xml or document.signed_xml
    if not xml:
        raise NotFoundError(f"Documento {document_id} ainda nao possui XML assinado")
    return Response(content=xml, media_type="application/xml")


@router.post("/documents/{document_id}/reconcile", response_model=FiscalDocumentResponse)
@limiter.limit("20/minute")
async def reconcile_document(request: Request, document_id: str, services: NFeServices = Depends(get_services)):
    return await services.events.reconcile(document_id)


# =====================================================
# EVENTOS
# =====================================================

@router.post("/documents/{document_id}/cancel", response_model=EventResponse)
async def cancel_document(
    document_id: str,
    payload: CancelRequest,
    services: NFeServices = Depends(get_services),
):
    result = await services.events.cancel(document_id, payload.justification)
    return _event_response(result)


@router.post("/documents/{document_id}/correction", response_model=EventResponse)
async def correct_document(
    document_id: str,
    payload: CorrectionRequest,
    services: NFeServices = Depends(get_services),
):
    result = await services.events.correct(document_id, payload.correction)
    return _event_response(result)


@router.post("/invalidations", response_model=EventResponse)
async def invalidate_numbers(payload: InvalidationRequest, services: NFeServices = Depends(get_services)):
    result = await services.events.invalidate(
        payload.company_id,
        payload.series,
        payload.number_from,
        payload.number_to,
        payload.justification,
        payload.environment,
    )
    return _event_response(result)


@router.post("/manifestations", response_model=EventResponse)
async def manifest_recipient(payload: ManifestationRequest, services: NFeServices = Depends(get_services)):
    result = await services.events.manifest(
        payload.company_id,
        payload.access_key,
        payload.event_type,
        payload.justification,
        payload.environment,
    )
    return _event_response(result)


@router.get("/service-status", response_model=ServiceStatusResponse)
@limiter.limit("20/minute")
async def service_status(
    request: Request,
    company_id: str = Query(...),
    environment: Optional[str] = Query(None, pattern="^[12]$"),
    send_mode: SendMode = Query(SendMode.NORMAL),
    services: NFeServices = Depends(get_services),
):
    status = await services.events.service_status(company_id, environment, send_mode)
    return ServiceStatusResponse(
        online=status.online,
        status_code=status.status_code,
        status_message=status.status_message,
        average_time_seconds=status.average_time_seconds,
    )


# =====================================================
# FILA DE CONTINGENCIA
# =====================================================

@router.post("/queue/process", response_model=QueueProcessResponse)
async def process_queue(
    limit: Optional[int] = Query(None, ge=1, le=500),
    services: NFeServices = Depends(get_services),
):
    """Processa as entradas vencidas agora (alem do worker periodico)"""
    report = await services.worker.process_due(limit)
    return report.to_dict()


@router.get("/queue", response_model=List[dict])
async def list_queue(
    status: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    services: NFeServices = Depends(get_services),
):
    entries = await services.queue.list(status, limit)
    return [entry.to_dict() for entry in entries]


# =====================================================
# AUDITORIA E UTILITARIOS
# =====================================================

@router.get("/audit/{chain_id}")
async def get_audit_chain(chain_id: str, services: NFeServices = Depends(get_services)):
    """Eventos da cadeia e resultado da verificacao de integridade"""
    events = await services.audit.events(chain_id)
    if not events:
        raise NotFoundError(f"Cadeia de auditoria {chain_id} nao encontrada")
    verification = await services.audit.verify(chain_id)
    return {
        "events": [event.to_dict() for event in events],
        "verification": verification.to_dict(),
    }


@router.get("/access-keys/{access_key}", response_model=AccessKeyResponse)
async def check_access_key(access_key: str):
    validation = validate_access_key(access_key)
    return AccessKeyResponse(
        access_key=access_key,
        valid=validation.valid,
        error=validation.error,
        parts=parse_access_key(access_key).to_dict() if validation.valid else None,
    )
