"""
Eventos posteriores a emissao

Cancelamento, carta de correcao, inutilizacao de numeracao,
manifestacao do destinatario, consulta de situacao e status do servico.
Cada operacao bem sucedida ou recusada gera um evento de auditoria.
"""
import asyncio
import logging
from datetime import timedelta
from typing import Callable, Optional

from nfe_server.core.config import Settings, settings as default_settings
from nfe_server.core.exceptions import AuthorityRejection, NotFoundError, ValidationError
from nfe_server.models import Company, FiscalDocument, FiscalDocumentStatus
from nfe_server.repositories.base import CompanyStore, DocumentStore
from nfe_server.services.audit import AuditAction, AuditChain
from nfe_server.services.certificate import CertificateBundle, load_company_credentials
from nfe_server.services.constants import (
    CORRECAO_SEQUENCIA_MAX,
    DESCRICAO_EVENTOS,
    Environment,
    SendMode,
)
from nfe_server.services.orchestrator import AuthorizationFlow
from nfe_server.services.responses import EventResult, InvalidationResult, ServiceStatus
from nfe_server.services.transport import create_transport
from nfe_server.utils.formatting import utcnow

logger = logging.getLogger(__name__)

Status = FiscalDocumentStatus


class FiscalEventService:
    def __init__(
        self,
        companies: CompanyStore,
        documents: DocumentStore,
        audit: AuditChain,
        transport_factory: Callable = create_transport,
        credentials_loader: Callable[[Company], CertificateBundle] = load_company_credentials,
        config: Optional[Settings] = None,
    ):
        self.companies = companies
        self.documents = documents
        self.audit = audit
        self.transport_factory = transport_factory
        self.credentials_loader = credentials_loader
        self.config = config or default_settings
        self.flow = AuthorizationFlow(documents, audit, self.config)

    # -------------------------------------------------
    # Auxiliares
    # -------------------------------------------------

    async def _company(self, company_id: str) -> Company:
        company = await self.companies.get(company_id)
        if company is None:
            raise NotFoundError(f"Empresa {company_id} nao encontrada")
        return company

    async def _document(self, document_id: str) -> FiscalDocument:
        document = await self.documents.get(document_id)
        if document is None:
            raise NotFoundError(f"Documento {document_id} nao encontrado")
        return document

    def _environment(self, company: Company, environment=None) -> Environment:
        return Environment(environment or company.environment or self.config.NFE_DEFAULT_ENVIRONMENT)

    async def _call(self, company: Company, environment: Environment, operation: str, *args,
                    send_mode: SendMode = SendMode.NORMAL):
        """Executa uma operacao do TransportClient fora do event loop"""
        credentials = await asyncio.to_thread(self.credentials_loader, company)
        client = self.transport_factory(company, credentials, environment, send_mode)
        try:
            return await asyncio.to_thread(getattr(client, operation), *args)
        finally:
            close = getattr(client, "close", None)
            if close is not None:
                close()

    @staticmethod
    def _require_authorized(document: FiscalDocument, operation: str):
        if document.status != Status.AUTHORIZED.value or not document.access_key:
            raise ValidationError(
                f"{operation} exige NF-e autorizada (situacao atual: {document.status})"
            )

    async def _event_outcome(self, chain_id: str, action: AuditAction, result: EventResult,
                             entity_id: Optional[str], metadata: dict):
        metadata = dict(
            metadata,
            status_code=result.status_code,
            event_status_code=result.event_status_code,
            protocol_number=result.protocol_number,
        )
        if result.success:
            await self.audit.record(chain_id, action, f"Evento registrado: protocolo {result.protocol_number}",
                                    entity_id=entity_id, metadata=metadata)
            return

        await self.audit.record(chain_id, action, f"Evento recusado: {result.error}",
                                entity_id=entity_id, metadata=metadata)
        code = result.event_status_code or result.status_code or 0
        message = result.event_status_message or result.status_message or ""
        logger.error(f"[NFE-EVENTS] Evento recusado para {entity_id}: {code} {message}")
        raise AuthorityRejection(code, message)

    # -------------------------------------------------
    # Operacoes
    # -------------------------------------------------

    async def cancel(self, document_id: str, justification: str) -> EventResult:
        """Cancela NF-e autorizada (em producao, dentro do prazo configurado)"""
        document = await self._document(document_id)
        self._require_authorized(document, "Cancelamento")
        if not document.protocol_number:
            raise ValidationError("NF-e sem protocolo de autorizacao registrado")

        if document.environment == Environment.PRODUCTION.value and document.authorized_at:
            deadline = document.authorized_at + timedelta(hours=self.config.NFE_CANCEL_WINDOW_HOURS)
            if utcnow() > deadline:
                raise ValidationError(
                    f"Prazo de cancelamento de {self.config.NFE_CANCEL_WINDOW_HOURS}h expirado"
                )

        company = await self._company(document.company_id)
        result = await self._call(
            company, Environment(document.environment), "cancel",
            document.access_key, justification, document.protocol_number,
        )
        await self._event_outcome(
            document.id, AuditAction.CANCELAMENTO, result, document.access_key,
            {"justification": justification},
        )

        await self.documents.update(
            document.id,
            status=Status.CANCELLED.value,
            cancel_protocol_number=result.protocol_number,
            cancelled_at=utcnow(),
            status_code=result.event_status_code,
            status_message=result.event_status_message,
        )
        logger.info(f"[NFE-EVENTS] NF-e {document.access_key} cancelada")
        return result

    async def correct(self, document_id: str, correction: str) -> EventResult:
        """Carta de correcao; a sequencia e controlada pelo documento"""
        document = await self._document(document_id)
        self._require_authorized(document, "Carta de correcao")

        sequence = (document.correction_sequence or 0) + 1
        if sequence > CORRECAO_SEQUENCIA_MAX:
            raise ValidationError(f"Limite de {CORRECAO_SEQUENCIA_MAX} cartas de correcao atingido")

        company = await self._company(document.company_id)
        result = await self._call(
            company, Environment(document.environment), "correct",
            document.access_key, correction, sequence,
        )
        await self._event_outcome(
            document.id, AuditAction.CARTA_CORRECAO, result, document.access_key,
            {"sequence": sequence},
        )

        await self.documents.update(document.id, correction_sequence=sequence)
        return result

    async def invalidate(
        self,
        company_id: str,
        series: int,
        number_from: int,
        number_to: int,
        justification: str,
        environment: Optional[str] = None,
    ) -> InvalidationResult:
        company = await self._company(company_id)
        environment = self._environment(company, environment)
        chain_id = f"INUT-{company.cnpj}-{series}-{number_from}-{number_to}"

        result = await self._call(
            company, environment, "invalidate_range",
            series, number_from, number_to, justification,
        )
        metadata = {
            "series": series,
            "number_from": number_from,
            "number_to": number_to,
            "status_code": result.status_code,
            "protocol_number": result.protocol_number,
        }
        if not result.success:
            await self.audit.record(chain_id, AuditAction.INUTILIZACAO,
                                    f"Inutilizacao recusada: {result.status_code} {result.status_message}",
                                    metadata=metadata)
            raise AuthorityRejection(result.status_code or 0, result.status_message or "")

        await self.audit.record(chain_id, AuditAction.INUTILIZACAO,
                                f"Numeracao {number_from} a {number_to} inutilizada: {result.protocol_number}",
                                metadata=metadata)
        return result

    async def manifest(
        self,
        company_id: str,
        access_key: str,
        event_type: str,
        justification: Optional[str] = None,
        environment: Optional[str] = None,
    ) -> EventResult:
        """Manifestacao da empresa como destinataria de uma NF-e de terceiro"""
        company = await self._company(company_id)
        result = await self._call(
            company, self._environment(company, environment), "recipient_manifestation",
            access_key, event_type, justification,
        )
        await self._event_outcome(
            access_key, AuditAction.MANIFESTACAO, result, access_key,
            {"event_type": event_type, "description": DESCRICAO_EVENTOS.get(str(event_type))},
        )
        return result

    async def reconcile(self, document_id: str) -> FiscalDocument:
        """
        Consulta a situacao da nota na SEFAZ e alinha o documento.

        Resolve principalmente notas em AWAITING_RECEIPT e em contingencia.
        """
        document = await self._document(document_id)
        if not document.access_key:
            raise ValidationError("Documento sem chave de acesso")

        company = await self._company(document.company_id)
        send_mode = SendMode(document.emission_mode or SendMode.NORMAL.value)
        result = await self._call(
            company, Environment(document.environment), "query_status", document.access_key,
            send_mode=send_mode,
        )

        await self.audit.record(
            document.id, AuditAction.CONSULTA_SITUACAO,
            f"Consulta de situacao: {result.status_code} {result.status_message}",
            entity_id=document.access_key,
            metadata={"status_code": result.status_code, "previous_status": document.status},
        )

        if result.cancelled and document.status != Status.CANCELLED.value:
            return await self.documents.update(
                document.id,
                status=Status.CANCELLED.value,
                cancel_protocol_number=result.cancel_protocol_number,
                status_code=result.status_code,
                status_message=result.status_message,
            )

        if result.protocol is not None and document.status != Status.AUTHORIZED.value \
                and document.status != Status.CANCELLED.value:
            try:
                return await self.flow.apply_protocol(document, document.signed_xml, result.protocol, send_mode)
            except AuthorityRejection:
                return await self._document(document.id)

        return document

    async def service_status(
        self,
        company_id: str,
        environment: Optional[str] = None,
        send_mode: SendMode = SendMode.NORMAL,
    ) -> ServiceStatus:
        company = await self._company(company_id)
        return await self._call(
            company, self._environment(company, environment), "health_check",
            send_mode=SendMode(send_mode),
        )
