"""
Orquestrador da emissao de NF-e

Maquina de estados de um documento:

    BUILT -> VALIDATED -> SIGNED -> SUBMITTED(modo)
          -> AUTHORIZED | REJECTED | DENIED
          -> AWAITING_RECEIPT (recibo nao resolvido nas consultas)
          -> CONTINGENCY (SEFAZ de origem e SVC fora do ar: fila offline)

Falha de transporte no modo NORMAL remonta e reassina a nota em SVC e
tenta uma unica vez. Se o SVC tambem falhar, a nota assinada no modo
NORMAL vai para a fila de contingencia e o retorno e CONTINGENCY_QUEUED
(nao e erro). Rejeicoes de negocio nunca vao para a fila.

Cada transicao gera um evento na cadeia de auditoria do documento.
"""
import asyncio
import enum
import logging
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

from nfe_server.core.config import Settings, settings as default_settings
from nfe_server.core.error_notifier import notify_error_sync
from nfe_server.core.exceptions import (
    AuthorityRejection,
    CertificateError,
    NotFoundError,
    QueueError,
    ReceiptPendingError,
    SignatureError,
    TransportError,
    ValidationError,
)
from nfe_server.models import Company, FiscalDocument, FiscalDocumentStatus, QueueEntry
from nfe_server.repositories.base import CompanyStore, DocumentStore
from nfe_server.schemas.nfe import OrderData
from nfe_server.services.audit import AuditAction, AuditChain
from nfe_server.services.builder import BuiltDocument, DocumentBuilder
from nfe_server.services.certificate import CertificateBundle, load_company_credentials
from nfe_server.services.constants import Environment, SendMode, contingency_mode_for_uf
from nfe_server.services.contingency import ContingencyQueue
from nfe_server.services.responses import AuthorizationResult, ProtocolResult
from nfe_server.services.signature import SignatureService
from nfe_server.services.transport import create_transport
from nfe_server.services.validator import StructuralValidator
from nfe_server.utils.formatting import brazil_now, utcnow
from nfe_server.utils.procnfe import merge_authorized

logger = logging.getLogger(__name__)

Status = FiscalDocumentStatus


class EmissionOutcome(str, enum.Enum):
    AUTHORIZED = "AUTHORIZED"
    CONTINGENCY_QUEUED = "CONTINGENCY_QUEUED"


@dataclass
class EmissionResult:
    outcome: EmissionOutcome
    document: FiscalDocument
    send_mode: SendMode
    protocol: Optional[ProtocolResult] = None
    queue_entry: Optional[QueueEntry] = None
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "outcome": self.outcome.value,
            "document_id": self.document.id,
            "access_key": self.document.access_key,
            "status": self.document.status,
            "status_code": self.document.status_code,
            "status_message": self.document.status_message,
            "protocol_number": self.document.protocol_number,
            "send_mode": self.send_mode.value,
            "queue_entry_id": self.queue_entry.id if self.queue_entry else None,
            "warnings": self.warnings,
        }


def _close(client):
    close = getattr(client, "close", None)
    if close is not None:
        close()


class AuthorizationFlow:
    """
    Consulta de recibo e aplicacao do protocolo ao documento.

    Compartilhado entre o orquestrador e o worker da fila: o resultado de
    um envio e tratado da mesma forma nos dois caminhos.
    """

    def __init__(
        self,
        documents: DocumentStore,
        audit: AuditChain,
        config: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.documents = documents
        self.audit = audit
        self.config = config or default_settings
        self.sleep = sleep

    async def poll(self, client, receipt_number: str) -> Optional[AuthorizationResult]:
        """
        Consulta o recibo com espera exponencial (3s, 6s, 12s, ...).

        Devolve o resultado final do lote, ou None se continuar em
        processamento apos todas as tentativas.
        """
        delay = self.config.NFE_RECEIPT_POLL_INITIAL_DELAY
        for attempt in range(1, self.config.NFE_RECEIPT_POLL_ATTEMPTS + 1):
            await self.sleep(delay)
            delay *= 2
            try:
                result = await asyncio.to_thread(client.poll_receipt, receipt_number)
            except TransportError as e:
                logger.warning(f"[NFE-ORCHESTRATOR] Consulta do recibo {receipt_number} falhou ({attempt}): {e}")
                continue

            if not result.processing:
                return result
            logger.info(f"[NFE-ORCHESTRATOR] Recibo {receipt_number} em processamento ({attempt})")
        return None

    async def settle(
        self,
        client,
        document: FiscalDocument,
        signed_xml: str,
        result: AuthorizationResult,
        send_mode: SendMode,
    ) -> FiscalDocument:
        """
        Leva o documento ao estado final a partir do retorno do envio.

        Raises:
            AuthorityRejection: rejeicao ou denegacao
            ReceiptPendingError: lote recebido e nao resolvido nas consultas
        """
        if result.received:
            receipt = result.receipt_number
            await self.documents.update(
                document.id, receipt_number=receipt, status_code=result.status_code,
                status_message=result.status_message,
            )
            polled = await self.poll(client, receipt)
            if polled is None:
                await self.documents.update(document.id, status=Status.AWAITING_RECEIPT.value)
                await self.audit.record(
                    document.id, AuditAction.EMISSAO_AGUARDANDO_RECIBO,
                    f"Lote {receipt} ainda em processamento apos "
                    f"{self.config.NFE_RECEIPT_POLL_ATTEMPTS} consultas",
                    entity_id=document.access_key,
                    metadata={"receipt_number": receipt, "send_mode": send_mode.value},
                )
                raise ReceiptPendingError(receipt, document.id)
            result = polled

        if result.protocol is None:
            # Lote rejeitado inteiro (ex: 215 falha de schema, 225 XML mal formado)
            return await self._reject(document, result.status_code, result.status_message, send_mode)

        return await self.apply_protocol(document, signed_xml, result.protocol, send_mode)

    async def apply_protocol(
        self,
        document: FiscalDocument,
        signed_xml: str,
        protocol: ProtocolResult,
        send_mode: SendMode,
    ) -> FiscalDocument:
        if protocol.authorized:
            document = await self.documents.update(
                document.id,
                status=Status.AUTHORIZED.value,
                status_code=protocol.status_code,
                status_message=protocol.status_message,
                protocol_number=protocol.protocol_number,
                authorized_at=utcnow(),
                emission_mode=send_mode.value,
                merged_xml=merge_authorized(signed_xml, protocol.xml) if protocol.xml else None,
            )
            await self.audit.record(
                document.id, AuditAction.EMISSAO_AUTORIZADA,
                f"NF-e autorizada: protocolo {protocol.protocol_number}",
                entity_id=document.access_key,
                metadata={
                    "protocol_number": protocol.protocol_number,
                    "status_code": protocol.status_code,
                    "send_mode": send_mode.value,
                    "environment": document.environment,
                },
            )
            logger.info(f"[NFE-ORCHESTRATOR] NF-e {document.access_key} autorizada ({protocol.protocol_number})")
            return document

        if protocol.denied:
            await self.documents.update(
                document.id,
                status=Status.DENIED.value,
                status_code=protocol.status_code,
                status_message=protocol.status_message,
                protocol_number=protocol.protocol_number,
            )
            await self.audit.record(
                document.id, AuditAction.EMISSAO_DENEGADA,
                f"NF-e denegada: {protocol.status_code} {protocol.status_message}",
                entity_id=document.access_key,
                metadata={"status_code": protocol.status_code, "send_mode": send_mode.value},
            )
            logger.error(f"[NFE-ORCHESTRATOR] NF-e {document.access_key} denegada: {protocol.status_code}")
            raise AuthorityRejection(protocol.status_code, protocol.status_message or "", {"document_id": document.id})

        return await self._reject(document, protocol.status_code, protocol.status_message, send_mode)

    async def _reject(self, document, status_code, status_message, send_mode: SendMode):
        await self.documents.update(
            document.id,
            status=Status.REJECTED.value,
            status_code=status_code,
            status_message=status_message,
        )
        await self.audit.record(
            document.id, AuditAction.EMISSAO_REJEITADA,
            f"Rejeicao {status_code}: {status_message}",
            entity_id=document.access_key,
            metadata={"status_code": status_code, "send_mode": send_mode.value},
        )
        logger.error(f"[NFE-ORCHESTRATOR] NF-e {document.access_key} rejeitada: {status_code} {status_message}")
        raise AuthorityRejection(status_code or 0, status_message or "", {"document_id": document.id})


class EmissionOrchestrator:
    """
    Emite uma NF-e de ponta a ponta para uma empresa.

    Todas as dependencias sao injetadas; transport_factory recebe
    (empresa, credenciais, ambiente, modo) e devolve um cliente com
    authorize / poll_receipt / health_check / close.
    """

    def __init__(
        self,
        companies: CompanyStore,
        documents: DocumentStore,
        audit: AuditChain,
        queue: ContingencyQueue,
        builder: Optional[DocumentBuilder] = None,
        validator: Optional[StructuralValidator] = None,
        signer: Optional[SignatureService] = None,
        transport_factory: Callable = create_transport,
        credentials_loader: Callable[[Company], CertificateBundle] = load_company_credentials,
        config: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        notifier: Callable = notify_error_sync,
    ):
        self.companies = companies
        self.documents = documents
        self.audit = audit
        self.queue = queue
        self.builder = builder or DocumentBuilder()
        self.validator = validator or StructuralValidator()
        self.signer = signer or SignatureService()
        self.transport_factory = transport_factory
        self.credentials_loader = credentials_loader
        self.config = config or default_settings
        self.notifier = notifier
        self.flow = AuthorizationFlow(documents, audit, self.config, sleep)

    async def emit(
        self,
        company_id: str,
        order: OrderData,
        environment: Optional[Environment] = None,
    ) -> EmissionResult:
        """
        Raises:
            NotFoundError: empresa inexistente
            ValidationError: XML invalido (documento fica REJECTED)
            CertificateError, SignatureError: exigem intervencao
            AuthorityRejection: rejeicao/denegacao da SEFAZ
            ReceiptPendingError: lote sem resultado; use reconcile depois
            TransportError: falha nao recuperavel (ex: TLS)
            QueueError: falha ao gravar na fila de contingencia
        """
        company = await self.companies.get(company_id)
        if company is None:
            raise NotFoundError(f"Empresa {company_id} nao encontrada")

        environment = Environment(
            environment or company.environment or self.config.NFE_DEFAULT_ENVIRONMENT
        )
        issuer = company.to_issuer()
        built = self.builder.build(order, issuer, environment, SendMode.NORMAL)

        document = await self._create_document(company, order, built)
        chain = document.id
        await self.audit.record(
            chain, AuditAction.EMISSAO_INICIADA,
            f"Emissao iniciada: serie {order.series} numero {order.number}",
            entity_id=built.access_key,
            metadata={
                "order_id": order.order_id,
                "company_id": company.id,
                "environment": environment.value,
                "send_mode": SendMode.NORMAL.value,
                "total": built.totals.invoice,
            },
        )

        warnings = await self._validate(document, built)

        try:
            credentials = await asyncio.to_thread(self.credentials_loader, company)
        except CertificateError as e:
            await self._fail(document, e, "NFE_CERTIFICATE_ERROR", company.id)
            raise

        signed = await self._sign(document, built, credentials)

        try:
            return await self._submit(company, credentials, document, built, signed, warnings)
        except TransportError as e:
            if not e.retryable:
                await self._fail(document, e)
                raise
            return await self._recover(company, credentials, document, order, issuer, built, signed, warnings, e)

    # -------------------------------------------------
    # Etapas
    # -------------------------------------------------

    async def _create_document(self, company: Company, order: OrderData, built: BuiltDocument) -> FiscalDocument:
        now = utcnow()
        document = FiscalDocument(
            id=str(uuid.uuid4()),
            company_id=company.id,
            order_id=order.order_id,
            access_key=built.access_key,
            series=order.series,
            number=order.number,
            random_code=built.random_code,
            environment=built.environment.value,
            emission_mode=SendMode.NORMAL.value,
            issued_at=built.issued_at.replace(tzinfo=None),
            total_amount=built.totals.invoice,
            status=Status.BUILT.value,
            correction_sequence=0,
            created_at=now,
            updated_at=now,
        )
        return await self.documents.add(document)

    async def _validate(self, document: FiscalDocument, built: BuiltDocument) -> List[str]:
        result = self.validator.validate(built.xml)
        if not result.valid:
            await self.documents.update(
                document.id,
                status=Status.REJECTED.value,
                status_message="; ".join(result.errors)[:2000],
            )
            await self.audit.record(
                document.id, AuditAction.EMISSAO_REJEITADA,
                f"XML invalido: {len(result.errors)} erro(s)",
                entity_id=built.access_key,
                metadata={"errors": result.errors, "warnings": result.warnings},
            )
            raise ValidationError("XML da NF-e invalido", result.errors, result.warnings)

        await self.documents.update(document.id, status=Status.VALIDATED.value)
        await self.audit.record(
            document.id, AuditAction.EMISSAO_VALIDADA,
            f"XML validado ({built.send_mode.value})",
            entity_id=built.access_key,
            metadata={"warnings": result.warnings, "send_mode": built.send_mode.value},
        )
        return result.warnings

    async def _sign(self, document: FiscalDocument, built: BuiltDocument, credentials: CertificateBundle) -> str:
        try:
            signed = await asyncio.to_thread(
                self.signer.sign, built.xml, credentials.private_key_pem, credentials.certificate_pem
            )
        except SignatureError as e:
            await self._fail(document, e)
            raise

        await self.documents.update(
            document.id,
            status=Status.SIGNED.value,
            access_key=built.access_key,
            emission_mode=built.send_mode.value,
            signed_xml=signed,
        )
        await self.audit.record(
            document.id, AuditAction.EMISSAO_ASSINADA,
            f"XML assinado ({built.send_mode.value})",
            entity_id=built.access_key,
            metadata={"send_mode": built.send_mode.value},
        )
        return signed

    async def _submit(
        self,
        company: Company,
        credentials: CertificateBundle,
        document: FiscalDocument,
        built: BuiltDocument,
        signed: str,
        warnings: List[str],
    ) -> EmissionResult:
        send_mode = built.send_mode
        client = self.transport_factory(company, credentials, built.environment, send_mode)
        try:
            if send_mode is SendMode.NORMAL and self.config.NFE_HEALTH_CHECK_BEFORE_SEND:
                status = await asyncio.to_thread(client.health_check)
                if not status.online:
                    raise TransportError(
                        f"Servico de autorizacao indisponivel: {status.status_code} {status.status_message}",
                        retryable=True,
                    )

            await self.documents.update(
                document.id, status=Status.SUBMITTED.value, emission_mode=send_mode.value,
            )
            await self.audit.record(
                document.id, AuditAction.EMISSAO_TRANSMITIDA,
                f"Lote transmitido ({send_mode.value})",
                entity_id=built.access_key,
                metadata={"send_mode": send_mode.value, "environment": built.environment.value},
            )

            result = await asyncio.to_thread(client.authorize, signed)
            document = await self.flow.settle(client, document, signed, result, send_mode)
        finally:
            _close(client)

        protocol = result.protocol
        return EmissionResult(EmissionOutcome.AUTHORIZED, document, send_mode, protocol, warnings=warnings)

    async def _recover(
        self,
        company: Company,
        credentials: CertificateBundle,
        document: FiscalDocument,
        order: OrderData,
        issuer,
        built: BuiltDocument,
        signed: str,
        warnings: List[str],
        error: TransportError,
    ) -> EmissionResult:
        """Falha de transporte no modo NORMAL: SVC uma vez, depois fila offline"""
        logger.warning(f"[NFE-ORCHESTRATOR] SEFAZ de origem indisponivel para {built.access_key}: {error}")

        if self.config.NFE_FALLBACK_ENABLED:
            mode = SendMode(self.config.NFE_FALLBACK_MODE) if self.config.NFE_FALLBACK_MODE \
                else contingency_mode_for_uf(issuer.address.uf.upper())
            action = AuditAction.FALLBACK_SVC_RS if mode is SendMode.SVC_RS else AuditAction.FALLBACK_SVC_AN
            await self.audit.record(
                document.id, action,
                f"Falha de transporte no modo NORMAL, tentando {mode.value}",
                entity_id=built.access_key,
                metadata={"error": error.message, "send_mode": mode.value},
            )

            alternate = self.builder.build(
                order, issuer, built.environment, mode,
                issued_at=built.issued_at,
                random_code=built.random_code,
                contingency_at=brazil_now(),
                contingency_reason=self.config.NFE_CONTINGENCY_JUSTIFICATION,
            )
            warnings = await self._validate(document, alternate)
            alternate_signed = await self._sign(document, alternate, credentials)

            try:
                return await self._submit(company, credentials, document, alternate, alternate_signed, warnings)
            except TransportError as e:
                logger.warning(f"[NFE-ORCHESTRATOR] {mode.value} tambem indisponivel: {e}")
                error = e

        return await self._enqueue(company, document, built, signed, warnings, error)

    async def _enqueue(
        self,
        company: Company,
        document: FiscalDocument,
        built: BuiltDocument,
        signed: str,
        warnings: List[str],
        error: TransportError,
    ) -> EmissionResult:
        # A fila guarda a versao NORMAL: o reenvio vai para a SEFAZ de origem
        try:
            entry = await self.queue.enqueue(
                related_document_id=document.id,
                company_id=company.id,
                environment=built.environment,
                send_mode=SendMode.NORMAL,
                signed_xml=signed,
                reason=error.message,
            )
        except QueueError as e:
            await self._fail(document, e, "NFE_QUEUE_ERROR", company.id)
            raise

        document = await self.documents.update(
            document.id,
            status=Status.CONTINGENCY.value,
            access_key=built.access_key,
            emission_mode=SendMode.NORMAL.value,
            signed_xml=signed,
            status_message=error.message[:2000],
        )
        await self.audit.record(
            document.id, AuditAction.CONTINGENCIA_OFFLINE_ENFILEIRADA,
            "NF-e enfileirada para reenvio em contingencia",
            entity_id=built.access_key,
            metadata={"queue_entry_id": entry.id, "error": error.message},
        )
        logger.warning(f"[NFE-ORCHESTRATOR] NF-e {built.access_key} na fila de contingencia ({entry.id})")

        return EmissionResult(
            EmissionOutcome.CONTINGENCY_QUEUED, document, SendMode.NORMAL,
            queue_entry=entry, warnings=warnings,
        )

    async def _fail(self, document: FiscalDocument, error: Exception, alert: Optional[str] = None,
                    company_id: Optional[str] = None):
        message = getattr(error, "message", str(error))
        await self.documents.update(document.id, status_message=message[:2000])
        await self.audit.record(
            document.id, AuditAction.EMISSAO_FALHA,
            f"{type(error).__name__}: {message}",
            entity_id=document.access_key,
            metadata={"error_type": type(error).__name__},
        )
        logger.error(f"[NFE-ORCHESTRATOR] Emissao {document.id} interrompida: {message}")
        if alert:
            self.notifier(alert, message, company_id=company_id, document_id=document.id)
