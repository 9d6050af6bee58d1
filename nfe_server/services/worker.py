"""
Worker da fila de contingencia

Reenvia as entradas vencidas, uma por vez. Cada entrada e reservada
(PENDING -> SENDING) antes do envio, entao duas execucoes sobrepostas
nunca reenviam a mesma nota.

Resultado por entrada:
- autorizada / lote recebido: SENT
- falha de transporte ou rejeicao: PENDING com backoff de autoridade
- erro inesperado (inclusive de persistencia apos a reserva): PENDING com backoff de erro
- limite de tentativas, certificado ou empresa invalidos: FAILED + alerta

Entradas presas em SENDING (worker interrompido) voltam a ser elegiveis
apos NFE_QUEUE_SENDING_LEASE_MINUTES.
"""
import asyncio
import logging
from dataclasses import dataclass, asdict
from datetime import timedelta
from typing import Awaitable, Callable, Optional

from nfe_server.core.config import Settings, settings as default_settings
from nfe_server.core.error_notifier import notify_error_sync
from nfe_server.core.exceptions import (
    AuthorityRejection,
    CertificateError,
    QueueError,
    ReceiptPendingError,
    TransportError,
)
from nfe_server.models import Company, FiscalDocumentStatus, QueueEntry, QueueStatus
from nfe_server.repositories.base import CompanyStore, DocumentStore
from nfe_server.services.audit import AuditAction, AuditChain
from nfe_server.services.certificate import CertificateBundle, load_company_credentials
from nfe_server.services.constants import Environment, SendMode
from nfe_server.services.contingency import ContingencyQueue
from nfe_server.services.orchestrator import AuthorizationFlow
from nfe_server.services.transport import create_transport

logger = logging.getLogger(__name__)

SENT = "sent"
RESCHEDULED = "rescheduled"
FAILED = "failed"
SKIPPED = "skipped"


@dataclass
class WorkerReport:
    processed: int = 0
    sent: int = 0
    rescheduled: int = 0
    failed: int = 0
    skipped: int = 0

    def add(self, outcome: str):
        self.processed += 1
        setattr(self, outcome, getattr(self, outcome) + 1)

    def to_dict(self) -> dict:
        return asdict(self)


class ContingencyWorker:
    def __init__(
        self,
        companies: CompanyStore,
        documents: DocumentStore,
        queue: ContingencyQueue,
        audit: AuditChain,
        transport_factory: Callable = create_transport,
        credentials_loader: Callable[[Company], CertificateBundle] = load_company_credentials,
        config: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        notifier: Callable = notify_error_sync,
    ):
        self.companies = companies
        self.documents = documents
        self.queue = queue
        self.audit = audit
        self.transport_factory = transport_factory
        self.credentials_loader = credentials_loader
        self.config = config or default_settings
        self.notifier = notifier
        self.flow = AuthorizationFlow(documents, audit, self.config, sleep)

    @property
    def authority_backoff(self) -> timedelta:
        return timedelta(minutes=self.config.NFE_QUEUE_AUTHORITY_BACKOFF_MINUTES)

    @property
    def error_backoff(self) -> timedelta:
        return timedelta(minutes=self.config.NFE_QUEUE_ERROR_BACKOFF_MINUTES)

    async def process_due(self, limit: Optional[int] = None) -> WorkerReport:
        """Processa as entradas vencidas em ordem de criacao, uma de cada vez"""
        report = WorkerReport()
        entries = await self.queue.due_entries(limit or self.config.NFE_QUEUE_BATCH_SIZE)
        if entries:
            logger.info(f"[NFE-WORKER] {len(entries)} entrada(s) vencida(s) na fila")

        for entry in entries:
            try:
                outcome = await self.process_entry(entry)
            except Exception as e:
                # Nem o reagendamento foi gravado: a entrada volta pelo lease de SENDING
                message = e.message if isinstance(e, QueueError) else f"{type(e).__name__}: {e}"
                logger.error(f"[NFE-WORKER] Falha de persistencia na entrada {entry.id}: {message}", exc_info=True)
                self.notifier("NFE_QUEUE_ERROR", message, queue_entry_id=entry.id,
                              company_id=entry.company_id, document_id=entry.related_document_id)
                outcome = FAILED
            report.add(outcome)

        if entries:
            logger.info(f"[NFE-WORKER] Resultado: {report.to_dict()}")
        return report

    async def process_entry(self, entry: QueueEntry) -> str:
        """
        Reserva e reenvia uma entrada.

        Depois da reserva a entrada sempre sai de SENDING: qualquer falha
        nao tratada volta para PENDING com o backoff de erro.
        """
        stranded = entry.status == QueueStatus.SENDING.value
        claimed = await self.queue.claim(entry.id)
        if claimed is None:
            logger.info(f"[NFE-WORKER] Entrada {entry.id} ja reservada, ignorando")
            return SKIPPED
        entry = claimed
        if stranded:
            logger.warning(f"[NFE-WORKER] Entrada {entry.id} parada em SENDING, retomando")

        try:
            return await self._resend(entry)
        except Exception as e:
            logger.error(f"[NFE-WORKER] Falha apos reservar a entrada {entry.id}: {e}", exc_info=True)
            message = e.message if isinstance(e, QueueError) else f"{type(e).__name__}: {e}"
            return await self._retry(entry, message, self.error_backoff)

    async def _resend(self, entry: QueueEntry) -> str:
        company = await self.companies.get(entry.company_id)
        if company is None:
            return await self._discard(entry, f"Empresa {entry.company_id} nao encontrada", "NFE_QUEUE_ERROR")

        document = await self.documents.get(entry.related_document_id) if entry.related_document_id else None
        if document is None:
            return await self._discard(entry, f"Documento {entry.related_document_id} nao encontrado", "NFE_QUEUE_ERROR")

        if document.status == FiscalDocumentStatus.AUTHORIZED.value:
            # Ja resolvida por consulta de situacao
            await self.queue.mark_sent(entry)
            await self._audit(entry, AuditAction.CONTINGENCIA_REENVIO_SUCESSO,
                              "NF-e ja autorizada, entrada encerrada sem reenvio")
            return SENT

        try:
            credentials = await asyncio.to_thread(self.credentials_loader, company)
        except CertificateError as e:
            return await self._discard(entry, e.message, "NFE_CERTIFICATE_ERROR")

        send_mode = SendMode(entry.send_mode)
        client = None
        try:
            client = self.transport_factory(company, credentials, Environment(entry.environment), send_mode)
            result = await asyncio.to_thread(client.authorize, entry.signed_xml)
            await self.flow.settle(client, document, entry.signed_xml, result, send_mode)

        except ReceiptPendingError as e:
            # Lote aceito: o desfecho vem pela consulta de situacao, nao por novo envio
            await self.queue.mark_sent(entry)
            await self._audit(entry, AuditAction.CONTINGENCIA_REENVIO_SUCESSO,
                              f"Lote {e.receipt_number} recebido, aguardando processamento")
            return SENT

        except (TransportError, AuthorityRejection) as e:
            return await self._retry(entry, e.message, self.authority_backoff)

        except Exception as e:
            logger.error(f"[NFE-WORKER] Erro inesperado na entrada {entry.id}: {e}", exc_info=True)
            return await self._retry(entry, f"{type(e).__name__}: {e}", self.error_backoff)

        finally:
            if client is not None:
                close = getattr(client, "close", None)
                if close is not None:
                    close()

        await self.queue.mark_sent(entry)
        await self._audit(entry, AuditAction.CONTINGENCIA_REENVIO_SUCESSO,
                          f"NF-e autorizada no reenvio ({send_mode.value})")
        logger.info(f"[NFE-WORKER] Entrada {entry.id} enviada")
        return SENT

    async def _retry(self, entry: QueueEntry, error: str, backoff: timedelta) -> str:
        attempts = entry.attempt_count + 1
        limit = self.config.NFE_QUEUE_MAX_ATTEMPTS
        if limit and attempts >= limit:
            if not await self.queue.mark_failed(entry, error):
                return self._left_sending(entry)
            await self._audit(
                entry, AuditAction.CONTINGENCIA_DESCARTADA,
                f"Limite de {limit} tentativas atingido: {error}",
                {"attempt_count": attempts},
            )
            self.notifier("NFE_QUEUE_MAX_ATTEMPTS", error, queue_entry_id=entry.id,
                          company_id=entry.company_id, document_id=entry.related_document_id)
            logger.error(f"[NFE-WORKER] Entrada {entry.id} descartada apos {attempts} tentativas")
            return FAILED

        if not await self.queue.reschedule(entry, error, backoff):
            return self._left_sending(entry)
        await self._audit(
            entry, AuditAction.CONTINGENCIA_REENVIO_FALHA,
            f"Reenvio falhou (tentativa {attempts}): {error}",
            {"attempt_count": attempts, "backoff_minutes": int(backoff.total_seconds() // 60)},
        )
        logger.warning(f"[NFE-WORKER] Entrada {entry.id} reagendada: {error}")
        return RESCHEDULED

    @staticmethod
    def _left_sending(entry: QueueEntry) -> str:
        # Desfecho ja gravado antes da falha (ex.: SENT e auditoria falhou)
        logger.warning(f"[NFE-WORKER] Entrada {entry.id} ja saiu de SENDING, nada a reagendar")
        return SKIPPED

    async def _discard(self, entry: QueueEntry, error: str, alert: str) -> str:
        """Erro que nao se resolve com reenvio: FAILED sem contar tentativa"""
        await self.queue.mark_failed(entry, error, count_attempt=False)
        await self._audit(entry, AuditAction.CONTINGENCIA_REENVIO_FALHA, f"Reenvio interrompido: {error}",
                          {"requires_operator": True})
        self.notifier(alert, error, queue_entry_id=entry.id,
                      company_id=entry.company_id, document_id=entry.related_document_id)
        logger.error(f"[NFE-WORKER] Entrada {entry.id} marcada como FAILED: {error}")
        return FAILED

    async def _audit(self, entry: QueueEntry, action: AuditAction, description: str,
                     metadata: Optional[dict] = None):
        await self.audit.record(
            entry.related_document_id or entry.id,
            action,
            description,
            metadata=dict(metadata or {}, queue_entry_id=entry.id, send_mode=entry.send_mode),
        )


async def run_worker_loop(
    worker: ContingencyWorker,
    interval: Optional[float] = None,
    stop_event: Optional[asyncio.Event] = None,
):
    """Loop periodico do worker (iniciado pelo lifespan ou pelo process_queue.py)"""
    interval = interval or worker.config.NFE_WORKER_INTERVAL_SECONDS
    stop_event = stop_event or asyncio.Event()
    logger.info(f"[NFE-WORKER] Loop iniciado (intervalo {interval}s)")

    while not stop_event.is_set():
        try:
            await worker.process_due()
        except Exception as e:
            logger.error(f"[NFE-WORKER] Erro no loop do worker: {e}", exc_info=True)

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass

    logger.info("[NFE-WORKER] Loop encerrado")
