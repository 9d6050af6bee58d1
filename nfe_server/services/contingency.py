"""
Fila de contingencia offline

Guarda NF-e assinadas que nao puderam ser transmitidas (SEFAZ de origem
e SVC indisponiveis). O worker reenvia as entradas vencidas.

PENDING -> SENDING -> SENT
                   -> PENDING (novo next_attempt_at)
                   -> FAILED  (limite de tentativas ou erro de certificado)
SENDING parado alem do lease volta a ser reservado (worker interrompido)
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import List, Optional

from nfe_server.core.exceptions import QueueError
from nfe_server.models import QueueEntry, QueueStatus
from nfe_server.repositories.base import QueueStore
from nfe_server.services.constants import Environment, SendMode
from nfe_server.utils.formatting import utcnow

logger = logging.getLogger(__name__)


class ContingencyQueue:
    def __init__(self, store: QueueStore, sending_lease: Optional[timedelta] = None):
        self.store = store
        # SENDING parado ha mais que isso e tratado como worker morto
        self.sending_lease = sending_lease

    def _stale_before(self, now: datetime) -> Optional[datetime]:
        return now - self.sending_lease if self.sending_lease else None

    async def enqueue(
        self,
        related_document_id: str,
        company_id: str,
        environment: Environment,
        send_mode: SendMode,
        signed_xml: str,
        reason: Optional[str] = None,
    ) -> QueueEntry:
        """
        Cria a entrada PENDING, pronta para envio imediato.

        Raises:
            QueueError: falha de persistencia. O XML assinado nao pode ser
                perdido em silencio; o chamador deve alertar o operador.
        """
        now = utcnow()
        entry = QueueEntry(
            id=str(uuid.uuid4()),
            related_document_id=related_document_id,
            company_id=company_id,
            environment=Environment(environment).value,
            send_mode=SendMode(send_mode).value,
            signed_xml=signed_xml,
            reason=reason,
            status=QueueStatus.PENDING.value,
            attempt_count=0,
            last_error=None,
            next_attempt_at=now,
            created_at=now,
            updated_at=now,
        )

        try:
            stored = await self.store.add(entry)
        except QueueError:
            raise
        except Exception as e:
            logger.error(f"[NFE-QUEUE] Falha ao enfileirar {related_document_id}: {e}", exc_info=True)
            raise QueueError(f"Falha ao enfileirar NF-e {related_document_id}: {e}") from e

        logger.info(f"[NFE-QUEUE] Entrada {stored.id} criada para documento {related_document_id}")
        return stored

    async def due_entries(self, limit: int, now: Optional[datetime] = None) -> List[QueueEntry]:
        now = now or utcnow()
        return await self.store.due(now, limit, self._stale_before(now))

    async def claim(self, entry_id: str, now: Optional[datetime] = None) -> Optional[QueueEntry]:
        """PENDING (ou SENDING vencido) -> SENDING; None se outro worker ja pegou a entrada"""
        now = now or utcnow()
        return await self.store.claim(entry_id, now, self._stale_before(now))

    async def mark_sent(self, entry: QueueEntry) -> bool:
        now = utcnow()
        return await self.store.transition(
            entry.id,
            QueueStatus.SENDING.value,
            QueueStatus.SENT.value,
            attempt_count=entry.attempt_count + 1,
            last_error=None,
            sent_at=now,
        )

    async def reschedule(self, entry: QueueEntry, error: str, backoff: timedelta) -> bool:
        """Volta para PENDING com tentativa contabilizada e proximo envio adiado"""
        now = utcnow()
        next_attempt = max(now, entry.next_attempt_at or now) + backoff
        return await self.store.transition(
            entry.id,
            QueueStatus.SENDING.value,
            QueueStatus.PENDING.value,
            attempt_count=entry.attempt_count + 1,
            last_error=error[:2000],
            next_attempt_at=next_attempt,
        )

    async def mark_failed(self, entry: QueueEntry, error: str, count_attempt: bool = True) -> bool:
        return await self.store.transition(
            entry.id,
            QueueStatus.SENDING.value,
            QueueStatus.FAILED.value,
            attempt_count=entry.attempt_count + (1 if count_attempt else 0),
            last_error=error[:2000],
        )

    async def list(self, status: Optional[str] = None, limit: int = 100) -> List[QueueEntry]:
        return await self.store.list(status, limit)
