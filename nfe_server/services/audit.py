"""
Trilha de auditoria da NF-e com hash encadeado

Cada evento guarda o hash do anterior da mesma cadeia (uma cadeia por
documento fiscal). Alterar ou remover qualquer registro quebra a
verificacao a partir daquele ponto.

hash = SHA-256 do JSON canonico (chaves ordenadas, sem espacos) de:
chain_id, sequence, previous_hash, action, entity, entity_id,
description, metadata e created_at (ISO 8601, UTC sem fuso).
"""
import asyncio
import enum
import hashlib
import json
import logging
import uuid
import weakref
from dataclasses import dataclass
from typing import List, Optional

from nfe_server.core.exceptions import AuditConflictError
from nfe_server.models import AuditEvent
from nfe_server.repositories.base import AuditStore
from nfe_server.utils.formatting import utcnow

logger = logging.getLogger(__name__)

AUDIT_ENTITY = "NFe"


class AuditAction(str, enum.Enum):
    """Acoes registradas na trilha"""
    # Emissao
    EMISSAO_INICIADA = "NFE_EMISSAO_INICIADA"
    EMISSAO_VALIDADA = "NFE_EMISSAO_VALIDADA"
    EMISSAO_ASSINADA = "NFE_EMISSAO_ASSINADA"
    EMISSAO_TRANSMITIDA = "NFE_EMISSAO_TRANSMITIDA"
    EMISSAO_AGUARDANDO_RECIBO = "NFE_EMISSAO_AGUARDANDO_RECIBO"
    EMISSAO_AUTORIZADA = "NFE_EMISSAO_AUTORIZADA"
    EMISSAO_REJEITADA = "NFE_EMISSAO_REJEITADA"
    EMISSAO_DENEGADA = "NFE_EMISSAO_DENEGADA"
    EMISSAO_FALHA = "NFE_EMISSAO_FALHA"

    # Contingencia
    FALLBACK_SVC_AN = "NFE_FALLBACK_SVC_AN"
    FALLBACK_SVC_RS = "NFE_FALLBACK_SVC_RS"
    CONTINGENCIA_OFFLINE_ENFILEIRADA = "NFE_CONTINGENCIA_OFFLINE_ENFILEIRADA"
    CONTINGENCIA_REENVIO_SUCESSO = "NFE_CONTINGENCIA_REENVIO_SUCESSO"
    CONTINGENCIA_REENVIO_FALHA = "NFE_CONTINGENCIA_REENVIO_FALHA"
    CONTINGENCIA_DESCARTADA = "NFE_CONTINGENCIA_DESCARTADA"

    # Eventos posteriores
    CONSULTA_SITUACAO = "NFE_CONSULTA_SITUACAO"
    CANCELAMENTO = "NFE_CANCELAMENTO"
    CARTA_CORRECAO = "NFE_CARTA_CORRECAO"
    INUTILIZACAO = "NFE_INUTILIZACAO"
    MANIFESTACAO = "NFE_MANIFESTACAO"


@dataclass
class ChainVerification:
    chain_id: str
    valid: bool
    length: int
    broken_sequence: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "chain_id": self.chain_id,
            "valid": self.valid,
            "length": self.length,
            "broken_sequence": self.broken_sequence,
            "error": self.error,
        }


def normalize_metadata(metadata: Optional[dict]) -> dict:
    """Forca tipos JSON (Decimal, datetime viram str) para o hash sobreviver ao banco"""
    return json.loads(json.dumps(metadata or {}, default=str))


def compute_event_hash(event: AuditEvent) -> str:
    payload = json.dumps(
        {
            "chain_id": event.chain_id,
            "sequence": event.sequence,
            "previous_hash": event.previous_hash,
            "action": event.action,
            "entity": event.entity,
            "entity_id": event.entity_id,
            "description": event.description,
            "metadata": normalize_metadata(event.metadata_),
            "created_at": event.created_at.isoformat() if event.created_at else None,
        },
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class AuditChain:
    """
    Grava e verifica cadeias de auditoria.

    Escritas na mesma cadeia sao serializadas por um lock em processo;
    a constraint (chain_id, sequence) cobre processos distintos e a
    colisao e refeita com a nova ponta da cadeia.
    """

    def __init__(self, store: AuditStore, max_retries: int = 3):
        self.store = store
        self.max_retries = max_retries
        # Lock some quando ninguem mais segura ou espera por ele
        self._locks = weakref.WeakValueDictionary()

    def _lock(self, chain_id: str) -> asyncio.Lock:
        lock = self._locks.get(chain_id)
        if lock is None:
            lock = self._locks[chain_id] = asyncio.Lock()
        return lock

    async def record(
        self,
        chain_id: str,
        action: AuditAction,
        description: str,
        entity_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> AuditEvent:
        """Anexa um evento ao fim da cadeia"""
        action = AuditAction(action).value
        async with self._lock(chain_id):
            for attempt in range(1, self.max_retries + 1):
                last = await self.store.last(chain_id)
                event = AuditEvent(
                    id=str(uuid.uuid4()),
                    chain_id=chain_id,
                    sequence=(last.sequence + 1) if last else 1,
                    previous_hash=last.hash if last else None,
                    action=action,
                    entity=AUDIT_ENTITY,
                    entity_id=entity_id or chain_id,
                    description=description,
                    metadata_=normalize_metadata(metadata),
                    created_at=utcnow(),
                )
                event.hash = compute_event_hash(event)

                try:
                    stored = await self.store.append(event)
                except AuditConflictError:
                    logger.warning(
                        f"[NFE-AUDIT] Conflito na cadeia {chain_id} "
                        f"(sequencia {event.sequence}), tentativa {attempt}"
                    )
                    continue

                logger.info(f"[NFE-AUDIT] {chain_id} #{stored.sequence} {action}")
                return stored

        raise AuditConflictError(f"Nao foi possivel registrar {action} na cadeia {chain_id}")

    async def events(self, chain_id: str) -> List[AuditEvent]:
        return await self.store.list_chain(chain_id)

    async def verify(self, chain_id: str) -> ChainVerification:
        """Recalcula hashes e ligacoes; informa a primeira sequencia quebrada"""
        events = await self.store.list_chain(chain_id)
        previous = None

        for expected_sequence, event in enumerate(events, start=1):
            error = None
            if event.sequence != expected_sequence:
                error = f"Sequencia {event.sequence} fora de ordem (esperada {expected_sequence})"
            elif event.previous_hash != (previous.hash if previous else None):
                error = "previous_hash nao corresponde ao evento anterior"
            elif compute_event_hash(event) != event.hash:
                error = "Hash nao confere com o conteudo do evento"

            if error:
                logger.error(f"[NFE-AUDIT] Cadeia {chain_id} violada em #{event.sequence}: {error}")
                return ChainVerification(chain_id, False, len(events), event.sequence, error)
            previous = event

        return ChainVerification(chain_id, True, len(events))
