"""
Interfaces de persistencia do emissor

Os servicos recebem estas interfaces no construtor. Ha duas
implementacoes: SQLAlchemy (producao) e memoria (testes).

As stores devolvem copias desacopladas: alterar um objeto devolvido nao
altera o registro; use update/transition.
"""
from datetime import datetime
from typing import List, Optional, Protocol

from nfe_server.models import AuditEvent, Company, FiscalDocument, QueueEntry


class CompanyStore(Protocol):
    async def add(self, company: Company) -> Company: ...

    async def get(self, company_id: str) -> Optional[Company]: ...


class DocumentStore(Protocol):
    async def add(self, document: FiscalDocument) -> FiscalDocument: ...

    async def get(self, document_id: str) -> Optional[FiscalDocument]: ...

    async def get_by_access_key(self, access_key: str) -> Optional[FiscalDocument]: ...

    async def update(self, document_id: str, **fields) -> FiscalDocument:
        """Raises NotFoundError"""
        ...


class QueueStore(Protocol):
    async def add(self, entry: QueueEntry) -> QueueEntry: ...

    async def get(self, entry_id: str) -> Optional[QueueEntry]: ...

    async def due(self, now: datetime, limit: int, stale_before: Optional[datetime] = None) -> List[QueueEntry]:
        """
        PENDING com next_attempt_at <= now, mais antigas primeiro. Com
        stale_before, inclui SENDING parado desde antes desse instante.
        """
        ...

    async def claim(self, entry_id: str, now: datetime, stale_before: Optional[datetime] = None) -> Optional[QueueEntry]:
        """
        PENDING -> SENDING de forma atomica (ou retoma um SENDING parado
        desde antes de stale_before). Devolve None se a entrada ja foi
        pega ou se outra entrada da mesma nota esta em SENDING ativo.
        """
        ...

    async def transition(self, entry_id: str, from_status: str, to_status: str, **fields) -> bool:
        """Compare-and-swap do status; False se o status atual difere"""
        ...

    async def list(self, status: Optional[str] = None, limit: int = 100) -> List[QueueEntry]: ...


class AuditStore(Protocol):
    async def last(self, chain_id: str) -> Optional[AuditEvent]: ...

    async def append(self, event: AuditEvent) -> AuditEvent:
        """Raises AuditConflictError se (chain_id, sequence) ja existe"""
        ...

    async def list_chain(self, chain_id: str) -> List[AuditEvent]: ...
