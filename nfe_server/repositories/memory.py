"""
Stores em memoria

Mesma semantica das stores SQLAlchemy (copias desacopladas, status com
compare-and-swap, sequencia unica por cadeia). Usadas nos testes.
"""
import asyncio
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import inspect

from nfe_server.core.exceptions import AuditConflictError, NotFoundError
from nfe_server.models import AuditEvent, Company, FiscalDocument, QueueEntry, QueueStatus
from nfe_server.utils.formatting import utcnow


def clone(obj):
    """Copia as colunas mapeadas para uma nova instancia transiente"""
    mapper = inspect(type(obj))
    return type(obj)(**{attr.key: getattr(obj, attr.key) for attr in mapper.column_attrs})


class MemoryCompanyStore:
    def __init__(self):
        self._rows: Dict[str, Company] = {}

    async def add(self, company: Company) -> Company:
        self._rows[company.id] = clone(company)
        return clone(company)

    async def get(self, company_id: str) -> Optional[Company]:
        row = self._rows.get(company_id)
        return clone(row) if row else None


class MemoryDocumentStore:
    def __init__(self):
        self._rows: Dict[str, FiscalDocument] = {}

    async def add(self, document: FiscalDocument) -> FiscalDocument:
        self._rows[document.id] = clone(document)
        return clone(document)

    async def get(self, document_id: str) -> Optional[FiscalDocument]:
        row = self._rows.get(document_id)
        return clone(row) if row else None

    async def get_by_access_key(self, access_key: str) -> Optional[FiscalDocument]:
        for row in self._rows.values():
            if row.access_key == access_key:
                return clone(row)
        return None

    async def update(self, document_id: str, **fields) -> FiscalDocument:
        row = self._rows.get(document_id)
        if row is None:
            raise NotFoundError(f"Documento {document_id} nao encontrado")
        for name, value in fields.items():
            setattr(row, name, value)
        row.updated_at = utcnow()
        return clone(row)


class MemoryQueueStore:
    def __init__(self):
        self._rows: Dict[str, QueueEntry] = {}
        self._lock = asyncio.Lock()
        # Permite simular falha de persistencia nos testes
        self.fail_on_add: Optional[Exception] = None

    async def add(self, entry: QueueEntry) -> QueueEntry:
        if self.fail_on_add is not None:
            raise self.fail_on_add
        async with self._lock:
            self._rows[entry.id] = clone(entry)
        return clone(entry)

    async def get(self, entry_id: str) -> Optional[QueueEntry]:
        row = self._rows.get(entry_id)
        return clone(row) if row else None

    @staticmethod
    def _stale(row: QueueEntry, stale_before: Optional[datetime]) -> bool:
        return (
            stale_before is not None
            and row.status == QueueStatus.SENDING.value
            and row.updated_at <= stale_before
        )

    async def due(self, now: datetime, limit: int, stale_before: Optional[datetime] = None) -> List[QueueEntry]:
        rows = [
            row for row in self._rows.values()
            if (row.status == QueueStatus.PENDING.value and row.next_attempt_at <= now)
            or self._stale(row, stale_before)
        ]
        rows.sort(key=lambda row: (row.created_at, row.id))
        return [clone(row) for row in rows[:limit]]

    async def claim(self, entry_id: str, now: datetime, stale_before: Optional[datetime] = None) -> Optional[QueueEntry]:
        async with self._lock:
            row = self._rows.get(entry_id)
            if row is None:
                return None
            if row.status != QueueStatus.PENDING.value and not self._stale(row, stale_before):
                return None
            if row.related_document_id and any(
                other.id != row.id
                and other.related_document_id == row.related_document_id
                and other.status == QueueStatus.SENDING.value
                and not self._stale(other, stale_before)
                for other in self._rows.values()
            ):
                return None
            row.status = QueueStatus.SENDING.value
            row.updated_at = now
            return clone(row)

    async def transition(self, entry_id: str, from_status: str, to_status: str, **fields) -> bool:
        async with self._lock:
            row = self._rows.get(entry_id)
            if row is None or row.status != from_status:
                return False
            row.status = to_status
            for name, value in fields.items():
                setattr(row, name, value)
            row.updated_at = utcnow()
            return True

    async def list(self, status: Optional[str] = None, limit: int = 100) -> List[QueueEntry]:
        rows = [row for row in self._rows.values() if status is None or row.status == status]
        rows.sort(key=lambda row: (row.created_at, row.id))
        return [clone(row) for row in rows[:limit]]


class MemoryAuditStore:
    def __init__(self):
        self._chains: Dict[str, List[AuditEvent]] = {}

    async def last(self, chain_id: str) -> Optional[AuditEvent]:
        chain = self._chains.get(chain_id)
        return clone(chain[-1]) if chain else None

    async def append(self, event: AuditEvent) -> AuditEvent:
        chain = self._chains.setdefault(event.chain_id, [])
        if any(existing.sequence == event.sequence for existing in chain):
            raise AuditConflictError(
                f"Sequencia {event.sequence} ja registrada na cadeia {event.chain_id}"
            )
        chain.append(clone(event))
        chain.sort(key=lambda row: row.sequence)
        return clone(event)

    async def list_chain(self, chain_id: str) -> List[AuditEvent]:
        return [clone(row) for row in self._chains.get(chain_id, [])]


class MemoryStores:
    """Conjunto completo de stores em memoria"""

    def __init__(self):
        self.companies = MemoryCompanyStore()
        self.documents = MemoryDocumentStore()
        self.queue = MemoryQueueStore()
        self.audit = MemoryAuditStore()
