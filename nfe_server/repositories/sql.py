"""
Stores SQLAlchemy (async)

Uma sessao por operacao, aberta a partir do async_sessionmaker injetado.
Mudancas de status da fila usam UPDATE ... WHERE status = :atual, de
modo que dois workers nunca pegam a mesma entrada.
"""
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from nfe_server.core.exceptions import AuditConflictError, NotFoundError, QueueError
from nfe_server.database import AsyncSessionLocal
from nfe_server.models import AuditEvent, Company, FiscalDocument, QueueEntry, QueueStatus
from nfe_server.utils.formatting import utcnow

logger = logging.getLogger(__name__)


class _SessionStore:
    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self.session_factory = session_factory or AsyncSessionLocal

    def session(self) -> AsyncSession:
        return self.session_factory()


class SqlCompanyStore(_SessionStore):
    async def add(self, company: Company) -> Company:
        async with self.session() as db:
            db.add(company)
            await db.commit()
            await db.refresh(company)
            return company

    async def get(self, company_id: str) -> Optional[Company]:
        async with self.session() as db:
            result = await db.execute(select(Company).where(Company.id == company_id))
            return result.scalar_one_or_none()


class SqlDocumentStore(_SessionStore):
    async def add(self, document: FiscalDocument) -> FiscalDocument:
        async with self.session() as db:
            db.add(document)
            await db.commit()
            await db.refresh(document)
            return document

    async def get(self, document_id: str) -> Optional[FiscalDocument]:
        async with self.session() as db:
            result = await db.execute(select(FiscalDocument).where(FiscalDocument.id == document_id))
            return result.scalar_one_or_none()

    async def get_by_access_key(self, access_key: str) -> Optional[FiscalDocument]:
        async with self.session() as db:
            result = await db.execute(
                select(FiscalDocument)
                .where(FiscalDocument.access_key == access_key)
                .order_by(FiscalDocument.created_at.desc())
            )
            return result.scalars().first()

    async def update(self, document_id: str, **fields) -> FiscalDocument:
        async with self.session() as db:
            result = await db.execute(select(FiscalDocument).where(FiscalDocument.id == document_id))
            document = result.scalar_one_or_none()
            if document is None:
                raise NotFoundError(f"Documento {document_id} nao encontrado")

            for name, value in fields.items():
                setattr(document, name, value)
            document.updated_at = utcnow()

            await db.commit()
            await db.refresh(document)
            return document


class SqlQueueStore(_SessionStore):
    async def add(self, entry: QueueEntry) -> QueueEntry:
        async with self.session() as db:
            db.add(entry)
            await db.commit()
            await db.refresh(entry)
            return entry

    async def get(self, entry_id: str) -> Optional[QueueEntry]:
        async with self.session() as db:
            result = await db.execute(select(QueueEntry).where(QueueEntry.id == entry_id))
            return result.scalar_one_or_none()

    @staticmethod
    def _stale(entry, stale_before: datetime):
        return and_(entry.status == QueueStatus.SENDING.value, entry.updated_at <= stale_before)

    async def due(self, now: datetime, limit: int, stale_before: Optional[datetime] = None) -> List[QueueEntry]:
        ready = and_(QueueEntry.status == QueueStatus.PENDING.value, QueueEntry.next_attempt_at <= now)
        if stale_before is not None:
            ready = or_(ready, self._stale(QueueEntry, stale_before))

        async with self.session() as db:
            result = await db.execute(
                select(QueueEntry)
                .where(ready)
                .order_by(QueueEntry.created_at, QueueEntry.id)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def claim(self, entry_id: str, now: datetime, stale_before: Optional[datetime] = None) -> Optional[QueueEntry]:
        other = aliased(QueueEntry)
        busy_filters = [
            other.id != QueueEntry.id,
            other.related_document_id == QueueEntry.related_document_id,
            other.status == QueueStatus.SENDING.value,
        ]
        claimable = QueueEntry.status == QueueStatus.PENDING.value
        if stale_before is not None:
            busy_filters.append(other.updated_at > stale_before)
            claimable = or_(claimable, self._stale(QueueEntry, stale_before))

        busy = select(other.id).where(*busy_filters).correlate(QueueEntry).exists()
        stmt = (
            update(QueueEntry)
            .where(
                QueueEntry.id == entry_id,
                claimable,
                ~busy,
            )
            .values(status=QueueStatus.SENDING.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )

        async with self.session() as db:
            try:
                result = await db.execute(stmt)
                await db.commit()
            except SQLAlchemyError as e:
                await db.rollback()
                raise QueueError(f"Falha ao reservar entrada {entry_id}: {e}") from e

            if result.rowcount != 1:
                return None

            fetched = await db.execute(select(QueueEntry).where(QueueEntry.id == entry_id))
            return fetched.scalar_one_or_none()

    async def transition(self, entry_id: str, from_status: str, to_status: str, **fields) -> bool:
        values = dict(fields, status=to_status, updated_at=utcnow())
        stmt = (
            update(QueueEntry)
            .where(QueueEntry.id == entry_id, QueueEntry.status == from_status)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        async with self.session() as db:
            try:
                result = await db.execute(stmt)
                await db.commit()
            except SQLAlchemyError as e:
                await db.rollback()
                raise QueueError(f"Falha ao atualizar entrada {entry_id}: {e}") from e
            return result.rowcount == 1

    async def list(self, status: Optional[str] = None, limit: int = 100) -> List[QueueEntry]:
        query = select(QueueEntry).order_by(QueueEntry.created_at, QueueEntry.id).limit(limit)
        if status:
            query = query.where(QueueEntry.status == status)
        async with self.session() as db:
            result = await db.execute(query)
            return list(result.scalars().all())


class SqlAuditStore(_SessionStore):
    async def last(self, chain_id: str) -> Optional[AuditEvent]:
        async with self.session() as db:
            result = await db.execute(
                select(AuditEvent)
                .where(AuditEvent.chain_id == chain_id)
                .order_by(AuditEvent.sequence.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def append(self, event: AuditEvent) -> AuditEvent:
        async with self.session() as db:
            db.add(event)
            try:
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                raise AuditConflictError(
                    f"Sequencia {event.sequence} ja registrada na cadeia {event.chain_id}"
                ) from e
            await db.refresh(event)
            return event

    async def list_chain(self, chain_id: str) -> List[AuditEvent]:
        async with self.session() as db:
            result = await db.execute(
                select(AuditEvent)
                .where(AuditEvent.chain_id == chain_id)
                .order_by(AuditEvent.sequence)
            )
            return list(result.scalars().all())


class SqlStores:
    """Conjunto completo de stores SQLAlchemy sobre uma mesma fabrica de sessoes"""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self.companies = SqlCompanyStore(session_factory)
        self.documents = SqlDocumentStore(session_factory)
        self.queue = SqlQueueStore(session_factory)
        self.audit = SqlAuditStore(session_factory)
