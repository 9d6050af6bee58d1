"""
NF-e Server - Contingency Queue Model
"""
import uuid
from sqlalchemy import Column, String, Integer, DateTime, Text, Index
import enum

from nfe_server.database import Base
from nfe_server.utils.formatting import utcnow


class QueueStatus(str, enum.Enum):
    """PENDING -> SENDING -> SENT | PENDING (backoff) | FAILED"""
    PENDING = "PENDING"
    SENDING = "SENDING"
    SENT = "SENT"
    FAILED = "FAILED"


class QueueEntry(Base):
    """NF-e assinada aguardando reenvio"""
    __tablename__ = "nfe_contingency_queue"
    __table_args__ = (
        Index("ix_nfe_queue_status_next_attempt", "status", "next_attempt_at"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    related_document_id = Column(String(36), index=True)
    company_id = Column(String(36), nullable=False)
    environment = Column(String(1), nullable=False)
    send_mode = Column(String(10), nullable=False, default="NORMAL")
    signed_xml = Column(Text, nullable=False)
    reason = Column(Text)

    status = Column(String(10), nullable=False, default=QueueStatus.PENDING.value)
    attempt_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text)
    next_attempt_at = Column(DateTime, nullable=False, default=utcnow)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    sent_at = Column(DateTime)

    def to_dict(self):
        return {
            "id": self.id,
            "related_document_id": self.related_document_id,
            "company_id": self.company_id,
            "environment": self.environment,
            "send_mode": self.send_mode,
            "reason": self.reason,
            "status": self.status,
            "attempt_count": self.attempt_count,
            "last_error": self.last_error,
            "next_attempt_at": self.next_attempt_at.isoformat() if self.next_attempt_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
        }
