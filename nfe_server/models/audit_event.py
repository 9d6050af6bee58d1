"""
NF-e Server - Audit Event Model
Trilha de auditoria encadeada por hash (somente insercao)
"""
import uuid
from sqlalchemy import Column, String, Integer, DateTime, Text, JSON, UniqueConstraint, Index

from nfe_server.database import Base
from nfe_server.utils.formatting import utcnow


class AuditEvent(Base):
    __tablename__ = "nfe_audit_events"
    __table_args__ = (
        UniqueConstraint("chain_id", "sequence", name="uq_nfe_audit_chain_sequence"),
        Index("ix_nfe_audit_chain_sequence", "chain_id", "sequence"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    chain_id = Column(String(64), nullable=False)
    sequence = Column(Integer, nullable=False)

    action = Column(String(64), nullable=False)
    entity = Column(String(32), nullable=False, default="NFe")
    entity_id = Column(String(64))
    description = Column(Text)
    metadata_ = Column("metadata", JSON, default=dict)

    hash = Column(String(64), nullable=False)
    previous_hash = Column(String(64))
    created_at = Column(DateTime, nullable=False, default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "chain_id": self.chain_id,
            "sequence": self.sequence,
            "action": self.action,
            "entity": self.entity,
            "entity_id": self.entity_id,
            "description": self.description,
            "metadata": self.metadata_ or {},
            "hash": self.hash,
            "previous_hash": self.previous_hash,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
