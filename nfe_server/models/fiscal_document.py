"""
NF-e Server - Fiscal Document Model
Estado persistido de cada NF-e emitida
"""
import uuid
from sqlalchemy import Column, String, Integer, DateTime, Text, Numeric, ForeignKey
import enum

from nfe_server.database import Base
from nfe_server.utils.formatting import utcnow


class FiscalDocumentStatus(str, enum.Enum):
    """Estados do ciclo de emissao"""
    BUILT = "BUILT"
    VALIDATED = "VALIDATED"
    SIGNED = "SIGNED"
    SUBMITTED = "SUBMITTED"
    AWAITING_RECEIPT = "AWAITING_RECEIPT"
    AUTHORIZED = "AUTHORIZED"
    REJECTED = "REJECTED"
    DENIED = "DENIED"
    CONTINGENCY = "CONTINGENCY"
    CANCELLED = "CANCELLED"


# Estados a partir dos quais nao ha nova transmissao
TERMINAL_STATUSES = {
    FiscalDocumentStatus.AUTHORIZED.value,
    FiscalDocumentStatus.REJECTED.value,
    FiscalDocumentStatus.DENIED.value,
    FiscalDocumentStatus.CANCELLED.value,
}


class FiscalDocument(Base):
    """NF-e modelo 55"""
    __tablename__ = "fiscal_documents"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    company_id = Column(String(36), ForeignKey("companies.id"), nullable=False, index=True)
    order_id = Column(String(64), index=True)

    # Identificacao
    access_key = Column(String(44), index=True)
    series = Column(Integer, nullable=False)
    number = Column(Integer, nullable=False)
    random_code = Column(String(8))
    environment = Column(String(1), nullable=False)
    emission_mode = Column(String(10), default="NORMAL")
    issued_at = Column(DateTime)
    total_amount = Column(Numeric(15, 2))

    # Situacao
    status = Column(String(20), default=FiscalDocumentStatus.BUILT.value, index=True)
    status_code = Column(Integer)
    status_message = Column(Text)

    # Protocolos
    receipt_number = Column(String(15))
    protocol_number = Column(String(15))
    authorized_at = Column(DateTime)
    cancel_protocol_number = Column(String(15))
    cancelled_at = Column(DateTime)
    correction_sequence = Column(Integer, default=0)

    # XML assinado e XML final (nfeProc)
    signed_xml = Column(Text)
    merged_xml = Column(Text)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self, include_xml: bool = False):
        data = {
            "id": self.id,
            "company_id": self.company_id,
            "order_id": self.order_id,
            "access_key": self.access_key,
            "series": self.series,
            "number": self.number,
            "environment": self.environment,
            "emission_mode": self.emission_mode,
            "status": self.status,
            "status_code": self.status_code,
            "status_message": self.status_message,
            "receipt_number": self.receipt_number,
            "protocol_number": self.protocol_number,
            "total_amount": str(self.total_amount) if self.total_amount is not None else None,
            "issued_at": self.issued_at.isoformat() if self.issued_at else None,
            "authorized_at": self.authorized_at.isoformat() if self.authorized_at else None,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_xml:
            data["signed_xml"] = self.signed_xml
            data["merged_xml"] = self.merged_xml
        return data
