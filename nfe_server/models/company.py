"""
NF-e Server - Company Model
Empresa emitente com endereco fiscal e certificado digital A1
"""
import uuid
from sqlalchemy import Column, String, Integer, DateTime, Text

from nfe_server.database import Base
from nfe_server.utils.formatting import utcnow


class Company(Base):
    """Empresa emitente"""
    __tablename__ = "companies"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    # Identificacao fiscal
    cnpj = Column(String(14), unique=True, nullable=False, index=True)
    legal_name = Column(String(60), nullable=False)
    trade_name = Column(String(60))
    state_registration = Column(String(14), nullable=False)  # IE
    tax_regime = Column(Integer, default=1)  # CRT: 1=Simples Nacional, 3=Regime Normal

    # Endereco
    street = Column(String(60), nullable=False)
    number = Column(String(60), default="S/N")
    complement = Column(String(60))
    district = Column(String(60), nullable=False)
    municipality_code = Column(String(7), nullable=False)  # IBGE
    municipality = Column(String(60), nullable=False)
    uf = Column(String(2), nullable=False)
    zip_code = Column(String(8), nullable=False)
    phone = Column(String(14))

    # Certificado digital A1
    certificate_path = Column(Text)
    certificate_password_encrypted = Column(Text)

    # Ambiente padrao (1=Producao, 2=Homologacao)
    environment = Column(String(1), default="2")

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def to_issuer(self):
        """Converte para o bloco emit da NF-e"""
        from nfe_server.schemas.nfe import Address, Issuer

        return Issuer(
            cnpj=self.cnpj,
            legal_name=self.legal_name,
            trade_name=self.trade_name,
            state_registration=self.state_registration,
            tax_regime=self.tax_regime or 1,
            address=Address(
                street=self.street,
                number=self.number or "S/N",
                complement=self.complement,
                district=self.district,
                municipality_code=self.municipality_code,
                municipality=self.municipality,
                uf=self.uf,
                zip_code=self.zip_code,
                phone=self.phone,
            ),
        )

    def to_dict(self):
        return {
            "id": self.id,
            "cnpj": self.cnpj,
            "legal_name": self.legal_name,
            "trade_name": self.trade_name,
            "uf": self.uf,
            "tax_regime": self.tax_regime,
            "environment": self.environment,
            "has_certificate": bool(self.certificate_path),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
