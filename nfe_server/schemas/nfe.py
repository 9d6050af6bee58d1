"""
NF-e Server - NF-e Schemas
Dados de entrada do pedido (origem ERP) e payloads da API
"""
from datetime import date, datetime
from decimal import Decimal
from typing import Optional, List

from pydantic import BaseModel, Field, model_validator


# =====================================================
# DADOS DO DOCUMENTO
# =====================================================

class Address(BaseModel):
    street: str = Field(..., max_length=60)
    number: str = Field("S/N", max_length=60)
    complement: Optional[str] = Field(None, max_length=60)
    district: str = Field(..., max_length=60)
    municipality_code: str = Field(..., min_length=7, max_length=7)
    municipality: str = Field(..., max_length=60)
    uf: str = Field(..., min_length=2, max_length=2)
    zip_code: str
    country_code: str = "1058"
    country: str = "BRASIL"
    phone: Optional[str] = None


class Issuer(BaseModel):
    cnpj: str
    legal_name: str = Field(..., max_length=60)
    trade_name: Optional[str] = Field(None, max_length=60)
    state_registration: str
    tax_regime: int = Field(1, description="CRT: 1=Simples Nacional, 2=Simples excesso, 3=Normal")
    address: Address


class Recipient(BaseModel):
    cnpj: Optional[str] = None
    cpf: Optional[str] = None
    name: str = Field(..., max_length=60)
    ie_indicator: str = Field("9", description="indIEDest: 1=Contribuinte, 2=Isento, 9=Nao contribuinte")
    state_registration: Optional[str] = None
    email: Optional[str] = None
    address: Optional[Address] = None

    @model_validator(mode="after")
    def _require_document(self):
        if not self.cnpj and not self.cpf:
            raise ValueError("Destinatario deve ter CNPJ ou CPF")
        return self


class ItemTaxes(BaseModel):
    icms_origin: str = "0"
    icms_cst: str = Field("00", pattern="^(00|40|41|50)$", description="Regime normal: 00=Tributada, 40=Isenta, 41=Nao tributada, 50=Suspensao")
    icms_csosn: str = "102"
    icms_rate: Decimal = Decimal("0")
    ipi_cst: str = "99"
    ipi_rate: Decimal = Decimal("0")
    ipi_framework_code: str = "999"  # cEnq
    pis_cst: Optional[str] = None
    pis_rate: Decimal = Decimal("0")
    cofins_cst: Optional[str] = None
    cofins_rate: Decimal = Decimal("0")


class LineItem(BaseModel):
    code: str = Field(..., max_length=60)
    description: str = Field(..., max_length=120)
    ncm: str = "00000000"
    cfop: str = "5102"
    unit: str = Field("UN", max_length=6)
    quantity: Decimal = Field(..., gt=0)
    unit_price: Decimal = Field(..., ge=0)
    gtin: str = "SEM GTIN"
    cest: Optional[str] = None
    discount: Decimal = Decimal("0")
    additional_info: Optional[str] = Field(None, max_length=500)
    taxes: ItemTaxes = Field(default_factory=ItemTaxes)


class Payment(BaseModel):
    method: str = Field("01", description="tPag: 01=Dinheiro, 03=Cartao credito, 15=Boleto, 17=PIX, 90=Sem pagamento")
    amount: Optional[Decimal] = None  # None = saldo restante da nota
    indicator: Optional[str] = None  # indPag: 0=a vista, 1=a prazo


class Installment(BaseModel):
    number: str
    due_date: date
    amount: Decimal


class Billing(BaseModel):
    invoice_number: str
    original_amount: Decimal
    discount_amount: Decimal = Decimal("0")
    net_amount: Decimal
    installments: List[Installment] = []


class TechnicalResponsible(BaseModel):
    cnpj: str
    contact: str
    email: str
    phone: str


class DownloadAuthorization(BaseModel):
    cnpj: Optional[str] = None
    cpf: Optional[str] = None


class OrderData(BaseModel):
    """Pedido de venda que origina a NF-e"""
    order_id: Optional[str] = None
    series: int = Field(1, ge=0, le=999)
    number: int = Field(..., ge=1, le=999999999)
    nature_of_operation: str = Field("VENDA DE MERCADORIA", max_length=60)
    recipient: Recipient
    items: List[LineItem] = Field(..., min_length=1)
    payments: List[Payment] = Field(default_factory=lambda: [Payment()])
    destination_indicator: str = "1"  # idDest: 1=interna, 2=interestadual, 3=exterior
    final_consumer: str = "1"  # indFinal
    presence_indicator: str = "1"  # indPres
    freight_mode: str = "9"  # modFrete: 9=sem frete
    freight_amount: Decimal = Decimal("0")
    insurance_amount: Decimal = Decimal("0")
    other_amount: Decimal = Decimal("0")
    billing: Optional[Billing] = None
    additional_info: Optional[str] = Field(None, max_length=5000)
    fiscal_info: Optional[str] = Field(None, max_length=2000)
    technical_responsible: Optional[TechnicalResponsible] = None
    authorized_downloaders: List[DownloadAuthorization] = []


# =====================================================
# API
# =====================================================

class EmissionRequest(BaseModel):
    company_id: str
    environment: Optional[str] = Field(None, pattern="^[12]$")
    order: OrderData


class EmissionResponse(BaseModel):
    outcome: str
    document_id: str
    access_key: Optional[str] = None
    status: str
    status_code: Optional[int] = None
    status_message: Optional[str] = None
    protocol_number: Optional[str] = None
    send_mode: Optional[str] = None
    queue_entry_id: Optional[str] = None
    warnings: List[str] = []


class FiscalDocumentResponse(BaseModel):
    id: str
    company_id: str
    order_id: Optional[str] = None
    access_key: Optional[str] = None
    series: int
    number: int
    environment: str
    emission_mode: Optional[str] = None
    status: str
    status_code: Optional[int] = None
    status_message: Optional[str] = None
    receipt_number: Optional[str] = None
    protocol_number: Optional[str] = None
    authorized_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class CancelRequest(BaseModel):
    justification: str = Field(..., min_length=15, max_length=255)


class CorrectionRequest(BaseModel):
    correction: str = Field(..., min_length=15, max_length=1000)


class InvalidationRequest(BaseModel):
    company_id: str
    environment: Optional[str] = Field(None, pattern="^[12]$")
    series: int = Field(..., ge=0, le=999)
    number_from: int = Field(..., ge=1, le=999999999)
    number_to: int = Field(..., ge=1, le=999999999)
    justification: str = Field(..., min_length=15, max_length=255)


class ManifestationRequest(BaseModel):
    company_id: str
    environment: Optional[str] = Field(None, pattern="^[12]$")
    access_key: str = Field(..., min_length=44, max_length=44)
    event_type: str
    justification: Optional[str] = None


class EventResponse(BaseModel):
    success: bool
    status_code: Optional[int] = None
    status_message: Optional[str] = None
    protocol_number: Optional[str] = None
    event_status_code: Optional[int] = None
    event_status_message: Optional[str] = None


class ServiceStatusResponse(BaseModel):
    online: bool
    status_code: Optional[int] = None
    status_message: Optional[str] = None
    average_time_seconds: Optional[int] = None


class QueueProcessResponse(BaseModel):
    processed: int
    sent: int
    rescheduled: int
    failed: int
    skipped: int


class AccessKeyResponse(BaseModel):
    access_key: str
    valid: bool
    error: Optional[str] = None
    parts: Optional[dict] = None
