from .nfe import (
    Address,
    Issuer,
    Recipient,
    ItemTaxes,
    LineItem,
    Payment,
    Installment,
    Billing,
    TechnicalResponsible,
    DownloadAuthorization,
    OrderData,
    EmissionRequest,
    EmissionResponse,
    FiscalDocumentResponse,
    CancelRequest,
    CorrectionRequest,
    InvalidationRequest,
    ManifestationRequest,
    EventResponse,
    ServiceStatusResponse,
    QueueProcessResponse,
    AccessKeyResponse,
)

__all__ = [
    "Address",
    "Issuer",
    "Recipient",
    "ItemTaxes",
    "LineItem",
    "Payment",
    "Installment",
    "Billing",
    "TechnicalResponsible",
    "DownloadAuthorization",
    "OrderData",
    "EmissionRequest",
    "EmissionResponse",
    "FiscalDocumentResponse",
    "CancelRequest",
    "CorrectionRequest",
    "InvalidationRequest",
    "ManifestationRequest",
    "EventResponse",
    "ServiceStatusResponse",
    "QueueProcessResponse",
    "AccessKeyResponse",
]
