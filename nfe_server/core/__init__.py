from .config import settings, get_settings, Settings
from .exceptions import (
    NFeError,
    ValidationError,
    CertificateError,
    CertificateNotFoundError,
    CertificatePasswordError,
    CertificateMalformedError,
    CertificateExpiredError,
    CertificateTaxIdMismatchError,
    SignatureError,
    TransportError,
    AuthorityRejection,
    ReceiptPendingError,
    QueueError,
    AuditConflictError,
    NotFoundError,
)
from .security import encrypt_certificate_password, decrypt_certificate_password

__all__ = [
    "settings",
    "get_settings",
    "Settings",
    "NFeError",
    "ValidationError",
    "CertificateError",
    "CertificateNotFoundError",
    "CertificatePasswordError",
    "CertificateMalformedError",
    "CertificateExpiredError",
    "CertificateTaxIdMismatchError",
    "SignatureError",
    "TransportError",
    "AuthorityRejection",
    "ReceiptPendingError",
    "QueueError",
    "AuditConflictError",
    "NotFoundError",
    "encrypt_certificate_password",
    "decrypt_certificate_password",
]
