"""
NF-e Server - Exceptions

Hierarquia de erros do ciclo de emissao. Cada classe indica ao chamador
se o erro pode ser recuperado (reenvio, contingencia) ou se exige
intervencao do operador.
"""
from typing import Optional, List


class NFeError(Exception):
    """Erro base do servidor de NF-e"""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(NFeError):
    """XML ou dados de entrada invalidos. Nunca e reenviado."""

    def __init__(
        self,
        message: str,
        errors: Optional[List[str]] = None,
        warnings: Optional[List[str]] = None,
        details: Optional[dict] = None
    ):
        super().__init__(message, details)
        self.errors = list(errors or [])
        self.warnings = list(warnings or [])

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["errors"] = self.errors
        data["warnings"] = self.warnings
        return data


class CertificateError(NFeError):
    """Problema com o certificado digital A1 (requer operador)"""


class CertificateNotFoundError(CertificateError):
    """Arquivo .pfx/.p12 inexistente"""


class CertificatePasswordError(CertificateError):
    """Senha do certificado incorreta (ou impossivel de descriptografar)"""


class CertificateMalformedError(CertificateError):
    """Container PKCS#12 corrompido ou sem chave/certificado"""


class CertificateExpiredError(CertificateError):
    """Certificado fora do periodo de validade"""


class CertificateTaxIdMismatchError(CertificateError):
    """CNPJ do certificado difere do CNPJ do emitente"""


class SignatureError(NFeError):
    """Falha ao assinar o XML (defeito de montagem, nao e reenviado)"""


class TransportError(NFeError):
    """
    Falha de comunicacao com a SEFAZ.

    `retryable` e definido no ponto de origem do erro: timeouts, DNS,
    conexao recusada, HTTP 5xx e servico paralisado podem ser reenviados
    (e disparam a contingencia SVC); falhas de TLS e HTTP 4xx nao.
    """

    def __init__(
        self,
        message: str,
        retryable: bool = True,
        status_code: Optional[int] = None,
        details: Optional[dict] = None
    ):
        super().__init__(message, details)
        self.retryable = retryable
        self.status_code = status_code

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["retryable"] = self.retryable
        data["status_code"] = self.status_code
        return data


class AuthorityRejection(NFeError):
    """Resposta valida da SEFAZ com cStat de rejeicao/denegacao"""

    def __init__(self, status_code: int, message: str, details: Optional[dict] = None):
        super().__init__(f"Rejeicao {status_code}: {message}", details)
        self.status_code = status_code
        self.reason = message

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["status_code"] = self.status_code
        data["reason"] = self.reason
        return data


class ReceiptPendingError(NFeError):
    """Lote recebido mas ainda em processamento apos todas as consultas"""

    def __init__(self, receipt_number: str, document_id: Optional[str] = None):
        super().__init__(
            f"Lote {receipt_number} ainda em processamento na SEFAZ",
            {"receipt_number": receipt_number, "document_id": document_id}
        )
        self.receipt_number = receipt_number
        self.document_id = document_id


class QueueError(NFeError):
    """Falha de persistencia na fila de contingencia"""


class AuditConflictError(NFeError):
    """Sequencia ja utilizada na cadeia de auditoria (escrita concorrente)"""


class NotFoundError(NFeError):
    """Registro inexistente (empresa, documento, entrada de fila)"""
