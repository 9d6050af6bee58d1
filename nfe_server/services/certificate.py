"""
Certificado digital A1 (PKCS#12)

Extrai chave privada e certificado em PEM e confere validade e CNPJ.
Senha incorreta, arquivo inexistente e container corrompido geram
erros distintos: nenhum deles deve ser reenviado automaticamente.
"""
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from cryptography import x509
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.hazmat.primitives.serialization import Encoding, PrivateFormat, NoEncryption
from cryptography.x509.oid import ExtensionOID

from nfe_server.core.exceptions import (
    CertificateError,
    CertificateExpiredError,
    CertificateMalformedError,
    CertificateNotFoundError,
    CertificatePasswordError,
    CertificateTaxIdMismatchError,
)
from nfe_server.core.security import decrypt_certificate_password
from nfe_server.utils.formatting import only_digits

logger = logging.getLogger(__name__)

# ICP-Brasil: otherName com o CNPJ da pessoa juridica
OID_ICP_BRASIL_CNPJ = "2.16.76.1.3.3"


@dataclass(frozen=True)
class CertificateBundle:
    """Par chave/certificado em PEM. Tratado como valor imutavel."""
    private_key_pem: bytes
    certificate_pem: bytes

    @property
    def certificate(self) -> x509.Certificate:
        return x509.load_pem_x509_certificate(self.certificate_pem)


@dataclass(frozen=True)
class CertificateValidation:
    valid: bool
    subject_tax_id: Optional[str] = None
    not_after: Optional[datetime] = None
    error: Optional[str] = None
    reason: Optional[str] = None  # expired, not_yet_valid, tax_id_missing, tax_id_mismatch, invalid


def _looks_like_der_sequence(data: bytes) -> bool:
    """Confere o cabecalho DER (SEQUENCE + tamanho) do container"""
    if len(data) < 2 or data[0] != 0x30:
        return False
    first = data[1]
    if first < 0x80:
        return first + 2 == len(data)
    size_len = first & 0x7F
    if size_len == 0 or size_len > 4 or len(data) < 2 + size_len:
        return False
    length = int.from_bytes(data[2:2 + size_len], "big")
    return length + 2 + size_len == len(data)


class CertificateLoader:
    """Carrega e valida certificados A1"""

    def load(self, pkcs12_path: Union[str, Path], password: Optional[str]) -> CertificateBundle:
        path = Path(pkcs12_path)
        if not path.is_file():
            raise CertificateNotFoundError(f"Certificado nao encontrado: {path}")
        return self.load_bytes(path.read_bytes(), password)

    def load_bytes(self, data: bytes, password: Optional[str]) -> CertificateBundle:
        try:
            private_key, certificate, _chain = pkcs12.load_key_and_certificates(
                data, password.encode() if password else None
            )
        except ValueError as e:
            # cryptography usa a mesma excecao para senha errada e dados invalidos
            if _looks_like_der_sequence(data):
                raise CertificatePasswordError("Senha do certificado incorreta") from e
            raise CertificateMalformedError(f"Arquivo PKCS#12 invalido: {e}") from e

        if private_key is None or certificate is None:
            raise CertificateMalformedError("Certificado sem chave privada ou sem certificado")

        bundle = CertificateBundle(
            private_key_pem=private_key.private_bytes(
                Encoding.PEM, PrivateFormat.PKCS8, NoEncryption()
            ),
            certificate_pem=certificate.public_bytes(Encoding.PEM),
        )
        logger.info(f"[NFE-CERT] Certificado carregado: {certificate.subject.rfc4514_string()}")
        return bundle

    def validate(
        self,
        certificate_pem: bytes,
        expected_tax_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CertificateValidation:
        try:
            certificate = x509.load_pem_x509_certificate(certificate_pem)
        except ValueError as e:
            return CertificateValidation(False, error=f"Certificado invalido: {e}", reason="invalid")

        now = now or datetime.now(timezone.utc)
        not_before = certificate.not_valid_before_utc
        not_after = certificate.not_valid_after_utc
        tax_id = extract_tax_id(certificate)

        if now > not_after:
            return CertificateValidation(
                False, tax_id, not_after,
                f"Certificado expirado em {not_after.strftime('%d/%m/%Y')}",
                "expired",
            )
        if now < not_before:
            return CertificateValidation(
                False, tax_id, not_after,
                f"Certificado valido somente a partir de {not_before.strftime('%d/%m/%Y')}",
                "not_yet_valid",
            )

        expected = only_digits(expected_tax_id)
        if expected:
            if not tax_id:
                return CertificateValidation(
                    False, None, not_after, "CNPJ nao encontrado no certificado", "tax_id_missing"
                )
            if tax_id != expected:
                return CertificateValidation(
                    False, tax_id, not_after,
                    f"CNPJ do certificado ({tax_id}) diferente do emitente ({expected})",
                    "tax_id_mismatch",
                )

        return CertificateValidation(True, tax_id, not_after)

    def ensure_valid(
        self,
        bundle: CertificateBundle,
        expected_tax_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CertificateValidation:
        """Como validate, mas lanca o CertificateError correspondente"""
        result = self.validate(bundle.certificate_pem, expected_tax_id, now)
        if result.valid:
            return result

        logger.error(f"[NFE-CERT] Certificado recusado: {result.error}")
        if result.reason == "expired":
            raise CertificateExpiredError(result.error)
        if result.reason in ("tax_id_mismatch", "tax_id_missing"):
            raise CertificateTaxIdMismatchError(result.error)
        raise CertificateError(result.error)


def extract_tax_id(certificate: x509.Certificate) -> Optional[str]:
    """CNPJ do titular: otherName ICP-Brasil ou sequencia de 14 digitos no subject"""
    try:
        san = certificate.extensions.get_extension_for_oid(ExtensionOID.SUBJECT_ALTERNATIVE_NAME)
        for name in san.value:
            if isinstance(name, x509.OtherName) and name.type_id.dotted_string == OID_ICP_BRASIL_CNPJ:
                match = re.search(rb"\d{14}", name.value)
                if match:
                    return match.group().decode()
    except x509.ExtensionNotFound:
        pass

    for attribute in certificate.subject:
        match = re.search(r"\d{14}", str(attribute.value))
        if match:
            return match.group()
    return None


def load_company_credentials(
    company,
    loader: Optional[CertificateLoader] = None,
    now: Optional[datetime] = None,
) -> CertificateBundle:
    """
    Carrega o A1 cadastrado para a empresa e confere validade e CNPJ.

    Raises:
        CertificateError: sem certificado, senha invalida, vencido ou de outro CNPJ
    """
    if not company.certificate_path:
        raise CertificateNotFoundError(f"Empresa {company.cnpj} sem certificado digital cadastrado")

    loader = loader or CertificateLoader()
    password = decrypt_certificate_password(company.certificate_password_encrypted)
    bundle = loader.load(company.certificate_path, password)
    loader.ensure_valid(bundle, company.cnpj, now)
    return bundle
