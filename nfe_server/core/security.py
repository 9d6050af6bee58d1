"""
NF-e Server - Security
Criptografia em repouso das senhas dos certificados digitais
"""
import hashlib
import base64
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from .config import settings
from .exceptions import CertificatePasswordError


def _fernet(secret_key: Optional[str] = None) -> Fernet:
    """Deriva a chave Fernet a partir do SECRET_KEY"""
    secret = secret_key or settings.SECRET_KEY
    key = base64.urlsafe_b64encode(hashlib.sha256(secret.encode()).digest())
    return Fernet(key)


def encrypt_certificate_password(password: str, secret_key: Optional[str] = None) -> str:
    """Criptografa a senha do certificado para gravacao no banco"""
    return _fernet(secret_key).encrypt(password.encode()).decode()


def decrypt_certificate_password(encrypted_password: str, secret_key: Optional[str] = None) -> str:
    """
    Descriptografa a senha do certificado.

    Raises:
        CertificatePasswordError: token invalido ou SECRET_KEY diferente
    """
    if not encrypted_password:
        raise CertificatePasswordError("Senha do certificado nao cadastrada")
    try:
        return _fernet(secret_key).decrypt(encrypted_password.encode()).decode()
    except InvalidToken as e:
        raise CertificatePasswordError(
            "Nao foi possivel descriptografar a senha do certificado"
        ) from e
