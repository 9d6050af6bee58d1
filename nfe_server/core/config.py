"""
NF-e Server - Configuration
"""
from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Dict, Optional
import secrets
from pathlib import Path
from dotenv import load_dotenv

# Carrega .env com override para sobrescrever variáveis do sistema
# Isso é necessário porque pode haver DATABASE_URL global no sistema
env_file = Path(__file__).parent.parent.parent / ".env"
if env_file.exists():
    load_dotenv(env_file, override=True)


class Settings(BaseSettings):
    # App
    APP_NAME: str = "NF-e Server"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8080

    # Database (accepts DATABASE_URL or NFE_DATABASE_URL)
    DATABASE_URL: Optional[str] = None
    NFE_DATABASE_URL: str = "sqlite+aiosqlite:///./nfe_server.db"

    @property
    def db_url(self) -> str:
        """Returns DATABASE_URL if set, otherwise NFE_DATABASE_URL"""
        return self.DATABASE_URL or self.NFE_DATABASE_URL

    # Security (chave usada para criptografar as senhas dos certificados)
    SECRET_KEY: str = secrets.token_urlsafe(32)

    # CORS
    CORS_ORIGINS: list = ["*"]

    # Email Settings (SMTP)
    SMTP_HOST: str = "smtp.gmail.com"
    SMTP_PORT: int = 587
    SMTP_USER: Optional[str] = None
    SMTP_PASSWORD: Optional[str] = None
    SMTP_FROM_EMAIL: str = "noreply@nfe-server.local"
    SMTP_FROM_NAME: str = "NF-e Server"
    SMTP_TLS: bool = True

    # Notificacao de erros criticos (certificado, fila)
    ERROR_NOTIFICATION_ENABLED: bool = False
    ERROR_NOTIFICATION_EMAIL: str = "fiscal@nfe-server.local"

    # NF-e - ambiente e emitente
    NFE_DEFAULT_ENVIRONMENT: str = "2"  # 1=Producao, 2=Homologacao
    NFE_MODEL: str = "55"
    NFE_VERPROC: str = "NFE-SERVER 1.0"

    # NF-e - transporte SOAP
    NFE_SOAP_VERSION: str = "1.1"
    NFE_SOAP_TIMEOUT: float = 30.0
    NFE_AUTHORIZATION_TIMEOUT: float = 60.0
    NFE_VERIFY_SSL: bool = True
    NFE_CA_BUNDLE: Optional[str] = None
    NFE_SYNC_AUTHORIZATION: bool = True
    NFE_HEALTH_CHECK_BEFORE_SEND: bool = True

    # NF-e - contingencia SVC
    NFE_FALLBACK_ENABLED: bool = True
    NFE_FALLBACK_MODE: Optional[str] = None  # SVC-AN / SVC-RS (padrao: definido pela UF)
    NFE_CONTINGENCY_JUSTIFICATION: str = "Indisponibilidade do servico de autorizacao da SEFAZ de origem"

    # NF-e - consulta de recibo
    NFE_RECEIPT_POLL_ATTEMPTS: int = 5
    NFE_RECEIPT_POLL_INITIAL_DELAY: float = 3.0

    # NF-e - fila de contingencia
    NFE_QUEUE_BATCH_SIZE: int = 10
    NFE_QUEUE_AUTHORITY_BACKOFF_MINUTES: int = 15
    NFE_QUEUE_ERROR_BACKOFF_MINUTES: int = 30
    NFE_QUEUE_MAX_ATTEMPTS: int = 50  # 0 = sem limite
    NFE_QUEUE_SENDING_LEASE_MINUTES: int = 20  # SENDING mais antigo que isso volta a ser elegivel
    NFE_WORKER_AUTOSTART: bool = False
    NFE_WORKER_INTERVAL_SECONDS: int = 300

    # NF-e - eventos
    NFE_CANCEL_WINDOW_HOURS: int = 24

    # NF-e - schemas XSD (PL_009 / PL_010)
    NFE_XSD_DIR: str = "schemas/nfe"

    # NF-e - URLs alternativas (sobrescrevem a tabela padrao)
    # NFE_SERVICE_URLS vale para o modo NORMAL: {"NfeAutorizacao": "https://..."}
    NFE_SERVICE_URLS: Dict[str, str] = {}
    NFE_SVC_AN_AUTORIZACAO_URL: Optional[str] = None
    NFE_SVC_AN_RET_AUTORIZACAO_URL: Optional[str] = None
    NFE_SVC_AN_STATUS_SERVICO_URL: Optional[str] = None
    NFE_SVC_RS_AUTORIZACAO_URL: Optional[str] = None
    NFE_SVC_RS_RET_AUTORIZACAO_URL: Optional[str] = None
    NFE_SVC_RS_STATUS_SERVICO_URL: Optional[str] = None

    @property
    def svc_overrides(self) -> dict:
        """URLs de contingencia definidas via ambiente, por modo e servico"""
        return {
            "SVC-AN": {
                "NfeAutorizacao": self.NFE_SVC_AN_AUTORIZACAO_URL,
                "NfeRetAutorizacao": self.NFE_SVC_AN_RET_AUTORIZACAO_URL,
                "NfeStatusServico": self.NFE_SVC_AN_STATUS_SERVICO_URL,
            },
            "SVC-RS": {
                "NfeAutorizacao": self.NFE_SVC_RS_AUTORIZACAO_URL,
                "NfeRetAutorizacao": self.NFE_SVC_RS_RET_AUTORIZACAO_URL,
                "NfeStatusServico": self.NFE_SVC_RS_STATUS_SERVICO_URL,
            },
        }

    class Config:
        extra = "ignore"
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
