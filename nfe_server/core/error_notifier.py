"""
NF-e Server - Error Notification System
Envia emails quando erros que exigem operador ocorrem (certificado, fila)
"""
import logging
import smtplib
import threading
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from datetime import datetime, timezone
from typing import Optional

from .config import settings

logger = logging.getLogger(__name__)

# Cache para evitar spam de emails (mesmo erro em sequencia)
_error_cache = {}
_CACHE_TTL_SECONDS = 300  # 5 minutos entre emails do mesmo erro


def _get_error_key(error_type: str, error_msg: str) -> str:
    """Gera chave unica para o erro"""
    return f"{error_type}:{error_msg[:100]}"


def _should_send_notification(error_key: str) -> bool:
    """Verifica se deve enviar notificacao (evita spam)"""
    now = datetime.now(timezone.utc)

    if error_key in _error_cache:
        last_sent = _error_cache[error_key]
        if (now - last_sent).total_seconds() < _CACHE_TTL_SECONDS:
            return False

    _error_cache[error_key] = now
    return True


def _render_body(error_type: str, error_message: str, context: dict) -> str:
    timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
    rows = "".join(
        f"<tr><td><b>{label}</b></td><td>{value}</td></tr>"
        for label, value in context.items()
        if value
    )
    return f"""
    <html>
    <body style="font-family: Arial, sans-serif;">
        <h2 style="color: #991b1b;">Falha no emissor de NF-e: {error_type}</h2>
        <p>{error_message}</p>
        <table cellpadding="4">
            <tr><td><b>Data/Hora</b></td><td>{timestamp}</td></tr>
            {rows}
        </table>
        <p style="font-size: 11px; color: #6b7280;">
            Nenhum reenvio automatico sera feito ate a intervencao do operador.
        </p>
    </body>
    </html>
    """


def send_error_notification(
    error_type: str,
    error_message: str,
    error_details: Optional[str] = None,
    company_id: Optional[str] = None,
    document_id: Optional[str] = None,
    queue_entry_id: Optional[str] = None,
):
    """
    Envia email de notificacao de erro.

    Args:
        error_type: Tipo do erro (ex: "NFE_CERTIFICATE_ERROR", "NFE_QUEUE_ERROR")
        error_message: Mensagem resumida do erro
        error_details: Detalhes tecnicos
        company_id: Empresa emitente afetada
        document_id: Documento fiscal afetado
        queue_entry_id: Entrada da fila de contingencia afetada
    """
    if not settings.ERROR_NOTIFICATION_ENABLED:
        return

    if not settings.SMTP_USER or not settings.SMTP_PASSWORD:
        logger.warning("SMTP nao configurado - notificacao de erro nao enviada")
        return

    error_key = _get_error_key(error_type, error_message)
    if not _should_send_notification(error_key):
        logger.debug(f"Notificacao de erro suprimida (spam protection): {error_key}")
        return

    try:
        msg = MIMEMultipart('alternative')
        msg['Subject'] = f"[NF-e ERRO] {error_type}: {error_message[:50]}"
        msg['From'] = f"{settings.SMTP_FROM_NAME} <{settings.SMTP_FROM_EMAIL}>"
        msg['To'] = settings.ERROR_NOTIFICATION_EMAIL

        html_body = _render_body(error_type, error_message, {
            "Empresa": company_id,
            "Documento": document_id,
            "Entrada da fila": queue_entry_id,
            "Detalhes": (error_details or "")[:2000],
        })
        msg.attach(MIMEText(html_body, 'html'))

        with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT) as server:
            if settings.SMTP_TLS:
                server.starttls()
            server.login(settings.SMTP_USER, settings.SMTP_PASSWORD)
            server.send_message(msg)

        logger.info(f"Notificacao de erro enviada: {error_type}")

    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Falha ao enviar notificacao de erro: {e}")


def notify_error_sync(
    error_type: str,
    error_message: str,
    error_details: Optional[str] = None,
    **kwargs
):
    """
    Dispara a notificacao em thread separada para nao bloquear
    o worker nem o ciclo de emissao.
    """
    def _send():
        send_error_notification(
            error_type=error_type,
            error_message=error_message,
            error_details=error_details,
            **kwargs
        )

    thread = threading.Thread(target=_send, daemon=True)
    thread.start()
