"""
NF-e Server - Main Application
Emissor de NF-e modelo 55 com contingencia SVC e fila offline
"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from nfe_server.core import settings
from nfe_server.core.exceptions import (
    AuthorityRejection,
    CertificateError,
    NFeError,
    NotFoundError,
    ReceiptPendingError,
    TransportError,
    ValidationError,
)
from nfe_server.database import init_db
from nfe_server.api import nfe_router, limiter
from nfe_server.api.nfe import get_services
from nfe_server.services.worker import run_worker_loop

# Rate limiting
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle do aplicativo"""
    # Startup
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    logger.info(f"Environment: {settings.ENVIRONMENT}")

    # Inicializa banco de dados
    await init_db()
    logger.info("Database initialized")

    stop_event = asyncio.Event()
    worker_task = None
    if settings.NFE_WORKER_AUTOSTART:
        worker_task = asyncio.create_task(run_worker_loop(get_services().worker, stop_event=stop_event))
        logger.info("[NFE-WORKER] Worker da fila de contingencia iniciado")

    yield

    # Shutdown
    logger.info("Shutting down...")
    if worker_task is not None:
        stop_event.set()
        await worker_task


# Middleware de headers de seguranca
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adiciona headers de seguranca em todas as respostas"""
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # Documentos fiscais nao devem ficar em cache intermediario
        if request.url.path.startswith("/api/nfe"):
            response.headers["Cache-Control"] = "no-store"
        return response


# Cria aplicação
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Emissao de NF-e com contingencia SVC, fila offline e trilha de auditoria",
    lifespan=lifespan,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None
)

# Configura rate limiter na aplicacao
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


# =====================================================
# ERROS DO EMISSOR -> HTTP
# =====================================================

def _error_response(status_code: int, error: NFeError) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=error.to_dict())


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return _error_response(422, exc)


@app.exception_handler(AuthorityRejection)
async def authority_rejection_handler(request: Request, exc: AuthorityRejection):
    return _error_response(422, exc)


@app.exception_handler(CertificateError)
async def certificate_error_handler(request: Request, exc: CertificateError):
    return _error_response(409, exc)


@app.exception_handler(TransportError)
async def transport_error_handler(request: Request, exc: TransportError):
    return _error_response(503, exc)


@app.exception_handler(ReceiptPendingError)
async def receipt_pending_handler(request: Request, exc: ReceiptPendingError):
    return _error_response(202, exc)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return _error_response(404, exc)


@app.exception_handler(NFeError)
async def nfe_error_handler(request: Request, exc: NFeError):
    # SignatureError, QueueError, AuditConflictError
    logger.error(f"[NFE-API] {type(exc).__name__}: {exc.message}")
    return _error_response(500, exc)


# Headers de seguranca (adicionar ANTES do CORS)
app.add_middleware(SecurityHeadersMiddleware)

# CORS (deve vir DEPOIS dos headers de seguranca)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(nfe_router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running"
    }


@app.get("/health")
async def health():
    """Health check"""
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "nfe_server.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG
    )
