from .nfe import router as nfe_router, limiter

__all__ = [
    "nfe_router",
    "limiter",
]
