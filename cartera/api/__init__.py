"""
Cartera API Application Factory
"""

from typing import Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from .invoices import router as invoices_router
from .payments import router as payments_router
from .portfolio import router as portfolio_router
from .system import CarteraSystem, get_cartera_system
from .. import __version__
from ..config import get_config
from ..exceptions import (
    CarteraError, NotFoundError, FinancingLockedError, ConcurrencyError
)
from ..logging_config import get_logger


logger = get_logger("cartera.api")


def status_for(error: CarteraError) -> int:
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, (FinancingLockedError, ConcurrencyError)):
        return 409
    return 422


def create_app(system: Optional[CarteraSystem] = None) -> FastAPI:
    """
    Create and configure the FastAPI application

    Args:
        system: Prebuilt CarteraSystem to serve; the global one is used when omitted
    """
    app = FastAPI(
        title="Cartera API",
        description="Installment financing and payment allocation for accounts receivable",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if system is not None:
        app.dependency_overrides[get_cartera_system] = lambda: system

    @app.exception_handler(CarteraError)
    async def cartera_error_handler(request: Request, exc: CarteraError):
        status_code = status_for(exc)
        if status_code == 409:
            logger.warning("%s %s rejected: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=422,
            content={"error": "validation_error", "detail": jsonable_encoder(exc.errors())}
        )

    app.include_router(invoices_router, prefix="/invoices", tags=["Invoices"])
    app.include_router(payments_router, prefix="/invoices", tags=["Payments"])
    app.include_router(portfolio_router, prefix="/portfolio", tags=["Portfolio"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "cartera_api",
            "version": __version__
        }

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    uvicorn.run(
        "cartera.api:create_app",
        factory=True,
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
