"""
Microfinance API Application Factory
"""

from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .dependencies import MicrofinanceSystem
from .auth import router as auth_router
from .borrowers import router as borrowers_router
from .loans import router as loans_router
from .installments import router as installments_router
from .collections import router as collections_router
from .collectors import router as collectors_router
from .dashboard import router as dashboard_router
from .backup import router as backup_router
from .. import __version__
from ..config import get_config
from ..errors import MicrofinanceError
from ..logging_config import setup_logging, get_logger


logger = get_logger("microfinance.api")


def _validation_message(error: dict) -> str:
    location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
    return f"{location}: {error.get('msg')}" if location else error.get("msg", "Invalid input")


def create_app(system: Optional[MicrofinanceSystem] = None) -> FastAPI:
    """
    Create and configure the FastAPI application

    A prebuilt system may be passed in (tests); otherwise one is built from
    configuration at startup and closed at shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = system is None
        if owned:
            config = get_config()
            setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
            app.state.system = MicrofinanceSystem(config)
        else:
            app.state.system = system
        logger.info("Microfinance API started")
        yield
        if owned:
            app.state.system.close()
        logger.info("Microfinance API stopped")

    app = FastAPI(
        title="Village Microfinance API",
        description="Borrowers, weekly-installment loans, field collections and reporting",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    if system is not None:
        app.state.system = system

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(MicrofinanceError)
    async def handle_domain_error(request: Request, exc: MicrofinanceError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.message}
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "error": "Validation failed",
                "details": [_validation_message(e) for e in exc.errors()]
            }
        )

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Internal server error"}
        )

    # Include routers
    app.include_router(auth_router, prefix="/auth", tags=["Auth"])
    app.include_router(borrowers_router, prefix="/borrowers", tags=["Borrowers"])
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(installments_router, prefix="/installments", tags=["Installments"])
    app.include_router(collections_router, prefix="/collections", tags=["Collections"])
    app.include_router(collectors_router, prefix="/collectors", tags=["Collectors"])
    app.include_router(dashboard_router, prefix="/dashboard", tags=["Dashboard"])
    app.include_router(backup_router, prefix="/backup", tags=["Backup"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "microfinance_api",
            "version": __version__
        }

    # Root endpoint
    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Village Microfinance API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "auth": "/auth",
                "borrowers": "/borrowers",
                "loans": "/loans",
                "installments": "/installments",
                "collections": "/collections",
                "collectors": "/collectors",
                "dashboard": "/dashboard",
                "backup": "/backup",
            }
        }

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    uvicorn.run(
        "microfinance.api:create_app",
        factory=True,
        host=host or config.api_host,
        port=port or config.api_port,
        workers=config.api_workers,
        reload=debug,
        log_level=config.log_level.lower()
    )
