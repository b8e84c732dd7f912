"""
Lending API Application Factory
"""

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .loans import router as loans_router
from .expenses import router as expenses_router
from .ledger import router as ledger_router
from .. import __version__
from ..config import get_config
from ..logging_config import setup_logging


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Lending Back Office API",
        description="Loan amortization, payments, recalculation and reversal",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(expenses_router, prefix="/expenses", tags=["Expenses"])
    app.include_router(ledger_router, prefix="/ledger", tags=["Ledger"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "lending_api",
            "version": __version__
        }

    # Root endpoint
    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Lending Back Office API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "loans": "/loans",
                "expenses": "/expenses",
                "ledger": "/ledger",
            }
        }

    return app


app = create_app()


def run_server(host: str = None, port: int = None, debug: bool = False):
    """Run the FastAPI server with the configured logging"""
    config = get_config()
    setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
    uvicorn.run(
        "lending_core.api:app",
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
