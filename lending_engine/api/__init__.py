"""
Lending Engine API Application Factory
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .dependencies import LendingSystem
from .payments import router as payments_router
from .ledger import router as ledger_router
from .suspense import router as suspense_router
from .jobs import router as jobs_router
from .tenants import router as tenants_router
from .. import __version__


def create_app(system: Optional[LendingSystem] = None,
               start_workers: Optional[bool] = None) -> FastAPI:
    """
    Create and configure the FastAPI application

    Args:
        system: Pre-built components (tests pass one on in-memory storage);
            built from configuration when omitted
        start_workers: Run the background worker pool for the app's lifetime;
            defaults to the ``worker_enabled`` setting
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        lending_system = app.state.system
        if lending_system is None:
            lending_system = app.state.system = LendingSystem()
        run_workers = lending_system.config.worker_enabled if start_workers is None else start_workers
        if run_workers:
            lending_system.worker_pool.start()
        try:
            yield
        finally:
            lending_system.worker_pool.stop()

    app = FastAPI(
        title="Lending Engine API",
        description="Payment reconciliation and installment allocation for multi-tenant micro-lending",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    app.state.system = system

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(payments_router, prefix="/payments", tags=["Payments"])
    app.include_router(ledger_router, prefix="/ledger", tags=["Ledger"])
    app.include_router(suspense_router, prefix="/suspense", tags=["Suspense"])
    app.include_router(jobs_router, prefix="/jobs", tags=["Jobs"])
    app.include_router(tenants_router, prefix="/tenants", tags=["Tenants"])

    @app.get("/health")
    def health_check():
        """Health check endpoint"""
        lending_system = app.state.system
        return {
            "status": "healthy" if lending_system is not None else "starting",
            "service": "lending_engine_api",
            "version": __version__,
            "workers_running": bool(lending_system and lending_system.worker_pool.running),
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    @app.get("/")
    def get_api_info():
        """Get API information"""
        return {
            "name": "Lending Engine API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "payments": "/payments",
                "ledger": "/ledger",
                "suspense": "/suspense",
                "jobs": "/jobs",
                "tenants": "/tenants",
            }
        }

    return app
