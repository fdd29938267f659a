"""
Ledger Bridge Service

Bridges the marketplace's mirror store with the ledger: submission through
the gateway, confirmation tracking through the monitor, and reconciliation of
outcomes back into the store. Exposes a small HTTP query surface.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from sqlalchemy.orm import sessionmaker

from . import __version__
from .api import router
from .config import LedgerSettings, get_settings, configure_logging
from .connection import LedgerConnection, NodeFactory
from .db import create_session_factory
from .gas_optimizer import GasOptimizer
from .gateway import LedgerGateway
from .node import create_web3_node
from .reconciliation import ReconciliationService
from .transaction_monitor import TransactionMonitor

logger = logging.getLogger(__name__)


def create_app(settings: Optional[LedgerSettings] = None,
               node_factory: NodeFactory = create_web3_node,
               session_factory: Optional[sessionmaker] = None) -> FastAPI:
    """Assemble the service; components are built in the lifespan"""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting Ledger Bridge Service...")

        connection = LedgerConnection(settings, node_factory=node_factory)
        gas_optimizer = GasOptimizer(connection, cache_ttl=settings.gas_cache_ttl)
        gateway = LedgerGateway(settings, connection, gas_optimizer)
        monitor = TransactionMonitor(connection, settings)
        sessions = session_factory or create_session_factory(settings.database_url)
        reconciliation = ReconciliationService(sessions, monitor, settings)

        if settings.blockchain_enabled:
            if not await gateway.validate_network():
                logger.warning("Ledger network validation failed at startup")
        else:
            logger.info("Ledger integration disabled, operations return mock results")

        app.state.settings = settings
        app.state.connection = connection
        app.state.gateway = gateway
        app.state.monitor = monitor
        app.state.reconciliation = reconciliation

        logger.info("Ledger Bridge Service initialized successfully")

        yield

        logger.info("Shutting down Ledger Bridge Service...")
        await monitor.shutdown()
        await gateway.close()
        logger.info("Ledger Bridge Service shutdown complete")

    app = FastAPI(
        title="Ledger Bridge Service",
        description="Ledger submission, confirmation tracking and mirror reconciliation",
        version=__version__,
        lifespan=lifespan
    )
    app.include_router(router, prefix="/api/v1")

    @app.get("/")
    async def root():
        """Service information endpoint"""
        return {
            "service": "ledger-bridge",
            "version": __version__,
            "environment": settings.environment,
            "blockchain_enabled": settings.blockchain_enabled,
        }

    return app


def main():
    import uvicorn

    configure_logging()
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
