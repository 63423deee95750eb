"""
FastAPI application for the marketplace value-transfer core
Routers, error rendering, health probe and the background verifier lifecycle
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import Config
from database import create_tables, test_connection
from handlers.disputes import router as disputes_router
from handlers.escrows import router as escrows_router
from handlers.orders import router as orders_router
from handlers.payouts import router as payouts_router
from handlers.razorpay_webhook import router as razorpay_webhook_router
from jobs.consolidated_scheduler import get_consolidated_scheduler_instance
from services.chain_adapter import get_chain_adapter
from services.circuit_breaker import get_all_breaker_states
from services.key_vault import get_key_vault
from services.razorpay_payout_service import get_razorpay_payout_service
from utils.exception_handler import register_exception_handlers

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: schema, configuration report and the background verifier.
    Shutdown: stop the verifier.
    """
    logger.info("🚀 Marketplace core starting...")
    create_tables()
    Config.log_environment_config()

    scheduler = None
    if Config.ENABLE_BACKGROUND_VERIFIER:
        scheduler = get_consolidated_scheduler_instance()
        scheduler.start()
    else:
        logger.warning("⏸️ Background verifier disabled by ENABLE_BACKGROUND_VERIFIER")

    yield

    if scheduler is not None:
        scheduler.stop()
    logger.info("🔄 Marketplace core shutting down...")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Marketplace Value-Transfer Core",
        description="Escrowed orders, disputes, token burns and Razorpay payouts",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[Config.CLIENT_URL],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    app.include_router(orders_router)
    app.include_router(escrows_router)
    app.include_router(disputes_router)
    app.include_router(razorpay_webhook_router)
    app.include_router(payouts_router)

    @app.get("/health")
    async def health_check():
        """Configuration health; never touches the chain or the provider"""
        chain = get_chain_adapter()
        return {
            "status": "ok",
            "service": "marketplace-core",
            "environment": Config.CURRENT_ENVIRONMENT,
            "database": test_connection(),
            "chain": {
                "configured": Config.is_chain_configured(),
                "escrow": chain.is_escrow_configured(),
                "token": chain.is_token_configured(),
            },
            "keyVault": get_key_vault().is_configured(),
            "payouts": {
                "razorpay": get_razorpay_payout_service().is_available(),
                "webhookSecret": bool(Config.RAZORPAY_WEBHOOK_SECRET),
            },
            "circuitBreakers": get_all_breaker_states(),
        }

    return app


app = create_app()
