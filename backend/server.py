from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import uuid
from contextlib import asynccontextmanager
from database import database
from routes import documents, payments, review, webhooks

import os
import logging
from pathlib import Path
from dotenv import load_dotenv
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

from services.payment_gateway import get_payment_gateway
from services.payment_reconciler import PaymentReconciler
from services.payment_session_service import PaymentSessionService
from services.gateway_webhook_service import GatewayWebhookService
from job_runner import run_pending_payment_reconciliation

# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Document Fulfillment API")
    if os.environ.get("PYTEST_RUNNING") != "1":
        await database.connect()

    provider = app.state.payment_gateway.provider.value
    logger.info("PAYMENT_PROVIDER = %s", provider)
    if provider == "bold" and not all(
        (os.environ.get(name) or "").strip()
        for name in ("BOLD_API_KEY", "BOLD_SECRET_KEY", "BOLD_MERCHANT_ID")
    ):
        logger.error("BOLD_API_KEY / BOLD_SECRET_KEY / BOLD_MERCHANT_ID not fully set. Checkout will fail.")

    # In-memory job store: the sweep job holds a reference to the live reconciler
    scheduler = AsyncIOScheduler()
    app.state.scheduler = scheduler

    # Pending payment sweep every 5 minutes
    scheduler.add_job(
        run_pending_payment_reconciliation,
        IntervalTrigger(minutes=5),
        kwargs={"reconciler": app.state.payment_reconciler},
        id="pending_payment_reconciliation",
        name="Pending Payment Reconciliation",
        replace_existing=True
    )

    scheduler.start()
    logger.info("Background job scheduler started")

    yield

    # Shutdown
    logger.info("Shutting down Document Fulfillment API")
    scheduler.shutdown(wait=False)
    logger.info("Background job scheduler stopped")
    await app.state.payment_reconciler.shutdown()
    logger.info("Payment polling loops cancelled")
    await database.close()


def create_app() -> FastAPI:
    app = FastAPI(
        title="Document Fulfillment API",
        description="Document lifecycle and payment reconciliation",
        version="1.0.0",
        lifespan=lifespan
    )

    # One gateway and one reconciler per application; polling loops belong to it
    gateway = get_payment_gateway()
    app.state.payment_gateway = gateway
    app.state.payment_reconciler = PaymentReconciler(gateway=gateway)
    app.state.payment_session_service = PaymentSessionService(gateway=gateway)
    app.state.gateway_webhook_service = GatewayWebhookService(app.state.payment_reconciler)

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(documents.router)
    app.include_router(payments.router)
    app.include_router(review.router)
    app.include_router(webhooks.router)

    # Health check
    @app.get("/api/health")
    async def health_check():
        return {
            "status": "healthy",
            "environment": os.getenv("ENVIRONMENT", "development"),
            "payment_provider": app.state.payment_gateway.provider.value,
        }

    # Validation error handler: log request_id + full errors (loc path)
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        request_id = str(uuid.uuid4())
        errors = exc.errors()
        logger.warning(
            "Request validation failed request_id=%s path=%s errors=%s",
            request_id,
            request.url.path,
            [(e.get("loc"), e.get("msg"), e.get("type")) for e in errors],
        )
        return JSONResponse(
            status_code=422,
            content={"detail": jsonable_errors(errors), "request_id": request_id},
        )

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"}
        )

    return app


def jsonable_errors(errors):
    """Validation errors may carry exception objects in ctx; keep them JSON-safe."""
    from fastapi.encoders import jsonable_encoder
    return jsonable_encoder(errors, custom_encoder={Exception: str})


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8001,
        reload=os.getenv("ENVIRONMENT") == "development"
    )
