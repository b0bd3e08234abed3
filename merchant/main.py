# merchant/main.py

import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from merchant.core.config import get_settings
from merchant.core.exceptions import MerchantError
from merchant.core.logging_config import configure_logging
from merchant.database import async_session
from merchant.routes import carts, health, inventory, orders, payment_webhooks, webhooks
from merchant.scheduler import start_scheduler, stop_scheduler
from merchant.services.payment import PaymentClient
from merchant.services.webhook_dispatcher import WebhookDispatcher

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    settings = get_settings()
    logger.info(f"Starting merchant fulfillment API ({settings.ENVIRONMENT})")

    dispatcher = WebhookDispatcher(async_session)
    payment_http = httpx.AsyncClient(timeout=settings.PAYMENT_TIMEOUT_SECONDS)
    app.state.dispatcher = dispatcher
    app.state.payment_client = PaymentClient(http_client=payment_http)

    # Deliveries left pending by a previous process
    try:
        await dispatcher.requeue_stale_pending()
    except Exception as e:
        logger.exception(f"Failed to requeue stale deliveries on startup: {str(e)}")

    if settings.SCHEDULER_ENABLED:
        await start_scheduler(dispatcher)
    else:
        logger.info("Scheduler is disabled. Set SCHEDULER_ENABLED=true to enable")

    try:
        yield
    finally:
        await stop_scheduler()
        await dispatcher.aclose()
        await app.state.payment_client.aclose()


app = FastAPI(title="Merchant Fulfillment", debug=get_settings().DEBUG, lifespan=lifespan)


@app.exception_handler(MerchantError)
async def merchant_error_handler(request: Request, exc: MerchantError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"error": {
            "code": "invalid_request",
            "message": "Request validation failed",
            "details": {"errors": jsonable_errors(exc)},
        }},
    )


def jsonable_errors(exc: RequestValidationError):
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]


@app.get("/")
async def root():
    return {"name": "merchant", "version": "0.1.0", "ok": True}


# Payment webhook is authenticated by its signature, not the tenant header
app.include_router(payment_webhooks.router)
app.include_router(health.router)
app.include_router(inventory.router)
app.include_router(carts.router)
app.include_router(orders.router)
app.include_router(webhooks.router)
