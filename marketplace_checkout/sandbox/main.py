"""
In-memory reference backend for the checkout engine: identity, cart, coupons,
payments, the card processor and orders in one FastAPI app.

    uvicorn marketplace_checkout.sandbox.main:app --port 8000
"""
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from marketplace_checkout.engine.pricing import PricingEngine
from marketplace_checkout.sandbox.models import SandboxStore
from marketplace_checkout.sandbox.routers import auth, cart, orders, payments
from marketplace_checkout.shared.logging_config import setup_logging, RequestLoggingMiddleware
from marketplace_checkout.shared.security_config import setup_rate_limiting, SecurityHeadersMiddleware
from marketplace_checkout.shared.utils import (
    AppException,
    ErrorResponse,
    HealthResponse,
    Settings,
    settings as default_settings,
)

SERVICE_NAME = "checkout-sandbox"

# Setup Logging
logger = setup_logging(SERVICE_NAME, default_settings.LOG_LEVEL)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    config = settings or default_settings

    app = FastAPI(title="Checkout Sandbox", version="1.0.0")
    app.state.settings = config
    app.state.store = SandboxStore.seeded()
    app.state.pricing = PricingEngine.from_settings(config)

    # Security Setup
    setup_rate_limiting(app, enabled=config.RATE_LIMIT_ENABLED)
    app.add_middleware(SecurityHeadersMiddleware)

    # Middleware
    app.add_middleware(RequestLoggingMiddleware, service_name=SERVICE_NAME)

    # CORS Configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(AppException)
    async def app_exception_handler(request: Request, exc: AppException):
        body = ErrorResponse(error=exc.detail, code=exc.code)
        return JSONResponse(status_code=exc.status_code, content=body.model_dump(), headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = [{k: v for k, v in error.items() if k != "ctx"} for error in exc.errors()]
        body = ErrorResponse(error="Validation failed", code="VALIDATION", details=jsonable_encoder(errors))
        return JSONResponse(status_code=422, content=body.model_dump())

    app.include_router(auth.router)
    app.include_router(cart.router)
    app.include_router(payments.router)
    app.include_router(payments.processor_router)
    app.include_router(orders.router)

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        store = app.state.store
        return HealthResponse(
            service=SERVICE_NAME,
            status="healthy",
            timestamp=datetime.now(timezone.utc),
            version="1.0.0",
            dependencies={
                "store": "in-memory",
                "products": len(store.products),
                "orders": len(store.orders),
            },
        )

    return app


app = create_app()
