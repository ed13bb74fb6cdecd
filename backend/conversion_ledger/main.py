"""Conversion ledger API.

Builds the FastAPI app: Sentry, proxy headers, CORS, the webhook and admin
routers, and a liveness probe. Run with
``uvicorn conversion_ledger.main:app`` from ``backend/``.
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.utils import get_openapi
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from . import models  # noqa: F401  (registers tables on Base.metadata)
from . import schemas
from .deps import get_settings
from .routers import attribution, campaigns, conversions, stripe_webhooks
from .telemetry import init_sentry

# Reachable without X-Admin-Key
PUBLIC_PATHS = ("/health", "/webhooks/stripe")

API_DESCRIPTION = """
Stripe payments in, Meta Purchase events out.

- `POST /webhooks/stripe`: signed, idempotent payment ingestion
- `/conversions`: ledger listing, totals, CSV export, reconcile sweep
- `/campaigns`: campaign to pixel routing table
- `/attribution`: test sends and configuration status

Admin endpoints require `X-Admin-Key` once ADMIN_API_KEY is set.
"""


def _install_openapi(app: FastAPI) -> None:
    """Document the admin key on every non-public operation."""

    def openapi():
        if app.openapi_schema:
            return app.openapi_schema

        schema = get_openapi(
            title=app.title,
            version=app.version,
            description=app.description,
            routes=app.routes,
        )
        schema.setdefault("components", {})["securitySchemes"] = {
            "adminKey": {
                "type": "apiKey",
                "in": "header",
                "name": "X-Admin-Key",
                "description": "Enforced only when ADMIN_API_KEY is configured",
            }
        }
        for path, operations in schema["paths"].items():
            if path in PUBLIC_PATHS:
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"adminKey": []}])

        app.openapi_schema = schema
        return schema

    app.openapi = openapi


def create_app() -> FastAPI:
    init_sentry()
    settings = get_settings()

    app = FastAPI(title="Conversion Ledger API", description=API_DESCRIPTION, version="1.0.0")

    # Client IPs for test sends come from X-Forwarded-For behind the proxy
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    origins = [origin.strip() for origin in settings.BACKEND_CORS_ORIGINS.split(",") if origin.strip()]
    logger.info(f"[CORS] Allowed origins: {origins}")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    for module in (stripe_webhooks, conversions, campaigns, attribution):
        app.include_router(module.router)

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Liveness probe",
        description="No authentication and no database access.",
    )
    def health():
        return schemas.HealthResponse(status="ok")

    _install_openapi(app)
    return app


app = create_app()
