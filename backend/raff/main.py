"""FastAPI application entrypoint.

Configures error rendering, includes the webhook router, and exposes a
healthcheck endpoint.
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
import logging
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .deps import get_settings
from .errors import ConfigurationError, WebhookError
from .routers import platform_webhooks as platform_webhooks_router
from .telemetry import capture_message, init_sentry
from .workers.arq_enqueue import reset_arq_pool
from . import schemas

# Import models so Alembic can discover metadata
from . import models  # noqa: F401


def create_app() -> FastAPI:
    app = FastAPI(
        title="raff webhooks API",
        description="""
        Receives order, product and app webhooks from Salla and Zid and turns
        referral clicks into commissions.

        ## Responses

        - **200**: Event handled (including duplicates, organic orders and
          events that need no work). Platforms stop retrying.
        - **400 / 401 / 404**: Payload, signature or store problem. Retrying
          the same delivery will not help.
        - **500**: Misconfiguration or transient failure. Platforms retry.
        """,
        version="1.0.0",
        servers=[
            {
                "url": "http://localhost:8000",
                "description": "Development server"
            },
        ]
    )

    init_sentry()

    # Trust X-Forwarded-* from the load balancer
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    settings = get_settings()
    if settings.SKIP_WEBHOOK_VERIFICATION:
        logger.warning("[STARTUP] SKIP_WEBHOOK_VERIFICATION is on; signatures are not checked")

    @app.exception_handler(WebhookError)
    async def webhook_error_handler(request: Request, exc: WebhookError):
        if isinstance(exc, ConfigurationError):
            capture_message(
                f"Webhook configuration error: {exc.message}",
                level="error",
                extra={"platform": exc.platform, "path": request.url.path},
            )
        logger.warning(
            f"[WEBHOOK] {request.url.path} -> {exc.status_code}: {exc.message}",
            extra={"platform": exc.platform},
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=schemas.WebhookErrorResponse(error=exc.message).model_dump(),
        )

    app.include_router(platform_webhooks_router.router)  # Salla and Zid webhooks

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
        description="""
        Simple health check endpoint to verify the API is running.

        Does not touch the database or Redis; suitable for load balancer checks.
        """
    )
    def health():
        return schemas.HealthResponse(status="ok")

    @app.on_event("shutdown")
    async def shutdown_event():
        """Close the sync trigger Redis pool."""
        await reset_arq_pool()

    return app


app = create_app()
