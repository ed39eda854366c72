"""FastAPI application factory."""

from fastapi import FastAPI, Request, Response

from lectio.observability.correlation import (
    CORRELATION_ID_HEADER,
    generate_correlation_id,
    reset_correlation_id,
    set_correlation_id,
)

from .routers import public
from .routes import webhooks_stripe


def create_app() -> FastAPI:
    """Create FastAPI app with the health and Stripe webhook routes.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title="Lectio Billing",
        docs_url=None,
        redoc_url=None,
    )

    # Correlation ID middleware
    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next) -> Response:
        # Get or generate correlation ID
        cid = request.headers.get(CORRELATION_ID_HEADER) or generate_correlation_id()
        token = set_correlation_id(cid)
        try:
            response = await call_next(request)
            response.headers[CORRELATION_ID_HEADER] = cid
            return response
        finally:
            reset_correlation_id(token)

    app.include_router(public.router)
    app.include_router(webhooks_stripe.router)

    return app
