from __future__ import annotations

import os
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.errors import ApiError, api_error_handler, mandate_rail_error_handler
from api.routes import get_api_router
from api.routes import health as health_routes
from mandate_rail import __version__
from mandate_rail.core.config import Config
from mandate_rail.core.exceptions import MandateRailError
from mandate_rail.core.logging import configure_logging


def create_app() -> FastAPI:
    start = time.monotonic()

    # Refuse to start with an empty auth_token unless explicitly overridden.
    config = Config.load()
    configure_logging(config.logging)
    auth_token = str(config.api.auth_token or "")
    insecure_ok = os.environ.get("MANDATE_RAIL_INSECURE_OK", "").lower() in ("1", "true", "yes")

    if not auth_token and not insecure_ok:
        msg = (
            "SECURITY ERROR: API auth_token is empty\n"
            "\n"
            "Set MANDATE_RAIL_API__AUTH_TOKEN or add to config:\n"
            "  api:\n"
            "    auth_token: your-secret-token\n"
            "\n"
            "To run without auth (dev/test only), set MANDATE_RAIL_INSECURE_OK=1"
        )
        raise RuntimeError(msg)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield

        rt = getattr(app.state, "runtime", None)
        if rt is not None:
            await rt.aclose()

    openapi_tags = [
        {"name": "health", "description": "Liveness, version and store mode."},
        {"name": "mandates", "description": "AP2 mandate verification."},
        {"name": "settlements", "description": "Intent -> Quote -> Payment orchestration."},
        {"name": "invariants", "description": "Tripped invariant breakers."},
    ]

    app = FastAPI(
        title="mandate-rail API",
        description="Signed AP2 mandates in, verified settlements out",
        version=__version__,
        openapi_tags=openapi_tags,
        lifespan=lifespan,
    )

    # Set eagerly: ASGI test transports do not run the lifespan.
    app.state.started_at = start
    app.state.config = config

    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(MandateRailError, mandate_rail_error_handler)

    if config.api.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.api.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.include_router(health_routes.router, tags=["health"])
    app.include_router(get_api_router(), prefix="/api/v1")
    return app


# Module-level app for `uvicorn api.main:app`.
# Guarded so test imports don't crash when auth_token isn't configured.
try:
    app = create_app()
except RuntimeError:
    app = None
