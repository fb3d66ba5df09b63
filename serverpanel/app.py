from __future__ import annotations

from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from serverpanel.api.error_handling import register_exception_handlers
from serverpanel.api.routes import router
from serverpanel.config import Settings, get_settings
from serverpanel.logging import get_logger, set_correlation_id
from serverpanel.service.runtime import configure_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"


def _allowed_origins(settings: Settings) -> List[str]:
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    # Local dev hosts only; no wildcard since cookies are credentials
    return [
        "http://localhost",
        "http://localhost:8080",
        "http://127.0.0.1:8080",
    ]


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build the API app.

    Explicit ``settings`` also rebuild the service runtime so the services
    follow them rather than the environment.
    """
    if settings is None:
        settings = get_settings()
    else:
        configure_runtime(settings)
    app = FastAPI(title="ServerPanel API", version=__version__)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Tag each request with the client's X-Request-ID or a fresh UUID."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if request.url.path.startswith("/api/"):
            response.headers.setdefault("Cache-Control", "no-store")
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health() -> Dict[str, Any]:
        return {"status": "ok", "version": __version__}

    logger.info("app_created", version=__version__)
    return app


app = create_app()
