from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .api.logs import router as logs_router
from .api.proxy import router as proxy_router
from .api.routes_health import router as health_router
from .core.config import Settings, get_settings
from .core.emitter import DIAGNOSTIC_HEADERS, error_response
from .core.errors import ProxyError
from .core.log_buffer import configure_logging, install_log_buffer
from .core.pipeline import ImagePipeline


def create_app(
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Assemble the proxy application.

    `settings` defaults to the environment; `transport` replaces the network
    for outbound fetches (tests).
    """
    settings = settings or get_settings()
    configure_logging(settings.LOG_LEVEL)
    install_log_buffer()

    app = FastAPI(title="imgproxy", description="On-demand image transformation proxy")
    app.state.settings = settings
    app.state.http_transport = transport
    app.state.pipeline = ImagePipeline(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
        expose_headers=list(DIAGNOSTIC_HEADERS),
    )

    @app.exception_handler(ProxyError)
    async def _proxy_error_handler(request: Request, exc: ProxyError) -> JSONResponse:
        return error_response(exc, request.app.state.settings)

    @app.exception_handler(StarletteHTTPException)
    async def _http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )

    app.include_router(health_router)
    app.include_router(proxy_router)
    if settings.is_development:
        app.include_router(logs_router)
    return app


app = create_app()
