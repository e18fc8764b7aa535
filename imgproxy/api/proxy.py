"""
Image proxy endpoint.
"""

from typing import Optional

from fastapi import APIRouter, Header, Query, Request
from fastapi.responses import Response

from ..core.fetcher import GuardedFetcher
from ..services.proxy_service import process_request

router = APIRouter(tags=["proxy"])


@router.get("/")
@router.get("/proxy")
async def proxy_image(
    request: Request,
    url: Optional[str] = Query(None, description="Source image URL (http/https)"),
    width: Optional[str] = Query(None, description="Target width in px"),
    height: Optional[str] = Query(None, description="Target height in px"),
    quality: Optional[str] = Query(None, description="Encode quality 1-100"),
    grayscale: Optional[str] = Query(None, description='"true" to drop colour'),
    format: Optional[str] = Query(None, description="jpeg | png | webp | avif"),
    accept: Optional[str] = Header(None),
) -> Response:
    # Parameters are declared for the OpenAPI schema; validation is ours
    settings = request.app.state.settings
    fetcher = GuardedFetcher(settings, transport=request.app.state.http_transport)
    return await process_request(
        request.query_params,
        accept,
        settings,
        fetcher,
        request.app.state.pipeline,
    )
