"""
Response construction for both outcomes of a proxy request.

Headers are the commit point: once an image response is returned its
status and headers are final, and an error response never carries image
bytes.
"""

from typing import Dict

from fastapi.responses import JSONResponse, StreamingResponse

from .config import Settings
from .errors import InternalError, ProxyError
from .fetcher import FetchedImage
from .pipeline import PipelineResult

PROXY_NAME = "imgproxy/1.0"
CACHE_CONTROL = "public, max-age=31536000, immutable"

DIAGNOSTIC_HEADERS = (
    "X-Proxy-By",
    "X-Original-Size",
    "X-Original-Width",
    "X-Original-Height",
    "X-Processed-Width",
    "X-Processed-Height",
    "X-Processed-Format",
    "X-Resize-Applied",
)


def success_headers(fetched: FetchedImage, result: PipelineResult) -> Dict[str, str]:
    headers = {
        "Cache-Control": CACHE_CONTROL,
        "X-Proxy-By": PROXY_NAME,
        "X-Original-Size": str(fetched.content_length),
        "X-Original-Width": str(result.original.width),
        "X-Original-Height": str(result.original.height),
        "X-Processed-Width": str(result.width),
        "X-Processed-Height": str(result.height),
        "X-Processed-Format": result.output_format.value,
        "X-Resize-Applied": "true" if result.resize_applied else "false",
    }
    if result.size is not None:
        headers["Content-Length"] = str(result.size)
    return headers


def image_response(fetched: FetchedImage, result: PipelineResult) -> StreamingResponse:
    return StreamingResponse(
        result.body,
        media_type=result.output_format.media_type,
        headers=success_headers(fetched, result),
    )


def error_body(exc: ProxyError, settings: Settings) -> Dict[str, str]:
    if isinstance(exc, InternalError) or type(exc) is ProxyError:
        body = {"error": InternalError.default_message}
        if settings.is_development:
            body["detail"] = exc.message
        return body
    return {"error": exc.message}


def error_response(exc: ProxyError, settings: Settings) -> JSONResponse:
    """Map a classified failure to its status code and JSON body."""
    headers = {"Cache-Control": "no-store", "X-Proxy-By": PROXY_NAME}
    if exc.metadata is not None:
        headers["X-Original-Width"] = str(exc.metadata.width)
        headers["X-Original-Height"] = str(exc.metadata.height)
    return JSONResponse(status_code=exc.status_code, content=error_body(exc, settings), headers=headers)
