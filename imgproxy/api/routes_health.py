from datetime import datetime, timezone

from fastapi import APIRouter, Request, status

from ..core.metrics import get_proxy_metrics

router = APIRouter(tags=["health"])

SERVICE_NAME = "imgproxy"


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/health", status_code=status.HTTP_200_OK)
async def health() -> dict:
    return {"status": "ok", "timestamp": _timestamp(), "service": SERVICE_NAME}


@router.get("/health/detailed", status_code=status.HTTP_200_OK)
async def detailed_health(request: Request) -> dict:
    """Health plus active limits and request outcome counters."""
    settings = request.app.state.settings
    return {
        "status": "ok",
        "timestamp": _timestamp(),
        "service": SERVICE_NAME,
        "limits": {
            "max_width": settings.MAX_WIDTH,
            "max_height": settings.MAX_HEIGHT,
            "max_file_size": settings.MAX_FILE_SIZE,
            "fetch_timeout": settings.FETCH_TIMEOUT,
            "max_redirects": settings.max_redirects,
            "processing_concurrency": settings.processing_concurrency,
            "encode_strategy": "streaming" if settings.streaming else "buffered",
        },
        "metrics": get_proxy_metrics(),
    }
