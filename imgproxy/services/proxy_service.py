"""
Request orchestration: parse -> fetch -> probe -> plan -> transform -> emit.

Each stage only starts once its predecessor has produced a typed result;
the first failure short-circuits to an error response.
"""

import logging
from typing import Mapping, Optional

from fastapi.responses import Response

from ..core.config import Settings
from ..core.emitter import error_response, image_response
from ..core.errors import InternalError, ProxyError
from ..core.fetcher import GuardedFetcher
from ..core.log_buffer import request_context
from ..core.metrics import record_request
from ..core.params import parse_request
from ..core.pipeline import ImagePipeline
from ..core.planner import plan_transform

logger = logging.getLogger(__name__)


async def process_request(
    query: Mapping[str, str],
    accept: Optional[str],
    settings: Settings,
    fetcher: GuardedFetcher,
    pipeline: ImagePipeline,
) -> Response:
    """Run one request through the pipeline and build its response."""
    with request_context(query.get("url")):
        try:
            request = parse_request(query, settings)
            fetched = await fetcher.fetch(request.source_url)
            metadata = await pipeline.probe(fetched)
            plan = plan_transform(request, metadata, settings, accept=accept)
            result = await pipeline.run(fetched, metadata, plan)
        except ProxyError as exc:
            _log_failure(query, exc)
            record_request(exc.kind, exc.status_code)
            return error_response(exc, settings)
        except Exception as exc:
            logger.exception(
                "[proxy] unexpected failure for %s", query.get("url"),
                extra={"outcome": InternalError.kind},
            )
            failure = InternalError(str(exc))
            record_request(failure.kind, failure.status_code)
            return error_response(failure, settings)

        logger.info(
            "[proxy] %s %dx%d -> %dx%d %s (%d bytes in)",
            request.source_url,
            result.original.width,
            result.original.height,
            result.width,
            result.height,
            result.output_format.value,
            fetched.content_length,
            extra={"outcome": "ok"},
        )
        record_request("ok", 200, result.output_format.value, fetched.content_length)
        return image_response(fetched, result)


def _log_failure(query: Mapping[str, str], exc: ProxyError) -> None:
    extra = {"outcome": exc.kind}
    if isinstance(exc, InternalError):
        logger.error("[proxy] %s for %s: %s", exc.kind, query.get("url"), exc.message, exc_info=exc, extra=extra)
    else:
        logger.warning("[proxy] %s for %s: %s", exc.kind, query.get("url"), exc.message, extra=extra)
