"""
Guarded remote fetch for source images.

The fetch is bounded on every axis: total time, redirect count, body size.
Responses are classified before a single byte reaches the decoder.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from .config import Settings
from .errors import (
    ConnectionFailed,
    DomainBlocked,
    FetchTimeout,
    NotAnImage,
    PayloadTooLarge,
    UpstreamError,
)
from .url_sanitizer import hostname_of

logger = logging.getLogger(__name__)


@dataclass
class FetchedImage:
    data: bytes
    content_type: str
    content_length: int
    url: str

    def release(self) -> None:
        """Drop the payload once the decoder no longer needs it."""
        self.data = b""


def _matches(host: str, domains) -> bool:
    return any(host == domain or host.endswith(f".{domain}") for domain in domains)


def check_domain(url: str, settings: Settings) -> None:
    """Apply the configured block-list and allow-list to the URL's host."""
    host = hostname_of(url)
    if _matches(host, settings.blocked_domains):
        raise DomainBlocked("Domain is blocked")
    allowed = settings.allowed_domains
    if allowed and not _matches(host, allowed):
        raise DomainBlocked("Domain not allowed")


def _parse_length(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        length = int(value.strip())
    except ValueError:
        return None
    return length if length >= 0 else None


def _too_large(limit: int) -> PayloadTooLarge:
    return PayloadTooLarge(f"Image too large. Maximum size is {limit / 1024 / 1024:g}MB")


class GuardedFetcher:
    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.transport = transport
        self.headers = {
            "User-Agent": settings.USER_AGENT,
            "Accept": "image/*",
        }

    async def _check_hop(self, request: httpx.Request) -> None:
        # Runs for the first request and every redirect hop
        check_domain(str(request.url), self.settings)

    async def fetch(self, url: str) -> FetchedImage:
        """
        Download an image from a sanitized URL.

        Raises:
            DomainBlocked, UpstreamError, NotAnImage, PayloadTooLarge,
            FetchTimeout, ConnectionFailed
        """
        check_domain(url, self.settings)
        try:
            return await asyncio.wait_for(self._fetch(url), timeout=self.settings.FETCH_TIMEOUT)
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            logger.warning("[fetch] timeout after %.1fs: %s", self.settings.FETCH_TIMEOUT, url)
            raise FetchTimeout() from exc
        except httpx.TooManyRedirects as exc:
            logger.warning("[fetch] too many redirects: %s", url)
            raise UpstreamError(502, "Failed to fetch image: too many redirects") from exc
        except httpx.TransportError as exc:
            logger.warning("[fetch] connection failed for %s: %s", url, exc)
            raise ConnectionFailed() from exc
        except httpx.RequestError as exc:
            logger.warning("[fetch] bad upstream response for %s: %s", url, exc)
            raise UpstreamError(502, "Failed to fetch image: invalid upstream response") from exc

    async def _fetch(self, url: str) -> FetchedImage:
        limit = self.settings.MAX_FILE_SIZE
        async with httpx.AsyncClient(
            transport=self.transport,
            timeout=self.settings.FETCH_TIMEOUT,
            follow_redirects=True,
            max_redirects=self.settings.max_redirects,
            headers=self.headers,
            event_hooks={"request": [self._check_hop]},
        ) as client:
            async with client.stream("GET", url) as response:
                if not response.is_success:
                    raise UpstreamError(response.status_code)

                content_type = response.headers.get("content-type", "")
                if not content_type.lower().startswith("image/"):
                    raise NotAnImage()

                declared = _parse_length(response.headers.get("content-length"))
                if declared is not None and declared > limit:
                    logger.info("[fetch] declared size %d over limit for %s", declared, url)
                    raise _too_large(limit)

                # The header may be absent or wrong; count what actually arrives
                buffer = bytearray()
                async for chunk in response.aiter_bytes():
                    buffer.extend(chunk)
                    if len(buffer) > limit:
                        logger.info("[fetch] body exceeded %d bytes for %s", limit, url)
                        raise _too_large(limit)

                logger.debug("[fetch] %d bytes (%s) from %s", len(buffer), content_type, url)
                return FetchedImage(
                    data=bytes(buffer),
                    content_type=content_type,
                    content_length=len(buffer),
                    url=str(response.url),
                )
