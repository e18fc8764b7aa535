"""
Error taxonomy for the proxy pipeline.

Every stage raises one of these; the API layer maps them to a status code
and a JSON body. Nothing here touches the response directly.
"""

from typing import Optional

from fastapi import status


class ProxyError(Exception):
    """Base class for classified pipeline failures."""

    kind = "InternalError"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        # Original image metadata, attached once the image has been probed
        self.metadata = None
        super().__init__(self.message)

    def with_metadata(self, metadata) -> "ProxyError":
        if self.metadata is None:
            self.metadata = metadata
        return self


class MissingURL(ProxyError):
    kind = "MissingURL"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "URL parameter is required"


class InvalidURL(ProxyError):
    kind = "InvalidURL"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "URL must be an absolute http or https URL"


class InvalidDimension(ProxyError):
    kind = "InvalidDimension"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid dimension"


class InvalidQuality(ProxyError):
    kind = "InvalidQuality"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Quality must be between 1 and 100"


class UnsupportedFormat(ProxyError):
    kind = "UnsupportedFormat"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Unsupported output format"


class DomainBlocked(ProxyError):
    kind = "DomainBlocked"
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Domain is blocked"


class NotAnImage(ProxyError):
    kind = "NotAnImage"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "URL does not point to a valid image"


class PayloadTooLarge(ProxyError):
    kind = "PayloadTooLarge"
    status_code = status.HTTP_413_CONTENT_TOO_LARGE
    default_message = "Image too large"


class FetchTimeout(ProxyError):
    kind = "Timeout"
    status_code = status.HTTP_408_REQUEST_TIMEOUT
    default_message = "Request timeout"


class ConnectionFailed(ProxyError):
    kind = "ConnectionFailed"
    status_code = status.HTTP_502_BAD_GATEWAY
    default_message = "Failed to connect to image server"


class UpstreamError(ProxyError):
    kind = "UpstreamError"
    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(self, upstream_status: int, message: Optional[str] = None):
        self.upstream_status = upstream_status
        # Mirror real client/server errors; anything else is a bad gateway
        if 400 <= upstream_status <= 599:
            self.status_code = upstream_status
        super().__init__(message or f"Failed to fetch image: {upstream_status}")


class InvalidImage(ProxyError):
    kind = "InvalidImage"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid image format"


class InternalError(ProxyError):
    pass
