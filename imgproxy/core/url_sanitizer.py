"""Source URL validation and tracker stripping."""

from urllib.parse import urlsplit, urlunsplit

from .errors import InvalidURL

ALLOWED_SCHEMES = ("http", "https")
DEFAULT_PORTS = {"http": 80, "https": 443}

TRACKING_KEYS = frozenset({
    "fbclid",
    "gclid",
    "dclid",
    "gbraid",
    "wbraid",
    "msclkid",
    "yclid",
    "twclid",
    "ttclid",
    "igshid",
    "mc_cid",
    "mc_eid",
    "_ga",
    "_gl",
    "_hsenc",
    "_hsmi",
    "_openstat",
    "ref",
    "referrer",
    "ref_src",
    "click_id",
    "clickid",
    "click-id",
    "sessionid",
    "session_id",
    "sid",
    "spm",
})
TRACKING_PREFIXES = ("utm_",)


def is_tracking_key(key: str) -> bool:
    lowered = key.strip().lower()
    return lowered in TRACKING_KEYS or lowered.startswith(TRACKING_PREFIXES)


def _clean_query(query: str) -> str:
    kept = []
    for pair in query.split("&"):
        if not pair:
            continue
        key = pair.split("=", 1)[0]
        if is_tracking_key(key):
            continue
        kept.append(pair)
    return "&".join(kept)


def _is_tracking_segment(segment: str) -> bool:
    # Only key=value and ;matrix segments are candidates; plain names stay
    if "=" not in segment:
        return False
    key = segment.split(";", 1)[0].split("=", 1)[0]
    return is_tracking_key(key)


def _clean_path(path: str) -> str:
    segments = []
    for segment in path.split("/"):
        if _is_tracking_segment(segment):
            continue
        if ";" in segment:
            head, *params = segment.split(";")
            params = [p for p in params if not is_tracking_key(p.split("=", 1)[0])]
            segment = ";".join([head, *params])
        segments.append(segment)
    return "/".join(segments)


def hostname_of(url: str) -> str:
    return (urlsplit(url).hostname or "").lower()


def sanitize_url(raw: str) -> str:
    """
    Validate and normalise a caller supplied image URL.

    Only absolute http/https URLs with a host are accepted. Known tracking
    query parameters and tracker path segments are removed, scheme and host
    are lower-cased, default ports and the fragment are dropped.

    Raises:
        InvalidURL: if the value cannot be used as an image source
    """
    candidate = (raw or "").strip()
    try:
        parts = urlsplit(candidate)
        port = parts.port
    except ValueError as exc:
        raise InvalidURL(f"Invalid URL: {exc}") from exc

    scheme = parts.scheme.lower()
    if scheme not in ALLOWED_SCHEMES:
        raise InvalidURL("Only http and https URLs are supported")
    host = (parts.hostname or "").lower()
    if not host:
        raise InvalidURL("URL must include a hostname")

    if ":" in host:
        host = f"[{host}]"
    netloc = host
    if port is not None and port != DEFAULT_PORTS[scheme]:
        netloc = f"{host}:{port}"
    if parts.username:
        credentials = parts.username
        if parts.password:
            credentials = f"{credentials}:{parts.password}"
        netloc = f"{credentials}@{netloc}"

    path = _clean_path(parts.path) or "/"
    return urlunsplit((scheme, netloc, path, _clean_query(parts.query), ""))
