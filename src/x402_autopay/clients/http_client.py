"""
Outbound HTTP Client for Paid Requests

Provides an httpx.AsyncClient subclass used for both the initial request and
the paid retry. Every request (and every redirect hop) is checked against
SSRF rules before it leaves the process, and caller-supplied headers are
sanitized so a caller can neither forge a proof of payment nor smuggle
credentials or hop-by-hop headers.
"""

import ipaddress
import logging
from typing import TYPE_CHECKING, Dict, Mapping, Optional, Union
from urllib.parse import urlsplit

import httpx

from ..engine.exceptions import UnsafeUrlError

if TYPE_CHECKING:
    from ..config import Settings


logger = logging.getLogger(__name__)

MAX_REDIRECTS = 5

# Headers a caller may not set on an outbound payment request.
BLOCKED_HEADERS = frozenset({
    "host",
    "authorization",
    "cookie",
    "set-cookie",
    "transfer-encoding",
    "content-length",
    "connection",
    "x-payment",
    "payment-signature",
    "x-forwarded-for",
    "x-forwarded-host",
    "x-real-ip",
    "origin",
    "referer",
})

_INTERNAL_SUFFIXES = (".local", ".internal", ".localhost")


def _blocked_ip_reason(address: Union[ipaddress.IPv4Address, ipaddress.IPv6Address]) -> Optional[str]:
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        address = address.ipv4_mapped
    if address.is_loopback:
        return "Requests to localhost/loopback addresses are not allowed"
    if address.is_unspecified:
        return "Requests to unspecified addresses are not allowed"
    if address.is_link_local:
        return "Requests to link-local addresses are not allowed"
    if address.is_private or (isinstance(address, ipaddress.IPv4Address) and address.packed[0] == 0):
        return "Requests to private/internal IP addresses are not allowed"
    return None


def validate_url(url: str) -> Optional[str]:
    """
    Check an outbound URL against SSRF rules.

    Rejects URLs containing control characters, non-HTTP(S) schemes,
    localhost, loopback/private/link-local IPv4 and IPv6 literals
    (including IPv4-mapped IPv6), and ``.local``, ``.internal`` and
    ``.localhost`` host names. Host names are not resolved; DNS rebinding
    protection belongs to the network layer.

    Args:
        url: Absolute URL

    Returns:
        str or None: Reason the URL is refused, or None when it is allowed

    Example:
        validate_url("http://169.254.169.254/latest")
        # 'Requests to link-local addresses are not allowed'
    """
    if any(ord(char) < 0x20 or ord(char) == 0x7F for char in url):
        return "URL contains non-printable characters"

    try:
        parts = urlsplit(url)
        hostname = parts.hostname
    except ValueError:
        return "Invalid URL format"

    if parts.scheme not in ("http", "https"):
        return f"Unsupported protocol: {parts.scheme or '(none)'}: (only http and https are allowed)"
    if not hostname:
        return "Invalid URL format"

    hostname = hostname.lower().rstrip(".")
    if hostname == "localhost":
        return "Requests to localhost/loopback addresses are not allowed"

    try:
        address = ipaddress.ip_address(hostname.split("%", 1)[0])
    except ValueError:
        address = None
    if address is not None:
        return _blocked_ip_reason(address)

    if hostname.endswith(_INTERNAL_SUFFIXES):
        return "Requests to internal hostnames are not allowed"
    return None


def sanitize_headers(headers: Optional[Mapping[str, str]]) -> Dict[str, str]:
    """
    Drop blocked headers and strip CR/LF from the remaining values.

    Args:
        headers: Caller-supplied headers (may be None)

    Returns:
        Dict[str, str]: Headers safe to forward
    """
    sanitized: Dict[str, str] = {}
    for key, value in (headers or {}).items():
        if key.lower() in BLOCKED_HEADERS:
            continue
        sanitized[key] = str(value).replace("\r", "").replace("\n", "")
    return sanitized


class PaymentHttpClient(httpx.AsyncClient):
    """
    httpx.AsyncClient that refuses unsafe destinations.

    Redirects are followed manually (never by httpx) so each ``Location``
    can be re-validated; after ``max_redirects`` hops the request fails.
    All other httpx behaviour is unchanged, so the client works as an async
    context manager and accepts any httpx transport (tests mount an ASGI app).

    Usage:
        ```python
        async with PaymentHttpClient(timeout=30.0) as client:
            response = await client.request("GET", "https://api.example.com/data")
        ```
    """

    def __init__(self, max_redirects: int = MAX_REDIRECTS, **kwargs):
        kwargs["follow_redirects"] = False
        kwargs.setdefault("timeout", 30.0)
        super().__init__(**kwargs)
        self._max_redirects = max_redirects

    @classmethod
    def from_settings(cls, settings: "Settings", **kwargs) -> "PaymentHttpClient":
        """
        Client using the configured timeout and redirect limit.

        Extra keyword arguments go to ``httpx.AsyncClient`` (e.g. ``transport``).
        """
        kwargs.setdefault("timeout", settings.request_timeout)
        return cls(max_redirects=settings.max_redirects, **kwargs)

    # =========================================================================
    # Override httpx.AsyncClient.request to add SSRF checks
    # =========================================================================

    async def request(
        self,
        method: str,
        url: Union[httpx.URL, str],
        **kwargs
    ) -> httpx.Response:
        """
        Send a request, validating the URL and every redirect target.

        Raises:
            UnsafeUrlError: If the URL or a redirect target is refused, or
                too many redirects were followed
            httpx.HTTPError: Transport failures (DNS, reset, timeout)
        """
        current_url = str(url)
        reason = validate_url(current_url)
        if reason:
            raise UnsafeUrlError(reason)

        for _ in range(self._max_redirects + 1):
            response = await super().request(method, current_url, **kwargs)
            if not response.is_redirect:
                return response

            location = response.headers.get("location")
            if not location:
                return response

            target = str(response.url.join(location))
            reason = validate_url(target)
            if reason:
                raise UnsafeUrlError(f"Redirect blocked: {reason} (redirected to {target})")

            logger.debug("following redirect", extra={"url": current_url, "location": target})
            if response.status_code == 303 and method.upper() != "HEAD":
                method = "GET"
                kwargs.pop("content", None)
                kwargs.pop("data", None)
                kwargs.pop("json", None)
            current_url = target

        raise UnsafeUrlError(f"Too many redirects (max {self._max_redirects})")
