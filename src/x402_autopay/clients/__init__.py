from .http_client import PaymentHttpClient, validate_url, sanitize_headers, BLOCKED_HEADERS

__all__ = [
    "PaymentHttpClient",
    "validate_url",
    "sanitize_headers",
    "BLOCKED_HEADERS",
]
