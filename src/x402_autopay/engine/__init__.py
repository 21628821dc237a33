from .exceptions import (
    X402AutopayError,
    ConfigurationError,
    InvalidInputError,
    UnsafeUrlError,
    PaymentSignatureError,
    StoreError,
    AuditWriteError,
    BlockchainInteractionError,
)

__all__ = [
    "X402AutopayError",
    "ConfigurationError",
    "InvalidInputError",
    "UnsafeUrlError",
    "PaymentSignatureError",
    "StoreError",
    "AuditWriteError",
    "BlockchainInteractionError",
]
