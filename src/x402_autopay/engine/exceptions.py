"""
Exception and Error Definitions Module

Defines the exception hierarchy for the payment engine. Expected business
outcomes (rejected challenges, denied policies, expired approvals, failed
retries, out-of-order transitions) are reported as typed results and never
raised; the classes below cover configuration mistakes, invalid caller
input and infrastructure faults.

Exception Hierarchy:
    X402AutopayError (root)
    ├── ConfigurationError
    ├── InvalidInputError
    ├── UnsafeUrlError
    ├── PaymentSignatureError
    ├── StoreError
    │   └── AuditWriteError
    └── BlockchainInteractionError
"""


class X402AutopayError(Exception):
    """
    Root exception class for all project-specific exceptions.

    All custom exceptions inherit from this class so callers can catch
    engine faults with a single ``except`` clause.
    """
    pass


class ConfigurationError(X402AutopayError):
    """
    Raised when configuration is missing or invalid.

    This includes scenarios such as:
    - Environment variables that cannot be parsed
    - Out-of-range timeouts or limits
    - Unknown chain identifiers in a chain lookup
    """
    pass


class InvalidInputError(X402AutopayError):
    """
    Raised when caller-supplied input fails validation before any state change.

    This includes scenarios such as:
    - Malformed EVM addresses
    - Non-positive or non-integer raw amounts
    - Negative limits or unknown HTTP methods
    """
    pass


class UnsafeUrlError(X402AutopayError):
    """
    Raised when an outbound URL (or a redirect target) is not allowed.

    The outbound client refuses non-HTTP schemes, loopback, private and
    link-local addresses, and internal host names.
    """
    pass


class PaymentSignatureError(X402AutopayError):
    """
    Raised when payment signature generation fails.

    This includes scenarios such as:
    - Signer key material that does not match the declared payer
    - Malformed typed data handed to a signer
    - Session key no longer valid for the smart account
    """
    pass


class StoreError(X402AutopayError):
    """
    Raised when a persistence collaborator is unavailable or misbehaves.

    Unlike a lost compare-and-swap (which is a normal ``None`` result),
    this signals a genuine fault and is propagated to the caller.
    """
    pass


class AuditWriteError(StoreError):
    """
    Raised when an audit record could not be appended after all retries.

    Attributes:
        attempts: Number of attempts made before giving up
    """

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class BlockchainInteractionError(X402AutopayError):
    """
    Raised when a blockchain read (RPC call) fails.

    This includes scenarios such as:
    - RPC call timeout
    - Network connectivity issues
    - Invalid token contract address
    """
    pass
