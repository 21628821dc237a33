from enum import Enum


class WireFormat(str, Enum):
    """
    Encoding a 402 challenge arrived in.

    The proof of payment is always sent back in the same encoding.
    """
    HEADER = "header"
    BODY = "body"

    @classmethod
    def from_string(cls, value):
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"Unsupported wire format: {value}")

    @property
    def proof_header(self) -> str:
        """Request header carrying the proof of payment for this format."""
        return PROOF_HEADERS[self]


# Header names of the x402 wire protocol.
PAYMENT_REQUIRED_HEADER = "PAYMENT-REQUIRED"
PAYMENT_SIGNATURE_HEADER = "PAYMENT-SIGNATURE"
LEGACY_PAYMENT_HEADER = "X-PAYMENT"
PAYMENT_RESPONSE_HEADER = "PAYMENT-RESPONSE"
LEGACY_PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"
TX_HASH_HEADER = "X-PAYMENT-TX-HASH"

PROOF_HEADERS = {
    WireFormat.HEADER: PAYMENT_SIGNATURE_HEADER,
    WireFormat.BODY: LEGACY_PAYMENT_HEADER,
}

# Version tag written into proofs when the challenge does not carry one.
DEFAULT_VERSIONS = {
    WireFormat.HEADER: 2,
    WireFormat.BODY: 1,
}
