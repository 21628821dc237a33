"""
HTTP Wire Models for the x402 Protocol

Pydantic models for everything that crosses the wire between the engine and
a paid resource: the offers of a 402 challenge, the proof of payment sent on
the retry, and the settlement receipt returned by the server.

Core Classes:
    - PaymentOffer: One acceptable way to pay (scheme, network, asset, amount, recipient)
    - PaymentRequirementSet: All offers of one challenge, tagged with its wire format
    - TransferAuthorization: EIP-3009 authorization fields carried in a proof
    - PaymentProof: Base64-JSON proof attached to the retried request
    - SettlementResponse: Decoded ``PAYMENT-RESPONSE`` settlement receipt
    - HttpResult: Buffered, serialisable view of an HTTP response

Dependencies:
    - pydantic: For data validation and serialization
    - httpx: Response type converted into ``HttpResult``
"""

import base64
import json
from typing import Any, Dict, List, Optional

import httpx
from pydantic import AliasChoices, Field, ValidationError, field_serializer, field_validator

from .bases import CanonicalModel
from .versions import DEFAULT_VERSIONS, WireFormat


# =========================================================================
# Challenge side
# =========================================================================

class PaymentOffer(CanonicalModel):
    """
    One acceptable payment method from a 402 challenge.

    The header format names the raw amount ``amount`` while the body format
    names it ``maxAmountRequired``; both populate ``amount`` here. The
    original offer object is kept in ``raw`` so it can be echoed back
    verbatim when a proof needs to reference the accepted offer.
    """

    scheme: str = Field(default="exact", description="Payment scheme, only 'exact' is payable")
    network: str = Field(..., description="Network identifier, CAIP-2 (eip155:8453) or legacy slug")
    asset: str = Field(..., description="Token contract address")
    amount: str = Field(
        ...,
        validation_alias=AliasChoices("amount", "maxAmountRequired"),
        description="Raw amount in the token's smallest unit",
    )
    pay_to: str = Field(..., validation_alias=AliasChoices("payTo", "pay_to"), serialization_alias="payTo")
    resource: Optional[str] = Field(default=None, description="Resource URL the offer applies to")
    max_timeout_seconds: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices("maxTimeoutSeconds", "max_timeout_seconds"),
        serialization_alias="maxTimeoutSeconds",
    )
    description: Optional[str] = None
    mime_type: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("mimeType", "mime_type"),
        serialization_alias="mimeType",
    )
    extra: Optional[Dict[str, Any]] = None
    raw: Dict[str, Any] = Field(default_factory=dict, exclude=True)

    @field_validator("amount", mode="before")
    @classmethod
    def _normalize_amount(cls, value: Any) -> str:
        if isinstance(value, bool):
            raise ValueError("amount must be an integer")
        if isinstance(value, int):
            value = str(value)
        if not isinstance(value, str) or not value.strip().isdigit():
            raise ValueError(f"amount must be a non-negative integer string, got {value!r}")
        value = value.strip()
        if int(value) <= 0:
            raise ValueError("amount must be positive")
        return value

    @field_validator("max_timeout_seconds", mode="before")
    @classmethod
    def _drop_invalid_timeout(cls, value: Any) -> Optional[int]:
        if value is None or isinstance(value, bool):
            return None
        try:
            timeout = int(value)
        except (TypeError, ValueError):
            return None
        return timeout if timeout > 0 else None

    @property
    def value(self) -> int:
        """Raw amount as an integer."""
        return int(self.amount)

    @property
    def domain_name(self) -> Optional[str]:
        """EIP-712 domain name advertised by the server, if any."""
        return (self.extra or {}).get("name")

    @property
    def domain_version(self) -> Optional[str]:
        """EIP-712 domain version advertised by the server, if any."""
        return (self.extra or {}).get("version")


class PaymentRequirementSet(CanonicalModel):
    """
    Every offer of a single 402 challenge.

    Instances are produced once at the response boundary and then passed
    around as a unit; ``wire_format`` decides which proof header the retry
    uses. ``raw`` is the decoded challenge object, which is what gets
    persisted on a pending payment and re-parsed on approval.

    Attributes:
        wire_format: Encoding the challenge arrived in (header or body)
        x402_version: Version tag of the challenge
        accepts: Usable offers, in server order
        error: The challenge's own error string (body format)
        resource: Resource descriptor (header format)
        raw: Decoded challenge object
    """

    wire_format: WireFormat
    x402_version: int
    accepts: List[PaymentOffer]
    error: Optional[str] = None
    resource: Optional[Dict[str, Any]] = None
    raw: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_challenge(cls, wire_format: WireFormat, challenge: Any) -> "PaymentRequirementSet":
        """
        Normalize a decoded challenge object into a requirement set.

        Offers missing a mandatory field are dropped; the challenge is
        unusable when no offer survives.

        Args:
            wire_format: Encoding the challenge arrived in
            challenge: Decoded JSON object of the challenge

        Returns:
            PaymentRequirementSet: Normalized requirement set

        Raises:
            ValueError: If the challenge has no usable offers
        """
        if not isinstance(challenge, dict):
            raise ValueError("challenge must be a JSON object")
        accepts = challenge.get("accepts")
        if not isinstance(accepts, list) or not accepts:
            raise ValueError("challenge has no 'accepts' list")

        resource = challenge.get("resource")
        resource_descriptor = resource if isinstance(resource, dict) else None
        default_resource = resource_descriptor.get("url") if resource_descriptor else None

        offers: List[PaymentOffer] = []
        for entry in accepts:
            if not isinstance(entry, dict):
                continue
            try:
                offer = PaymentOffer.model_validate(entry)
            except ValidationError:
                continue
            offer.raw = dict(entry)
            if offer.resource is None:
                offer.resource = default_resource
            offers.append(offer)

        if not offers:
            raise ValueError("challenge has no usable offers")

        version = challenge.get("x402Version")
        if not isinstance(version, int) or isinstance(version, bool):
            version = DEFAULT_VERSIONS[wire_format]

        error = challenge.get("error")
        return cls(
            wire_format=wire_format,
            x402_version=version,
            accepts=offers,
            error=error if isinstance(error, str) else None,
            resource=resource_descriptor,
            raw=challenge,
        )

    def to_json(self) -> str:
        """Serialize for storage on a pending payment."""
        return json.dumps(
            {"wireFormat": self.wire_format.value, "challenge": self.raw},
            separators=(",", ":"),
            sort_keys=True,
        )

    @classmethod
    def from_json(cls, data: str) -> "PaymentRequirementSet":
        """
        Restore a requirement set stored with ``to_json``.

        Raises:
            ValueError: If the stored value is not a serialized requirement set
        """
        try:
            stored = json.loads(data)
            wire_format = WireFormat.from_string(stored["wireFormat"])
            challenge = stored["challenge"]
        except (TypeError, KeyError, json.JSONDecodeError) as exc:
            raise ValueError(f"Invalid stored payment requirements: {exc}") from exc
        return cls.from_challenge(wire_format, challenge)


# =========================================================================
# Proof side
# =========================================================================

class TransferAuthorization(CanonicalModel):
    """
    EIP-3009 ``TransferWithAuthorization`` fields.

    Integers are serialized as decimal strings on the wire, matching what
    facilitators expect for uint256 values.
    """

    from_: str = Field(..., alias="from")
    to: str
    value: int
    valid_after: int = Field(..., alias="validAfter")
    valid_before: int = Field(..., alias="validBefore")
    nonce: str

    @field_serializer("value", "valid_after", "valid_before")
    def _serialize_uint(self, value: int) -> str:
        return str(value)

    def to_wire(self) -> Dict[str, str]:
        """Return the authorization keyed by its wire names."""
        return self.model_dump(mode="json", by_alias=True)


class ExactPaymentPayload(CanonicalModel):
    """Signature plus the authorization it covers."""

    signature: str
    authorization: TransferAuthorization


class PaymentProof(CanonicalModel):
    """
    Proof of payment attached to the retried request.

    Header-format proofs additionally echo the accepted offer and the
    resource descriptor; body-format proofs carry only the minimal fields.
    """

    x402_version: int = Field(..., alias="x402Version")
    scheme: str
    network: str
    payload: ExactPaymentPayload
    accepted: Optional[Dict[str, Any]] = None
    resource: Optional[Dict[str, Any]] = None

    def encode(self) -> str:
        """Return the base64-encoded JSON header value."""
        return base64.b64encode(self.to_canonical_json().encode("utf-8")).decode("ascii")

    @classmethod
    def decode(cls, header_value: str) -> "PaymentProof":
        """Decode a header value produced by ``encode``."""
        return cls.model_validate_json(base64.b64decode(header_value))


# =========================================================================
# Settlement side
# =========================================================================

class SettlementResponse(CanonicalModel):
    """Settlement receipt returned in ``PAYMENT-RESPONSE`` / ``X-PAYMENT-RESPONSE``."""

    success: Optional[bool] = None
    transaction: Optional[str] = None
    network: Optional[str] = None
    payer: Optional[str] = None
    error_reason: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("errorReason", "error_reason"),
        serialization_alias="errorReason",
    )

    @classmethod
    def decode(cls, header_value: str) -> Optional["SettlementResponse"]:
        """
        Decode a base64-JSON settlement header.

        Returns:
            SettlementResponse or None when the value is not decodable
        """
        try:
            decoded = json.loads(base64.b64decode(header_value, validate=False))
        except (ValueError, TypeError):
            return None
        if not isinstance(decoded, dict):
            return None
        try:
            return cls.model_validate(decoded)
        except ValidationError:
            return None


class RequestOptions(CanonicalModel):
    """
    The caller's original request. Sent unchanged on the first request and on the
    paid retry; only the proof header is added.
    """

    method: str = "GET"
    body: Optional[str] = None
    headers: Optional[Dict[str, str]] = None

    @field_validator("method")
    @classmethod
    def _normalize_method(cls, value: str) -> str:
        method = (value or "GET").upper()
        if method not in ("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"):
            raise ValueError(f"Unsupported HTTP method: {value}")
        return method


class HttpResult(CanonicalModel):
    """Buffered view of an HTTP response, safe to keep on results and records."""

    status_code: int
    headers: Dict[str, str] = Field(default_factory=dict)
    body: str = ""

    @classmethod
    def from_response(cls, response: httpx.Response) -> "HttpResult":
        return cls(
            status_code=response.status_code,
            headers={key: value for key, value in response.headers.items()},
            body=response.text,
        )

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def json_body(self) -> Optional[Any]:
        """Decoded JSON body, or None when the body is not JSON."""
        try:
            return json.loads(self.body)
        except (ValueError, TypeError):
            return None
