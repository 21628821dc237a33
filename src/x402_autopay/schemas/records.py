"""
Persisted Record Models

Records owned by the store collaborators: endpoint policies (read-only for
the engine), pending payments (mutated only through guarded transitions)
and audit records (write-once).

Core Classes:
    - EndpointPolicy: Per-user, per-endpoint-pattern payment permission
    - PendingPayment: Durable state of a payment awaiting manual approval
    - AuditRecord: Immutable log entry for a terminal payment outcome

Dependencies:
    - pydantic: For data validation and serialization
"""

import re
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Optional

from pydantic import ConfigDict, Field, field_validator

from .bases import AuditStatus, AuditType, CanonicalModel, PendingStatus, PolicyStatus


_ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")
_HTTP_METHODS = {"GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"}


def utcnow() -> datetime:
    """Timezone-aware current time used for every record timestamp."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def is_evm_address(value: str) -> bool:
    """True for a 0x-prefixed 20-byte hex address."""
    return bool(_ADDRESS_PATTERN.match(value or ""))


class EndpointPolicy(CanonicalModel):
    """
    Permission to pay an endpoint pattern on one chain.

    A policy covers a URL when its pattern is a prefix of the URL; among
    several covering active policies the longest pattern wins.
    """

    id: str = Field(default_factory=new_id)
    user_id: str
    endpoint_pattern: str
    chain_id: int
    status: PolicyStatus = PolicyStatus.DRAFT
    auto_sign: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    archived_at: Optional[datetime] = None

    @field_validator("endpoint_pattern")
    @classmethod
    def _require_pattern(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("endpoint_pattern must not be empty")
        return value.strip()

    def covers(self, url: str) -> bool:
        return url.startswith(self.endpoint_pattern)


class PendingPayment(CanonicalModel):
    """
    Durable record of a payment waiting for out-of-band approval.

    Stores everything needed to replay the original request verbatim
    (method, body, headers) together with the serialized requirement set.
    """

    id: str = Field(default_factory=new_id)
    user_id: str
    url: str
    method: str = "GET"
    request_body: Optional[str] = None
    request_headers: Optional[Dict[str, str]] = None
    chain_id: int
    amount_raw: str
    asset: str
    payment_requirements: str
    status: PendingStatus = PendingStatus.PENDING
    signature: Optional[str] = None
    response_payload: Optional[str] = None
    response_status: Optional[int] = None
    tx_hash: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    completed_at: Optional[datetime] = None

    @field_validator("method")
    @classmethod
    def _normalize_method(cls, value: str) -> str:
        method = (value or "GET").upper()
        if method not in _HTTP_METHODS:
            raise ValueError(f"Unsupported HTTP method: {value}")
        return method

    @field_validator("amount_raw")
    @classmethod
    def _positive_amount(cls, value: str) -> str:
        if not value.isdigit() or int(value) <= 0:
            raise ValueError(f"amount_raw must be a positive integer string, got {value!r}")
        return value

    @field_validator("asset")
    @classmethod
    def _valid_asset(cls, value: str) -> str:
        if not is_evm_address(value):
            raise ValueError(f"asset must be an EVM address, got {value!r}")
        return value

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def time_remaining_seconds(self, now: Optional[datetime] = None) -> int:
        remaining = (self.expires_at - (now or utcnow())).total_seconds()
        return max(0, int(remaining))


class AuditRecord(CanonicalModel):
    """
    Immutable audit log entry (one per terminal payment outcome).

    Spending history and analytics read exclusively from these records.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str = Field(default_factory=new_id)
    user_id: str
    type: AuditType = AuditType.PAYMENT
    amount: Decimal = Decimal("0")
    endpoint: str
    network: Optional[str] = None
    chain_id: Optional[int] = None
    status: AuditStatus
    tx_hash: Optional[str] = None
    error_message: Optional[str] = None
    response_status: Optional[int] = None
    response_payload: Optional[str] = None
    payment_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("amount")
    @classmethod
    def _non_negative(cls, value: Decimal) -> Decimal:
        if value < 0:
            raise ValueError("amount must be non-negative")
        return value
