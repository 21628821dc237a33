"""
Typed Results Returned by the Engine

Every expected business outcome of a payment attempt is expressed as a
``PaymentResult`` rather than an exception, so callers (agents, dashboards)
always receive a structured status.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import Field

from .bases import CanonicalModel, PaymentStatus, SigningPath
from .https import HttpResult, SettlementResponse


class PaymentResult(CanonicalModel):
    """
    Outcome of ``SettlementExecutor.execute_payment``.

    Field usage per status:
        completed: response, tx_hash, settlement (paid) or just response (free resource)
        failed: error, response (when the server answered)
        rejected: error
        pending_approval: amount_raw, asset, chain_id, network,
            payment_requirements, max_timeout_seconds
    """

    status: PaymentStatus
    signing_path: Optional[SigningPath] = None
    error: Optional[str] = None
    response: Optional[HttpResult] = None
    settlement: Optional[SettlementResponse] = None
    tx_hash: Optional[str] = None
    chain_id: Optional[int] = None
    network: Optional[str] = None
    amount_raw: Optional[str] = None
    asset: Optional[str] = None
    payment_requirements: Optional[str] = Field(default=None, description="Serialized PaymentRequirementSet")
    max_timeout_seconds: Optional[int] = None

    @property
    def success(self) -> bool:
        return self.status == PaymentStatus.COMPLETED

    @classmethod
    def rejected(cls, reason: str, **kwargs) -> "PaymentResult":
        return cls(status=PaymentStatus.REJECTED, error=reason, **kwargs)

    @classmethod
    def failed(cls, reason: str, **kwargs) -> "PaymentResult":
        return cls(status=PaymentStatus.FAILED, error=reason, **kwargs)


class PendingPaymentView(CanonicalModel):
    """
    Status snapshot returned by ``PendingPaymentService.check``.

    ``status`` is the record status, except that ``approved`` is shown as
    ``processing`` since the paid retry is in flight.
    """

    id: str
    status: str
    url: str
    chain_id: int
    amount: Optional[Decimal] = None
    symbol: str = "?"
    amount_raw: str
    asset: str
    time_remaining_seconds: Optional[int] = None
    expires_at: datetime
    tx_hash: Optional[str] = None
    response_status: Optional[int] = None


class PendingPaymentOutcome(CanonicalModel):
    """
    Result view returned by ``PendingPaymentService.get_result``.

    ``data`` holds the paid response, JSON-decoded when possible, once the
    payment completed; ``error`` holds the failure detail otherwise.
    """

    id: str
    status: str
    data: Optional[Any] = None
    error: Optional[str] = None
    tx_hash: Optional[str] = None
    response_status: Optional[int] = None
