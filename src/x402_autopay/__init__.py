"""
x402 Autopay

Payment negotiation and settlement engine for agents paying HTTP resources
behind ``402 Payment Required`` challenges (x402), with a pending-payment
state machine for payments that wait on a human approval.
"""

from .config import Settings
from .engine.exceptions import X402AutopayError
from .engine.audit import AuditLogWriter
from .engine.selector import ChainSelector
from .engine.executors import SettlementExecutor
from .engine.pending import PendingPaymentService
from .clients import PaymentHttpClient
from .schemas import PaymentResult, PaymentStatus, SigningPath

__version__ = "0.1.0"

__all__ = [
    "Settings",
    "AuditLogWriter",
    "ChainSelector",
    "PendingPaymentService",
    "SettlementExecutor",
    "X402AutopayError",
    "PaymentHttpClient",
    "PaymentResult",
    "PaymentStatus",
    "SigningPath",
]
