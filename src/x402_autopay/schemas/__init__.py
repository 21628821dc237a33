from .bases import (
    CanonicalModel,
    PaymentStatus,
    PendingStatus,
    PolicyStatus,
    SigningPath,
    AuditStatus,
    AuditType,
)
from .https import (
    PaymentOffer,
    PaymentRequirementSet,
    TransferAuthorization,
    ExactPaymentPayload,
    PaymentProof,
    SettlementResponse,
    HttpResult,
    RequestOptions,
)
from .records import EndpointPolicy, PendingPayment, AuditRecord
from .results import PaymentResult, PendingPaymentView, PendingPaymentOutcome
from .versions import WireFormat

__all__ = [
    "CanonicalModel",
    "PaymentStatus",
    "PendingStatus",
    "PolicyStatus",
    "SigningPath",
    "AuditStatus",
    "AuditType",
    "PaymentOffer",
    "PaymentRequirementSet",
    "TransferAuthorization",
    "ExactPaymentPayload",
    "PaymentProof",
    "SettlementResponse",
    "HttpResult",
    "RequestOptions",
    "EndpointPolicy",
    "PendingPayment",
    "AuditRecord",
    "PaymentResult",
    "PendingPaymentView",
    "PendingPaymentOutcome",
    "WireFormat",
]
