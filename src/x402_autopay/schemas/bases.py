"""
Base Schema Models for the x402 Autopay Engine

This module defines the base model and the shared enumerations that every
other schema inherits from or refers to. It provides the foundation for
type safety, validation, and consistent serialization of offers, records
and results across the engine.

Core Classes:
    - CanonicalModel: Pydantic base model with deterministic JSON serialization
    - PaymentStatus: Outcome of a settlement attempt
    - PendingStatus: Lifecycle status of a pending payment
    - PolicyStatus: Lifecycle status of an endpoint policy
    - SigningPath: Automatic (hot wallet / session key) or manual approval
    - AuditStatus: Terminal status recorded in the audit log
    - AuditType: Kind of audit record (payment or withdrawal)

Dependencies:
    - pydantic: For data validation and serialization
"""

import json
from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict


class CanonicalModel(BaseModel):
    """
    Pydantic base model with canonical JSON serialization.

    Ensures a consistent, deterministic JSON representation (sorted keys,
    no whitespace) suitable for storing serialized requirement sets and
    for comparing records in tests.

    Example:
        class MyModel(CanonicalModel):
            name: str
            value: int

        model = MyModel(name="test", value=123)
        canonical_json = model.to_canonical_json()  # '{"name":"test","value":123}'
    """

    model_config = ConfigDict(populate_by_name=True)

    def to_canonical_json(self) -> str:
        """
        Convert model to a canonical JSON string.

        ``model_dump(mode="json", by_alias=True)`` converts enums, Decimals and
        datetimes to plain types using wire names; ``json.dumps`` with sorted
        keys and compact separators makes the output deterministic.

        Returns:
            str: JSON string with sorted keys and no extra whitespace.
        """
        data = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        return json.dumps(
            data,
            separators=(",", ":"),
            sort_keys=True,
            ensure_ascii=False
        )

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert model to dictionary representation.

        Returns:
            Dict[str, Any]: Dictionary with all model fields.
        """
        return self.model_dump()


class PaymentStatus(str, Enum):
    """Outcome of ``SettlementExecutor.execute_payment``."""
    COMPLETED = "completed"
    FAILED = "failed"
    REJECTED = "rejected"
    PENDING_APPROVAL = "pending_approval"


class PendingStatus(str, Enum):
    """
    Lifecycle of a pending payment.

    Allowed edges: pending -> approved -> completed, approved -> failed,
    pending -> expired, {pending, expired} -> rejected.
    """
    PENDING = "pending"
    APPROVED = "approved"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
    REJECTED = "rejected"


class PolicyStatus(str, Enum):
    """Lifecycle of an endpoint policy. Only ``active`` policies authorize payment."""
    ACTIVE = "active"
    DRAFT = "draft"
    ARCHIVED = "archived"


class SigningPath(str, Enum):
    """How an authorization gets signed once a chain has been selected."""
    AUTOMATIC = "automatic"
    MANUAL_APPROVAL = "manual_approval"


class AuditStatus(str, Enum):
    """Terminal outcome stored on an audit record."""
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


class AuditType(str, Enum):
    """Kind of audited money movement."""
    PAYMENT = "payment"
    WITHDRAWAL = "withdrawal"
