"""
In-Memory Collaborator Implementations

Process-local implementations of the store and wallet interfaces. They back
the test suite and single-process deployments; the pending-payment store
shows the one concurrency primitive a persistent backend must provide: a
conditional update guarded by the record's current status.
"""

import asyncio
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from ..engine.exceptions import InvalidInputError
from ..schemas.bases import PendingStatus, PolicyStatus
from ..schemas.records import AuditRecord, EndpointPolicy, PendingPayment, utcnow
from .bases import AuditStore, BalanceSource, PendingPaymentStore, PolicyStore, Signer, WalletDirectory


class InMemoryPolicyStore(PolicyStore):
    """Policy store keyed by policy id."""

    def __init__(self, policies: Optional[List[EndpointPolicy]] = None):
        self._policies: Dict[str, EndpointPolicy] = {}
        for policy in policies or []:
            self.add(policy)

    def add(self, policy: EndpointPolicy) -> EndpointPolicy:
        """
        Register a policy.

        Raises:
            InvalidInputError: If another active policy already exists for the
                same (user, chain, pattern)
        """
        if policy.status == PolicyStatus.ACTIVE:
            for existing in self._policies.values():
                if (
                    existing.status == PolicyStatus.ACTIVE
                    and existing.user_id == policy.user_id
                    and existing.chain_id == policy.chain_id
                    and existing.endpoint_pattern == policy.endpoint_pattern
                ):
                    raise InvalidInputError(
                        f"An active policy for {policy.endpoint_pattern!r} on chain "
                        f"{policy.chain_id} already exists"
                    )
        self._policies[policy.id] = policy
        return policy

    def all(self) -> List[EndpointPolicy]:
        return list(self._policies.values())

    async def find_active_policy(self, user_id: str, chain_id: int, url: str) -> Optional[EndpointPolicy]:
        candidates = [
            policy
            for policy in self._policies.values()
            if policy.user_id == user_id
            and policy.chain_id == chain_id
            and policy.status == PolicyStatus.ACTIVE
            and policy.covers(url)
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda policy: len(policy.endpoint_pattern))


class InMemoryPendingPaymentStore(PendingPaymentStore):
    """
    Pending payments held in a dict.

    The lock covers only the body of a single conditional update, so it
    plays the role of a database's atomic ``findOneAndUpdate``; no lock is
    ever held across two store calls. Records are copied in and out, so
    callers cannot change stored state except through a transition.
    """

    def __init__(self):
        self._records: Dict[str, PendingPayment] = {}
        self._lock = asyncio.Lock()

    async def create(self, payment: PendingPayment) -> PendingPayment:
        async with self._lock:
            if payment.id in self._records:
                raise InvalidInputError(f"Pending payment {payment.id} already exists")
            self._records[payment.id] = payment.model_copy(deep=True)
        return payment

    async def get(self, payment_id: str, user_id: str) -> Optional[PendingPayment]:
        record = self._records.get(payment_id)
        if record is None or record.user_id != user_id:
            return None
        return record.model_copy(deep=True)

    async def list_pending(
        self,
        user_id: str,
        *,
        chain_id: Optional[int] = None,
        now: Optional[datetime] = None,
        include_expired: bool = False,
    ) -> List[PendingPayment]:
        now = now or utcnow()
        records = [
            record.model_copy(deep=True)
            for record in self._records.values()
            if record.user_id == user_id
            and record.status == PendingStatus.PENDING
            and (chain_id is None or record.chain_id == chain_id)
            and (include_expired or not record.is_expired(now))
        ]
        return sorted(records, key=lambda record: record.created_at, reverse=True)

    async def list_expired_candidates(self, now: datetime) -> List[PendingPayment]:
        return [
            record.model_copy(deep=True)
            for record in self._records.values()
            if record.status == PendingStatus.PENDING and record.is_expired(now)
        ]

    async def _conditional_update(
        self,
        payment_id: str,
        user_id: str,
        expected: FrozenSet[PendingStatus],
        changes: Dict[str, Any],
    ) -> Optional[PendingPayment]:
        async with self._lock:
            record = self._records.get(payment_id)
            if record is None or record.user_id != user_id or record.status not in expected:
                return None
            updated = record.model_copy(update=changes, deep=True)
            self._records[payment_id] = updated
            return updated.model_copy(deep=True)


class InMemoryAuditStore(AuditStore):
    """Append-only list of audit records."""

    def __init__(self):
        self._records: List[AuditRecord] = []

    @property
    def records(self) -> List[AuditRecord]:
        return list(self._records)

    async def append(self, record: AuditRecord) -> AuditRecord:
        self._records.append(record)
        return record

    async def list_for_user(
        self,
        user_id: str,
        *,
        since: Optional[datetime] = None,
        chain_id: Optional[int] = None,
        limit: int = 100,
    ) -> List[AuditRecord]:
        records = [
            record
            for record in self._records
            if record.user_id == user_id
            and (since is None or record.created_at >= since)
            and (chain_id is None or record.chain_id == chain_id)
        ]
        records.sort(key=lambda record: record.created_at, reverse=True)
        return records[:limit]


class StaticWalletDirectory(WalletDirectory):
    """
    Fixed mapping of (user, chain) to signer or bare payer address.

    A bare address marks a wallet that can only pay through manual approval.
    """

    def __init__(self):
        self._signers: Dict[Tuple[str, int], Signer] = {}
        self._addresses: Dict[Tuple[str, int], str] = {}

    def register_signer(self, user_id: str, chain_id: int, signer: Signer) -> None:
        self._signers[(user_id, chain_id)] = signer

    def register_address(self, user_id: str, chain_id: int, address: str) -> None:
        self._addresses[(user_id, chain_id)] = address

    async def get_signer(self, user_id: str, chain_id: int) -> Optional[Signer]:
        return self._signers.get((user_id, chain_id))

    async def get_payer_address(self, user_id: str, chain_id: int) -> Optional[str]:
        signer = self._signers.get((user_id, chain_id))
        if signer is not None:
            return signer.address
        return self._addresses.get((user_id, chain_id))


class StaticBalanceSource(BalanceSource):
    """Balances (token units) keyed by (lowercased address, chain id). Unknown pairs read as 0."""

    def __init__(self, balances: Optional[Dict[Tuple[str, int], str]] = None):
        self._balances = {
            (address.lower(), chain_id): str(value)
            for (address, chain_id), value in (balances or {}).items()
        }

    def set_balance(self, address: str, chain_id: int, value: int | str | Decimal) -> None:
        self._balances[(address.lower(), chain_id)] = str(value)

    async def balance(self, address: str, chain_id: int) -> str:
        return self._balances.get((address.lower(), chain_id), "0")
