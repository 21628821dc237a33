"""
Audit Log Writer

Appends one immutable ``AuditRecord`` per terminal money event (paid,
failed, expired, withdrawal). Spending history is read back from this log
only, never from pending-payment records.

An append that fails with a ``StoreError`` is retried a bounded number of
times; the transition that triggered it is not reported done until the
record is written or ``AuditWriteError`` is raised.
"""

import asyncio
import logging
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, List, Optional

from ..adapters.bases import AuditStore
from ..adapters.evm.constants import format_amount_for_display
from ..schemas.bases import AuditStatus, AuditType
from ..schemas.records import AuditRecord, PendingPayment, is_evm_address
from .exceptions import AuditWriteError, InvalidInputError, StoreError

if TYPE_CHECKING:
    from ..config import Settings


logger = logging.getLogger(__name__)

EXPIRED_MESSAGE = "Payment expired before user approval"


class AuditLogWriter:
    """
    Writes audit records through an ``AuditStore``.

    Args:
        store: Append-only store
        attempts: Maximum append attempts per record
        retry_delay: Seconds between attempts (doubled after each failure)
        excerpt_chars: Maximum length of stored response payloads
    """

    def __init__(
        self,
        store: AuditStore,
        attempts: int = 3,
        retry_delay: float = 0.05,
        excerpt_chars: int = 500,
    ):
        self._store = store
        self._attempts = max(1, attempts)
        self._retry_delay = retry_delay
        self._excerpt_chars = excerpt_chars

    @classmethod
    def from_settings(cls, store: AuditStore, settings: "Settings", retry_delay: float = 0.05) -> "AuditLogWriter":
        return cls(
            store,
            attempts=settings.audit_write_attempts,
            retry_delay=retry_delay,
            excerpt_chars=settings.response_excerpt_chars,
        )

    async def _append(self, record: AuditRecord) -> AuditRecord:
        delay = self._retry_delay
        for attempt in range(1, self._attempts + 1):
            try:
                return await self._store.append(record)
            except StoreError as exc:
                logger.warning(
                    "audit append failed (attempt %d/%d): %s",
                    attempt,
                    self._attempts,
                    exc,
                    extra={"user_id": record.user_id, "action": "audit_retry"},
                )
                if attempt == self._attempts:
                    raise AuditWriteError(
                        f"Audit record {record.id} not written after {attempt} attempts: {exc}",
                        attempts=attempt,
                    ) from exc
                await asyncio.sleep(delay)
                delay *= 2
        raise AuditWriteError(f"Audit record {record.id} not written", attempts=self._attempts)

    def _display_amount(
        self,
        amount_raw: Optional[str],
        asset: Optional[str],
        chain_id: Optional[int],
        context: dict,
        kind: str = "payment",
    ) -> Decimal:
        if amount_raw is None:
            return Decimal("0")
        amount, _symbol = format_amount_for_display(amount_raw, asset, chain_id)
        if amount is None:
            action = "expire_amount_unknown" if kind == "expired payment" else "amount_unknown"
            logger.warning(
                "Could not determine amount for %s transaction",
                kind,
                extra={**context, "action": action},
            )
            return Decimal("0")
        return amount

    def _excerpt(self, payload: Optional[str]) -> Optional[str]:
        if payload is None:
            return None
        return payload[: self._excerpt_chars]

    async def record_payment(
        self,
        *,
        user_id: str,
        endpoint: str,
        chain_id: Optional[int],
        network: Optional[str],
        amount_raw: Optional[str],
        asset: Optional[str],
        status: AuditStatus,
        tx_hash: Optional[str] = None,
        error_message: Optional[str] = None,
        response_status: Optional[int] = None,
        response_payload: Optional[str] = None,
        payment_id: Optional[str] = None,
    ) -> AuditRecord:
        """
        Record the outcome of a payment attempt.

        ``chain_id`` and ``amount_raw`` are None when the attempt failed
        before a challenge was read; the record then carries amount 0.
        """
        amount = self._display_amount(
            amount_raw, asset, chain_id, {"user_id": user_id, "url": endpoint, "chain_id": chain_id}
        )
        record = AuditRecord(
            user_id=user_id,
            type=AuditType.PAYMENT,
            amount=amount,
            endpoint=endpoint,
            network=network,
            chain_id=chain_id,
            status=status,
            tx_hash=tx_hash,
            error_message=error_message,
            response_status=response_status,
            response_payload=self._excerpt(response_payload),
            payment_id=payment_id,
        )
        return await self._append(record)

    async def record_expiry(self, payment: PendingPayment, message: str = EXPIRED_MESSAGE) -> AuditRecord:
        """
        Record that a pending payment expired unapproved.

        An unparseable raw amount is logged and recorded as 0 rather than
        failing the expiry.
        """
        amount = self._display_amount(
            payment.amount_raw,
            payment.asset,
            payment.chain_id,
            {
                "user_id": payment.user_id,
                "url": payment.url,
                "chain_id": payment.chain_id,
                "payment_id": payment.id,
            },
            kind="expired payment",
        )
        record = AuditRecord(
            user_id=payment.user_id,
            type=AuditType.PAYMENT,
            amount=amount,
            endpoint=payment.url,
            network=f"eip155:{payment.chain_id}",
            chain_id=payment.chain_id,
            status=AuditStatus.EXPIRED,
            error_message=message,
            payment_id=payment.id,
        )
        return await self._append(record)

    async def record_withdrawal(
        self,
        *,
        user_id: str,
        chain_id: int,
        amount_raw: str,
        asset: str,
        destination: str,
        tx_hash: Optional[str] = None,
    ) -> AuditRecord:
        """
        Record a completed withdrawal from the agent wallet to ``destination``.

        Raises:
            InvalidInputError: If the destination is not an address or the
                amount is not a positive integer
        """
        if not is_evm_address(destination):
            raise InvalidInputError(f"Invalid withdrawal destination: {destination!r}")
        if not str(amount_raw).isdigit() or int(amount_raw) <= 0:
            raise InvalidInputError(f"Withdrawal amount must be a positive integer, got {amount_raw!r}")
        amount = self._display_amount(
            amount_raw, asset, chain_id, {"user_id": user_id, "chain_id": chain_id}, kind="withdrawal"
        )
        record = AuditRecord(
            user_id=user_id,
            type=AuditType.WITHDRAWAL,
            amount=amount,
            endpoint=destination,
            network=f"eip155:{chain_id}",
            chain_id=chain_id,
            status=AuditStatus.COMPLETED,
            tx_hash=tx_hash,
        )
        return await self._append(record)

    async def spending_history(
        self,
        user_id: str,
        *,
        since: Optional[datetime] = None,
        chain_id: Optional[int] = None,
        limit: int = 100,
    ) -> List[AuditRecord]:
        """Audit records of a user, newest first."""
        if limit <= 0:
            raise InvalidInputError(f"limit must be positive, got {limit}")
        return await self._store.list_for_user(user_id, since=since, chain_id=chain_id, limit=limit)

    async def total_spent(
        self,
        user_id: str,
        *,
        since: Optional[datetime] = None,
        chain_id: Optional[int] = None,
    ) -> Decimal:
        """Sum of completed payments (withdrawals excluded)."""
        records = await self._store.list_for_user(user_id, since=since, chain_id=chain_id, limit=10_000)
        return sum(
            (r.amount for r in records if r.type == AuditType.PAYMENT and r.status == AuditStatus.COMPLETED),
            Decimal("0"),
        )
