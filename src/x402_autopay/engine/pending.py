"""
Pending Payment Service

Drives the manual-approval lifecycle of a payment on top of a
``PendingPaymentStore``:

    pending --approve--> approved --complete--> completed
       |                    \\--fail--> failed
       |--expire--> expired
       \\--reject--> rejected   (also from expired)

Every transition is a single conditional update in the store. A transition
that loses a race returns None instead of raising, so concurrent callers
(a user approving while the sweeper expires) settle on exactly one winner.

Expiry is a soft deadline: it is applied lazily whenever a record is read
through this service, and proactively by ``sweep_expired``.

Core Classes:
    - PendingPaymentService: create / poll / approve-and-settle / expire

Dependencies:
    - pydantic: Record validation
    - executors.SettlementExecutor: Replays the stored request with the proof
"""

import json
import logging
import re
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import ValidationError

from ..adapters.bases import PendingPaymentStore
from ..adapters.evm.constants import format_amount_for_display, resolve_network_to_chain_id
from ..clients.http_client import sanitize_headers
from ..config import Settings
from ..schemas.bases import PaymentStatus, PendingStatus, SigningPath
from ..schemas.https import PaymentOffer, PaymentRequirementSet, RequestOptions, TransferAuthorization
from ..schemas.records import PendingPayment, is_evm_address, utcnow
from ..schemas.results import PaymentResult, PendingPaymentOutcome, PendingPaymentView
from .audit import EXPIRED_MESSAGE, AuditLogWriter
from .exceptions import InvalidInputError, StoreError
from .executors import SettlementExecutor


logger = logging.getLogger(__name__)

_SIGNATURE_PATTERN = re.compile(r"^0x(?:[0-9a-fA-F]{2})+$")

# Status names shown to pollers
_VIEW_STATUS = {
    PendingStatus.PENDING: "pending",
    PendingStatus.APPROVED: "processing",
    PendingStatus.COMPLETED: "completed",
    PendingStatus.FAILED: "failed",
    PendingStatus.REJECTED: "rejected",
    PendingStatus.EXPIRED: "expired",
}
_RESULT_STATUS = {**_VIEW_STATUS, PendingStatus.PENDING: "awaiting_signature"}


def _stored_requirements(payment: PendingPayment) -> PaymentRequirementSet:
    try:
        return PaymentRequirementSet.from_json(payment.payment_requirements)
    except ValueError as exc:
        raise StoreError(f"Pending payment {payment.id} has unreadable payment requirements: {exc}") from exc


def _stored_offer(requirements: PaymentRequirementSet, payment: PendingPayment) -> PaymentOffer:
    """The offer the record was created for: same chain, and same asset and amount when possible."""
    on_chain = [
        offer for offer in requirements.accepts if resolve_network_to_chain_id(offer.network) == payment.chain_id
    ]
    for offer in on_chain:
        if offer.asset.lower() == payment.asset.lower() and offer.amount == payment.amount_raw:
            return offer
    if on_chain:
        return on_chain[0]
    raise StoreError(f"Pending payment {payment.id} has no stored offer on chain {payment.chain_id}")


class PendingPaymentService:
    """
    Lifecycle operations for payments awaiting manual approval.

    Args:
        store: Pending payment store (conditional updates)
        audit: Audit log writer (expiry and settlement records)
        executor: Executor used to replay approved requests
        settings: TTL of new records
        clock: Source of the current time, injectable for tests

    Example:
        result = await executor.execute_payment(url, "u1")
        if result.status == PaymentStatus.PENDING_APPROVAL:
            pending = await service.create_from_result(result, "u1", url)
            ...
            result = await service.approve_and_settle(pending.id, "u1", signature, authorization)
    """

    def __init__(
        self,
        store: PendingPaymentStore,
        audit: AuditLogWriter,
        executor: SettlementExecutor,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._audit = audit
        self._executor = executor
        self._settings = settings or Settings()
        self._clock = clock

    # =========================================================================
    # Creation
    # =========================================================================

    async def create(
        self,
        *,
        user_id: str,
        url: str,
        chain_id: int,
        amount_raw: str,
        asset: str,
        payment_requirements: str,
        options: Optional[RequestOptions] = None,
        max_timeout_seconds: Optional[int] = None,
    ) -> PendingPayment:
        """
        Persist a new ``pending`` record.

        The record expires after the configured TTL, or sooner when the
        offer's own timeout is shorter.

        Raises:
            InvalidInputError: If a field is invalid or the requirements do
                not deserialize
        """
        options = options or RequestOptions()
        try:
            PaymentRequirementSet.from_json(payment_requirements)
        except ValueError as exc:
            raise InvalidInputError(f"Invalid payment requirements: {exc}") from exc

        ttl = self._settings.pending_ttl_seconds
        if max_timeout_seconds:
            ttl = min(ttl, max_timeout_seconds)
        now = self._clock()
        try:
            payment = PendingPayment(
                user_id=user_id,
                url=url,
                method=options.method,
                request_body=options.body,
                request_headers=sanitize_headers(options.headers) or None,
                chain_id=chain_id,
                amount_raw=amount_raw,
                asset=asset,
                payment_requirements=payment_requirements,
                created_at=now,
                expires_at=now + timedelta(seconds=ttl),
            )
        except ValidationError as exc:
            raise InvalidInputError(f"Invalid pending payment: {exc}") from exc

        created = await self._store.create(payment)
        logger.info(
            "pending payment created",
            extra={"user_id": user_id, "url": url, "chain_id": chain_id, "payment_id": created.id, "action": "pending_created"},
        )
        return created

    async def create_from_result(
        self,
        result: PaymentResult,
        user_id: str,
        url: str,
        options: Optional[RequestOptions] = None,
    ) -> PendingPayment:
        """
        Turn a ``pending_approval`` executor result into a pending record.

        Raises:
            InvalidInputError: If the result is not ``pending_approval``
        """
        if result.status != PaymentStatus.PENDING_APPROVAL:
            raise InvalidInputError(f"Expected a pending_approval result, got {result.status.value}")
        return await self.create(
            user_id=user_id,
            url=url,
            chain_id=result.chain_id,
            amount_raw=result.amount_raw,
            asset=result.asset,
            payment_requirements=result.payment_requirements,
            options=options,
            max_timeout_seconds=result.max_timeout_seconds,
        )

    # =========================================================================
    # Guarded transitions
    # =========================================================================

    async def approve(self, payment_id: str, user_id: str, signature: str) -> Optional[PendingPayment]:
        return await self._store.approve(payment_id, user_id, signature)

    async def complete(
        self,
        payment_id: str,
        user_id: str,
        *,
        response_payload: Optional[str],
        response_status: Optional[int],
        tx_hash: Optional[str] = None,
    ) -> Optional[PendingPayment]:
        return await self._store.complete(
            payment_id,
            user_id,
            response_payload=response_payload,
            response_status=response_status,
            tx_hash=tx_hash,
        )

    async def fail(
        self,
        payment_id: str,
        user_id: str,
        *,
        error: str,
        response_payload: Optional[str] = None,
        response_status: Optional[int] = None,
    ) -> Optional[PendingPayment]:
        return await self._store.fail(
            payment_id,
            user_id,
            error=error,
            response_payload=response_payload,
            response_status=response_status,
        )

    async def reject(self, payment_id: str, user_id: str) -> Optional[PendingPayment]:
        rejected = await self._store.reject(payment_id, user_id)
        if rejected is not None:
            logger.info(
                "pending payment rejected",
                extra={"user_id": user_id, "payment_id": payment_id, "action": "pending_rejected"},
            )
        return rejected

    async def expire_with_audit(
        self,
        payment_id: str,
        user_id: str,
        message: str = EXPIRED_MESSAGE,
    ) -> Optional[PendingPayment]:
        """
        Expire a pending record and write its ``expired`` audit record.

        The audit record is written only by the caller whose transition
        succeeded, so calling this repeatedly (or concurrently) records the
        expiry once.

        Returns:
            The expired record, or None when the record was not ``pending``
        """
        expired = await self._store.expire(payment_id, user_id)
        if expired is None:
            return None
        await self._audit.record_expiry(expired, message)
        logger.info(
            message,
            extra={
                "user_id": user_id,
                "url": expired.url,
                "chain_id": expired.chain_id,
                "payment_id": payment_id,
                "action": "pending_expired",
            },
        )
        return expired

    async def _refresh(self, payment: PendingPayment) -> PendingPayment:
        """Apply lazy expiry to a record just read from the store."""
        if payment.status != PendingStatus.PENDING or not payment.is_expired(self._clock()):
            return payment
        expired = await self.expire_with_audit(payment.id, payment.user_id)
        if expired is not None:
            return expired
        # Another caller moved it first; report what it is now.
        current = await self._store.get(payment.id, payment.user_id)
        return current or payment

    # =========================================================================
    # Polling
    # =========================================================================

    async def check(self, payment_id: str, user_id: str) -> Optional[PendingPaymentView]:
        """Current status of a pending payment, or None when it does not exist."""
        payment = await self._store.get(payment_id, user_id)
        if payment is None:
            return None
        payment = await self._refresh(payment)

        amount, symbol = format_amount_for_display(payment.amount_raw, payment.asset, payment.chain_id)
        remaining = None
        if payment.status == PendingStatus.PENDING:
            remaining = payment.time_remaining_seconds(self._clock())
        return PendingPaymentView(
            id=payment.id,
            status=_VIEW_STATUS[payment.status],
            url=payment.url,
            chain_id=payment.chain_id,
            amount=amount,
            symbol=symbol,
            amount_raw=payment.amount_raw,
            asset=payment.asset,
            time_remaining_seconds=remaining,
            expires_at=payment.expires_at,
            tx_hash=payment.tx_hash,
            response_status=payment.response_status,
        )

    async def get_result(self, payment_id: str, user_id: str) -> Optional[PendingPaymentOutcome]:
        """
        Outcome of a pending payment.

        A completed payment carries the paid response in ``data``, decoded
        from JSON when it parses; a failed one carries the stored error or
        response text in ``error``.
        """
        payment = await self._store.get(payment_id, user_id)
        if payment is None:
            return None
        payment = await self._refresh(payment)

        outcome = PendingPaymentOutcome(
            id=payment.id,
            status=_RESULT_STATUS[payment.status],
            tx_hash=payment.tx_hash,
            response_status=payment.response_status,
        )
        if payment.status == PendingStatus.COMPLETED:
            outcome.data = self._decode_payload(payment.response_payload)
        elif payment.status == PendingStatus.FAILED:
            outcome.error = payment.response_payload or "Payment failed"
        elif payment.status == PendingStatus.EXPIRED:
            outcome.error = EXPIRED_MESSAGE
        elif payment.status == PendingStatus.REJECTED:
            outcome.error = "Payment rejected by user"
        return outcome

    @staticmethod
    def _decode_payload(payload: Optional[str]) -> Any:
        if payload is None:
            return None
        try:
            return json.loads(payload)
        except ValueError:
            return payload

    async def list_pending(
        self,
        user_id: str,
        chain_id: Optional[int] = None,
        include_expired: bool = False,
    ) -> List[PendingPayment]:
        return await self._store.list_pending(
            user_id, chain_id=chain_id, now=self._clock(), include_expired=include_expired
        )

    async def count_pending(self, user_id: str, chain_id: Optional[int] = None) -> int:
        return await self._store.count_pending(user_id, chain_id=chain_id, now=self._clock())

    async def sweep_expired(self, now: Optional[datetime] = None) -> List[PendingPayment]:
        """
        Expire every overdue ``pending`` record, across all users.

        Records already moved by someone else are skipped, so overlapping
        sweeps write one audit record per payment.

        Returns:
            Records this sweep expired
        """
        candidates = await self._store.list_expired_candidates(now or self._clock())
        swept = []
        for candidate in candidates:
            expired = await self.expire_with_audit(candidate.id, candidate.user_id)
            if expired is not None:
                swept.append(expired)
        if swept:
            logger.info("expired %d pending payments", len(swept), extra={"action": "pending_sweep"})
        return swept

    # =========================================================================
    # Approval
    # =========================================================================

    def _validate_authorization(
        self,
        authorization: Union[TransferAuthorization, Dict[str, Any]],
        payment: PendingPayment,
        offer: PaymentOffer,
    ) -> TransferAuthorization:
        if not isinstance(authorization, TransferAuthorization):
            try:
                authorization = TransferAuthorization.model_validate(authorization)
            except ValidationError as exc:
                raise InvalidInputError(f"Invalid authorization: {exc}") from exc

        if not is_evm_address(authorization.from_):
            raise InvalidInputError(f"Invalid payer address: {authorization.from_!r}")
        if authorization.to.lower() != offer.pay_to.lower():
            raise InvalidInputError(f"Authorization recipient {authorization.to} does not match {offer.pay_to}")
        if authorization.value != int(payment.amount_raw):
            raise InvalidInputError(
                f"Authorization value {authorization.value} does not match amount {payment.amount_raw}"
            )
        if authorization.valid_before <= int(self._clock().timestamp()):
            raise InvalidInputError("Authorization validBefore is already in the past")
        return authorization

    async def approve_and_settle(
        self,
        payment_id: str,
        user_id: str,
        signature: str,
        authorization: Union[TransferAuthorization, Dict[str, Any]],
    ) -> PaymentResult:
        """
        Approve a pending payment with an externally produced signature and
        replay the stored request with the proof attached.

        Inputs are validated before any state changes. The record is moved
        to ``approved`` before the request is replayed, so a concurrent
        expiry or a second approval cannot also settle it.

        Args:
            payment_id: Pending payment id
            user_id: Owner of the record
            signature: 0x-prefixed signature over the authorization
            authorization: Signed transfer authorization (model or wire dict)

        Returns:
            PaymentResult: ``completed`` / ``failed`` from the replay, or
            ``rejected`` when the record is missing, expired or no longer pending

        Raises:
            InvalidInputError: If the signature or authorization is malformed
                or does not match the stored payment
        """
        if not isinstance(signature, str) or not _SIGNATURE_PATTERN.match(signature):
            raise InvalidInputError("Signature must be 0x-prefixed hex")

        payment = await self._store.get(payment_id, user_id)
        if payment is None:
            return PaymentResult.rejected(f"Pending payment {payment_id} not found")

        requirements = _stored_requirements(payment)
        offer = _stored_offer(requirements, payment)
        authorization = self._validate_authorization(authorization, payment, offer)

        details = {
            "signing_path": SigningPath.MANUAL_APPROVAL,
            "chain_id": payment.chain_id,
            "network": offer.network,
            "amount_raw": payment.amount_raw,
            "asset": payment.asset,
        }

        payment = await self._refresh(payment)
        if payment.status == PendingStatus.EXPIRED:
            return PaymentResult.rejected(EXPIRED_MESSAGE, **details)

        approved = await self._store.approve(payment_id, user_id, signature)
        if approved is None:
            current = await self._store.get(payment_id, user_id)
            status = current.status.value if current else "unknown"
            return PaymentResult.rejected(f"Payment is not awaiting approval (status: {status})", **details)

        logger.info(
            "pending payment approved",
            extra={"user_id": user_id, "url": approved.url, "chain_id": approved.chain_id, "payment_id": payment_id, "action": "pending_approved"},
        )
        result = await self._executor.settle(
            user_id=user_id,
            url=approved.url,
            options=RequestOptions(
                method=approved.method,
                body=approved.request_body,
                headers=approved.request_headers,
            ),
            requirements=requirements,
            offer=offer,
            chain_id=approved.chain_id,
            authorization=authorization,
            signature=signature,
            signing_path=SigningPath.MANUAL_APPROVAL,
            payment_id=payment_id,
        )

        response = result.response
        if result.status == PaymentStatus.COMPLETED:
            await self._store.complete(
                payment_id,
                user_id,
                response_payload=response.body if response else None,
                response_status=response.status_code if response else None,
                tx_hash=result.tx_hash,
            )
        else:
            await self._store.fail(
                payment_id,
                user_id,
                error=result.error or "Payment failed",
                response_payload=response.body if response else None,
                response_status=response.status_code if response else None,
            )
        return result
