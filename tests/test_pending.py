"""
Tests for the pending payment state machine and its service operations.
"""

import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from x402_autopay.engine.audit import EXPIRED_MESSAGE
from x402_autopay.engine.authorization import build_authorization, build_typed_data
from x402_autopay.engine.exceptions import InvalidInputError
from x402_autopay.engine.pending import PendingPaymentService
from x402_autopay.schemas.bases import AuditStatus, PaymentStatus, PendingStatus, SigningPath
from x402_autopay.schemas.https import PaymentRequirementSet, RequestOptions
from x402_autopay.schemas.records import PendingPayment
from x402_autopay.schemas.results import PaymentResult
from x402_autopay.schemas.versions import WireFormat

from conftest import BASE, BASE_USDC, PAID_URL, PAY_TO, TX_HASH, USER_ID, header_offer


START = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
SIGNATURE = "0x" + "11" * 65


class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += timedelta(seconds=seconds)


def challenge_json(max_timeout: int = 3600) -> str:
    challenge = {
        "x402Version": 2,
        "resource": {"url": PAID_URL},
        "accepts": [header_offer(maxTimeoutSeconds=max_timeout)],
    }
    return PaymentRequirementSet.from_challenge(WireFormat.HEADER, challenge).to_json()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def service(engine, clock) -> PendingPaymentService:
    return PendingPaymentService(engine.pending_store, engine.audit, engine.executor, engine.settings, clock=clock)


async def create_pending(service, max_timeout=None, options=None, user_id=USER_ID) -> PendingPayment:
    return await service.create(
        user_id=user_id,
        url=PAID_URL,
        chain_id=BASE,
        amount_raw="10000",
        asset=BASE_USDC,
        payment_requirements=challenge_json(),
        options=options,
        max_timeout_seconds=max_timeout,
    )


async def sign_externally(engine, payment: PendingPayment, valid_before_offset: int = 300):
    """What the wallet-connect UI does: build and sign the authorization for the stored offer."""
    requirements = PaymentRequirementSet.from_json(payment.payment_requirements)
    offer = requirements.accepts[0]
    authorization = build_authorization(offer, engine.signer.address, validity_seconds=valid_before_offset)
    signature = await engine.signer.sign(build_typed_data(authorization, offer, payment.chain_id))
    return signature, authorization


# ========================================================================
# Creation
# ========================================================================

@pytest.mark.asyncio
async def test_create_uses_default_ttl(service):
    payment = await create_pending(service)

    assert payment.status == PendingStatus.PENDING
    assert payment.expires_at == START + timedelta(minutes=30)


@pytest.mark.asyncio
async def test_create_uses_shorter_offer_timeout(service):
    payment = await create_pending(service, max_timeout=90)

    assert payment.expires_at == START + timedelta(seconds=90)


@pytest.mark.asyncio
async def test_create_stores_sanitized_request(service):
    options = RequestOptions(method="post", body="{}", headers={"X-Trace": "1", "Cookie": "session=secret"})

    payment = await create_pending(service, options=options)

    assert payment.method == "POST"
    assert payment.request_body == "{}"
    assert payment.request_headers == {"X-Trace": "1"}


@pytest.mark.asyncio
async def test_create_rejects_invalid_input(service):
    with pytest.raises(InvalidInputError):
        await service.create(
            user_id=USER_ID,
            url=PAID_URL,
            chain_id=BASE,
            amount_raw="-5",
            asset=BASE_USDC,
            payment_requirements=challenge_json(),
        )
    with pytest.raises(InvalidInputError):
        await service.create(
            user_id=USER_ID,
            url=PAID_URL,
            chain_id=BASE,
            amount_raw="10000",
            asset=BASE_USDC,
            payment_requirements="not json",
        )
    assert await service.count_pending(USER_ID) == 0


@pytest.mark.asyncio
async def test_create_from_result_requires_pending_approval(service):
    with pytest.raises(InvalidInputError):
        await service.create_from_result(PaymentResult.rejected("nope"), USER_ID, PAID_URL)


# ========================================================================
# Transition table
# ========================================================================

@pytest.mark.asyncio
async def test_happy_path_transitions(service):
    payment = await create_pending(service)

    approved = await service.approve(payment.id, USER_ID, SIGNATURE)
    assert approved.status == PendingStatus.APPROVED
    assert approved.signature == SIGNATURE

    completed = await service.complete(payment.id, USER_ID, response_payload='{"ok": true}', response_status=200, tx_hash=TX_HASH)
    assert completed.status == PendingStatus.COMPLETED
    assert completed.tx_hash == TX_HASH
    assert completed.completed_at is not None


@pytest.mark.asyncio
async def test_store_hands_out_copies(engine, service):
    payment = await create_pending(service)
    payment.status = PendingStatus.COMPLETED

    fetched = await engine.pending_store.get(payment.id, USER_ID)
    fetched.signature = SIGNATURE

    stored = await engine.pending_store.get(payment.id, USER_ID)
    assert stored.status == PendingStatus.PENDING
    assert stored.signature is None
    assert await service.approve(payment.id, USER_ID, SIGNATURE) is not None


@pytest.mark.asyncio
async def test_out_of_order_transitions_return_none(service):
    payment = await create_pending(service)

    assert await service.complete(payment.id, USER_ID, response_payload=None, response_status=None) is None
    assert await service.fail(payment.id, USER_ID, error="boom") is None

    await service.approve(payment.id, USER_ID, SIGNATURE)
    assert await service.approve(payment.id, USER_ID, SIGNATURE) is None
    assert await service.reject(payment.id, USER_ID) is None
    assert await service.expire_with_audit(payment.id, USER_ID) is None

    failed = await service.fail(payment.id, USER_ID, error="boom")
    assert failed.status == PendingStatus.FAILED
    assert failed.response_payload == "boom"

    for attempt in (
        service.approve(payment.id, USER_ID, SIGNATURE),
        service.complete(payment.id, USER_ID, response_payload=None, response_status=None),
        service.reject(payment.id, USER_ID),
    ):
        assert await attempt is None


@pytest.mark.asyncio
async def test_transitions_are_scoped_to_owner(service):
    payment = await create_pending(service)

    assert await service.approve(payment.id, "someone-else", SIGNATURE) is None
    assert await service.check(payment.id, "someone-else") is None
    assert (await service.check(payment.id, USER_ID)).status == "pending"


@pytest.mark.asyncio
async def test_expired_payment_can_be_rejected(service):
    payment = await create_pending(service)

    expired = await service.expire_with_audit(payment.id, USER_ID)
    rejected = await service.reject(payment.id, USER_ID)

    assert expired.status == PendingStatus.EXPIRED
    assert rejected.status == PendingStatus.REJECTED
    assert await service.approve(payment.id, USER_ID, SIGNATURE) is None


# ========================================================================
# Expiry
# ========================================================================

@pytest.mark.asyncio
async def test_expire_with_audit_is_idempotent(engine, service):
    payment = await create_pending(service)

    first = await service.expire_with_audit(payment.id, USER_ID)
    second = await service.expire_with_audit(payment.id, USER_ID)

    assert first.status == PendingStatus.EXPIRED
    assert second is None
    records = engine.audit_store.records
    assert len(records) == 1
    assert records[0].status == AuditStatus.EXPIRED
    assert records[0].error_message == "Payment expired before user approval"
    assert records[0].amount == Decimal("0.010000")
    assert records[0].payment_id == payment.id


@pytest.mark.asyncio
async def test_expiry_with_custom_message(engine, service):
    payment = await create_pending(service)

    await service.expire_with_audit(payment.id, USER_ID, message="Expired by sweeper")

    assert engine.audit_store.records[0].error_message == "Expired by sweeper"


@pytest.mark.asyncio
async def test_approve_races_expire_with_single_winner(engine, service):
    expired_ids = set()
    for _ in range(20):
        payment = await create_pending(service)

        approved, expired = await asyncio.gather(
            service.approve(payment.id, USER_ID, SIGNATURE),
            service.expire_with_audit(payment.id, USER_ID),
        )

        assert (approved is None) != (expired is None)
        final = await engine.pending_store.get(payment.id, USER_ID)
        assert final.status in (PendingStatus.APPROVED, PendingStatus.EXPIRED)
        if final.status == PendingStatus.EXPIRED:
            expired_ids.add(payment.id)

    audited_ids = {r.payment_id for r in engine.audit_store.records if r.status == AuditStatus.EXPIRED}
    assert audited_ids == expired_ids
    assert len(engine.audit_store.records) == len(expired_ids)


@pytest.mark.asyncio
async def test_concurrent_expiry_writes_one_audit_record(engine, service):
    payment = await create_pending(service)

    results = await asyncio.gather(*(service.expire_with_audit(payment.id, USER_ID) for _ in range(10)))

    assert sum(result is not None for result in results) == 1
    assert len(engine.audit_store.records) == 1


@pytest.mark.asyncio
async def test_check_applies_lazy_expiry(engine, service, clock):
    payment = await create_pending(service)

    view = await service.check(payment.id, USER_ID)
    assert view.status == "pending"
    assert view.time_remaining_seconds == 1800
    assert view.amount == Decimal("0.010000")
    assert view.symbol == "USDC"

    clock.advance(1800)
    view = await service.check(payment.id, USER_ID)
    assert view.status == "expired"
    assert view.time_remaining_seconds is None

    await service.check(payment.id, USER_ID)
    assert len(engine.audit_store.records) == 1


@pytest.mark.asyncio
async def test_sweep_expires_across_users_once(engine, service, clock):
    first = await create_pending(service)
    other = await create_pending(service, user_id="user-2")
    capped = await create_pending(service, max_timeout=7200)

    clock.advance(1801)
    swept = await service.sweep_expired()
    again = await service.sweep_expired()

    assert {p.id for p in swept} == {first.id, other.id, capped.id}
    assert again == []
    assert len(engine.audit_store.records) == 3


@pytest.mark.asyncio
async def test_sweep_leaves_unexpired_records(engine, service, clock):
    payment = await create_pending(service)

    swept = await service.sweep_expired(now=START + timedelta(minutes=5))

    assert swept == []
    assert (await engine.pending_store.get(payment.id, USER_ID)).status == PendingStatus.PENDING


@pytest.mark.asyncio
async def test_expiry_audit_with_unparseable_amount_records_zero(engine, caplog):
    broken = PendingPayment.model_construct(
        id="broken",
        user_id=USER_ID,
        url=PAID_URL,
        chain_id=BASE,
        amount_raw="lots",
        asset=BASE_USDC,
        status=PendingStatus.EXPIRED,
    )

    with caplog.at_level(logging.WARNING):
        record = await engine.audit.record_expiry(broken)

    assert record.amount == Decimal("0")
    assert record.error_message == EXPIRED_MESSAGE
    assert any(getattr(r, "action", None) == "expire_amount_unknown" for r in caplog.records)


# ========================================================================
# Listing and results
# ========================================================================

@pytest.mark.asyncio
async def test_list_and_count_pending(service, clock):
    first = await create_pending(service)
    clock.advance(10)
    second = await create_pending(service, max_timeout=60)
    await create_pending(service, user_id="user-2")

    assert [p.id for p in await service.list_pending(USER_ID)] == [second.id, first.id]
    assert await service.count_pending(USER_ID) == 2
    assert await service.count_pending(USER_ID, chain_id=1) == 0

    clock.advance(61)
    assert [p.id for p in await service.list_pending(USER_ID)] == [first.id]
    assert len(await service.list_pending(USER_ID, include_expired=True)) == 2


@pytest.mark.asyncio
async def test_get_result_reports_each_state(service):
    payment = await create_pending(service)
    assert (await service.get_result(payment.id, USER_ID)).status == "awaiting_signature"

    await service.approve(payment.id, USER_ID, SIGNATURE)
    assert (await service.get_result(payment.id, USER_ID)).status == "processing"

    await service.complete(payment.id, USER_ID, response_payload='{"data": "premium"}', response_status=200)
    outcome = await service.get_result(payment.id, USER_ID)
    assert outcome.status == "completed"
    assert outcome.data == {"data": "premium"}

    other = await create_pending(service)
    await service.reject(other.id, USER_ID)
    outcome = await service.get_result(other.id, USER_ID)
    assert outcome.status == "rejected"
    assert outcome.error

    assert await service.get_result("missing", USER_ID) is None


@pytest.mark.asyncio
async def test_get_result_keeps_non_json_payload(service):
    payment = await create_pending(service)
    await service.approve(payment.id, USER_ID, SIGNATURE)
    await service.complete(payment.id, USER_ID, response_payload="plain text", response_status=200)

    assert (await service.get_result(payment.id, USER_ID)).data == "plain text"


# ========================================================================
# Approve and settle
# ========================================================================

@pytest.mark.asyncio
async def test_manual_payment_end_to_end(engine):
    engine.allow(auto_sign=False)
    options = RequestOptions(method="POST", body='{"q": 1}', headers={"X-Trace": "t"})

    result = await engine.executor.execute_payment(PAID_URL, USER_ID, options)
    assert result.status == PaymentStatus.PENDING_APPROVAL
    payment = await engine.pending.create_from_result(result, USER_ID, PAID_URL, options)

    signature, authorization = await sign_externally(engine, payment)
    settled = await engine.pending.approve_and_settle(payment.id, USER_ID, signature, authorization.to_wire())

    assert settled.status == PaymentStatus.COMPLETED
    assert settled.signing_path == SigningPath.MANUAL_APPROVAL
    assert settled.tx_hash == TX_HASH

    replay = engine.paywall.requests[-1]
    assert replay["method"] == "POST"
    assert replay["body"] == '{"q": 1}'
    assert replay["headers"]["x-trace"] == "t"
    assert "payment-signature" in replay["headers"]
    assert engine.paywall.proofs[0]["payload"]["signature"] == signature

    stored = await engine.pending_store.get(payment.id, USER_ID)
    assert stored.status == PendingStatus.COMPLETED
    assert stored.signature == signature
    assert stored.tx_hash == TX_HASH

    outcome = await engine.pending.get_result(payment.id, USER_ID)
    assert outcome.data["data"] == "premium"

    records = engine.audit_store.records
    assert len(records) == 1
    assert records[0].status == AuditStatus.COMPLETED
    assert records[0].payment_id == payment.id


@pytest.mark.asyncio
async def test_approve_and_settle_records_server_failure(engine, service):
    engine.paywall.paid_status = 502
    payment = await create_pending(service)
    signature, authorization = await sign_externally(engine, payment)

    result = await service.approve_and_settle(payment.id, USER_ID, signature, authorization)

    assert result.status == PaymentStatus.FAILED
    stored = await engine.pending_store.get(payment.id, USER_ID)
    assert stored.status == PendingStatus.FAILED
    assert stored.response_status == 502
    assert "502" in result.error
    assert [r.status for r in engine.audit_store.records] == [AuditStatus.FAILED]
    assert "502" in engine.audit_store.records[0].error_message


@pytest.mark.asyncio
async def test_approve_and_settle_after_expiry_is_rejected(engine, service, clock):
    payment = await create_pending(service)
    signature, authorization = await sign_externally(engine, payment, valid_before_offset=10_000_000)
    clock.advance(1800)

    result = await service.approve_and_settle(payment.id, USER_ID, signature, authorization)

    assert result.status == PaymentStatus.REJECTED
    assert result.error == EXPIRED_MESSAGE
    assert engine.paywall.proofs == []
    assert (await engine.pending_store.get(payment.id, USER_ID)).status == PendingStatus.EXPIRED
    assert [r.status for r in engine.audit_store.records] == [AuditStatus.EXPIRED]


@pytest.mark.asyncio
async def test_second_approval_is_rejected(engine):
    payment = await create_pending(engine.pending)
    signature, authorization = await sign_externally(engine, payment)

    first = await engine.pending.approve_and_settle(payment.id, USER_ID, signature, authorization)
    second = await engine.pending.approve_and_settle(payment.id, USER_ID, signature, authorization)

    assert first.status == PaymentStatus.COMPLETED
    assert second.status == PaymentStatus.REJECTED
    assert "status: completed" in second.error
    assert len(engine.paywall.proofs) == 1


@pytest.mark.asyncio
async def test_unknown_payment_is_rejected(engine):
    payment = await create_pending(engine.pending)
    _signature, authorization = await sign_externally(engine, payment)

    result = await engine.pending.approve_and_settle("missing", USER_ID, SIGNATURE, authorization)

    assert result.status == PaymentStatus.REJECTED


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "signature, changes",
    [
        ("not-hex", {}),
        ("0x123", {}),
        (SIGNATURE, {"to": "0x" + "99" * 20}),
        (SIGNATURE, {"value": "1"}),
        (SIGNATURE, {"from": "0xabc"}),
        (SIGNATURE, {"validBefore": "1"}),
    ],
)
async def test_invalid_approval_input_changes_nothing(engine, signature, changes):
    payment = await create_pending(engine.pending)
    _real_signature, authorization = await sign_externally(engine, payment)
    wire = dict(authorization.to_wire(), **changes)

    with pytest.raises(InvalidInputError):
        await engine.pending.approve_and_settle(payment.id, USER_ID, signature, wire)

    stored = await engine.pending_store.get(payment.id, USER_ID)
    assert stored.status == PendingStatus.PENDING
    assert stored.signature is None
    assert engine.paywall.proofs == []


@pytest.mark.asyncio
async def test_recipient_comparison_ignores_case(engine):
    payment = await create_pending(engine.pending)
    signature, authorization = await sign_externally(engine, payment)
    wire = dict(authorization.to_wire(), to=PAY_TO.upper().replace("0X", "0x"))

    result = await engine.pending.approve_and_settle(payment.id, USER_ID, signature, wire)

    assert result.status == PaymentStatus.COMPLETED
    assert json.loads(result.response.body)["data"] == "premium"
