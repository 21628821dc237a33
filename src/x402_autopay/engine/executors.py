"""
Synchronous Settlement Executor

Runs one payment attempt end to end:

    initial request
      -> not 402: pass the response through
      -> 402: parse requirements -> select chain / signing path
           -> manual approval: return ``pending_approval``
           -> automatic: build + sign authorization -> retry with proof
                -> 2xx: ``completed``, otherwise ``failed``; audit either way

Every expected outcome is returned as a ``PaymentResult``. Transport
failures are classified as ``failed`` with a ``Network error:`` message and
never escape to the caller. Every ``completed`` or ``failed`` outcome of a
payment attempt, the initial request included, writes one audit record; a response
that needs no payment is passed through without one.
"""

import logging
from typing import Optional, Tuple

import httpx

from ..clients.http_client import PaymentHttpClient, sanitize_headers, validate_url
from ..config import Settings
from ..schemas.bases import AuditStatus, PaymentStatus, SigningPath
from ..schemas.https import (
    ExactPaymentPayload,
    HttpResult,
    PaymentOffer,
    PaymentProof,
    PaymentRequirementSet,
    RequestOptions,
    SettlementResponse,
    TransferAuthorization,
)
from ..schemas.results import PaymentResult
from ..schemas.versions import (
    LEGACY_PAYMENT_RESPONSE_HEADER,
    PAYMENT_RESPONSE_HEADER,
    TX_HASH_HEADER,
    WireFormat,
)
from .audit import AuditLogWriter
from .authorization import build_authorization, build_typed_data
from .exceptions import InvalidInputError, PaymentSignatureError, UnsafeUrlError
from .requirements import is_payment_required, parse_payment_required
from .selector import ChainSelector, Rejection


logger = logging.getLogger(__name__)

NO_REQUIREMENTS_MESSAGE = "Received 402 but no valid payment requirements found"


def _describe(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


def _header(result: HttpResult, name: str) -> Optional[str]:
    wanted = name.lower()
    for key, value in result.headers.items():
        if key.lower() == wanted:
            return value
    return None


def extract_settlement(result: HttpResult) -> Tuple[Optional[str], Optional[SettlementResponse]]:
    """
    Find the settlement transaction hash of a paid response.

    Priority:
        1. ``PAYMENT-RESPONSE`` / ``X-PAYMENT-RESPONSE`` base64-JSON receipt (``transaction``)
        2. ``X-PAYMENT-TX-HASH`` plain header
        3. ``txHash`` field of a JSON body

    Returns:
        (tx_hash, settlement): Both None when nothing is found
    """
    settlement = None
    for name in (PAYMENT_RESPONSE_HEADER, LEGACY_PAYMENT_RESPONSE_HEADER):
        value = _header(result, name)
        if value:
            settlement = SettlementResponse.decode(value)
            if settlement is not None:
                break

    if settlement is not None and settlement.transaction:
        return settlement.transaction, settlement

    plain = _header(result, TX_HASH_HEADER)
    if plain and plain.strip():
        return plain.strip(), settlement

    body = result.json_body()
    if isinstance(body, dict):
        tx_hash = body.get("txHash")
        if isinstance(tx_hash, str) and tx_hash:
            return tx_hash, settlement
    return None, settlement


def build_proof(
    requirements: PaymentRequirementSet,
    offer: PaymentOffer,
    authorization: TransferAuthorization,
    signature: str,
    url: str,
) -> PaymentProof:
    """Proof of payment in the challenge's own wire format."""
    proof = PaymentProof(
        x402_version=requirements.x402_version,
        scheme=offer.scheme,
        network=offer.network,
        payload=ExactPaymentPayload(signature=signature, authorization=authorization),
    )
    if requirements.wire_format == WireFormat.HEADER:
        proof.accepted = offer.raw or offer.model_dump(mode="json", by_alias=True, exclude_none=True)
        proof.resource = requirements.resource or {"url": url}
    return proof


class SettlementExecutor:
    """
    Executes payments for one deployment.

    Args:
        http_client: Outbound client (SSRF-checked)
        selector: Chain / policy selector
        audit: Audit log writer
        settings: Engine settings (validity window, excerpt length)

    Example:
        executor = SettlementExecutor(client, selector, audit)
        result = await executor.execute_payment("https://api.example.com/data", user_id="u1")
        if result.status == PaymentStatus.PENDING_APPROVAL:
            await pending_service.create_from_result(result, "u1", url)
    """

    def __init__(
        self,
        http_client: PaymentHttpClient,
        selector: ChainSelector,
        audit: AuditLogWriter,
        settings: Optional[Settings] = None,
    ):
        self._http = http_client
        self._selector = selector
        self._audit = audit
        self._settings = settings or Settings()

    async def _send(self, url: str, options: RequestOptions, extra_headers: Optional[dict] = None) -> HttpResult:
        headers = sanitize_headers(options.headers)
        if extra_headers:
            headers.update(extra_headers)
        response = await self._http.request(
            options.method,
            url,
            headers=headers,
            content=options.body.encode("utf-8") if options.body is not None else None,
        )
        return HttpResult.from_response(response)

    # =========================================================================
    # Entry point
    # =========================================================================

    async def execute_payment(
        self,
        url: str,
        user_id: str,
        options: Optional[RequestOptions] = None,
        chain_id: Optional[int] = None,
    ) -> PaymentResult:
        """
        Fetch ``url`` for ``user_id``, paying a 402 challenge if allowed.

        Args:
            url: Resource URL
            user_id: Paying user
            options: Method, body and headers of the original request
            chain_id: Optional explicit settlement chain

        Returns:
            PaymentResult: completed, failed, rejected or pending_approval
        """
        options = options or RequestOptions()
        log_context = {"user_id": user_id, "url": url, "chain_id": chain_id}

        reason = validate_url(url)
        if reason:
            logger.info("url refused: %s", reason, extra={**log_context, "action": "payment_rejected"})
            return PaymentResult.rejected(f"URL validation failed: {reason}")

        try:
            initial = await self._send(url, options)
        except (httpx.HTTPError, httpx.InvalidURL, UnsafeUrlError) as exc:
            message = f"Network error: {_describe(exc)}"
            logger.warning("initial request failed: %s", message, extra={**log_context, "action": "payment_failed"})
            await self._audit.record_payment(
                user_id=user_id,
                endpoint=url,
                chain_id=chain_id,
                network=None,
                amount_raw=None,
                asset=None,
                status=AuditStatus.FAILED,
                error_message=message,
            )
            return PaymentResult.failed(message, chain_id=chain_id)

        if not is_payment_required(initial):
            logger.debug("no payment required", extra={**log_context, "action": "payment_passthrough"})
            return PaymentResult(status=PaymentStatus.COMPLETED, response=initial)

        requirements = parse_payment_required(initial)
        if requirements is None:
            logger.info(NO_REQUIREMENTS_MESSAGE, extra={**log_context, "action": "payment_rejected"})
            return PaymentResult.rejected(NO_REQUIREMENTS_MESSAGE, response=initial)

        outcome = await self._selector.select(requirements, user_id, url, chain_id)
        if isinstance(outcome, Rejection):
            logger.info("payment rejected: %s", outcome.reason, extra={**log_context, "action": "payment_rejected"})
            return PaymentResult.rejected(outcome.reason)

        offer = outcome.offer
        if outcome.signing_path == SigningPath.MANUAL_APPROVAL:
            logger.info(
                "payment needs approval",
                extra={**log_context, "chain_id": outcome.chain_id, "action": "pending_approval"},
            )
            return PaymentResult(
                status=PaymentStatus.PENDING_APPROVAL,
                signing_path=SigningPath.MANUAL_APPROVAL,
                chain_id=outcome.chain_id,
                network=offer.network,
                amount_raw=offer.amount,
                asset=offer.asset,
                payment_requirements=requirements.to_json(),
                max_timeout_seconds=offer.max_timeout_seconds,
            )

        try:
            authorization = build_authorization(
                offer,
                outcome.signer.address,
                validity_seconds=self._settings.authorization_validity_seconds,
            )
            typed_data = build_typed_data(authorization, offer, outcome.chain_id)
            signature = await outcome.signer.sign(typed_data)
        except (PaymentSignatureError, InvalidInputError) as exc:
            message = f"Signing failed: {_describe(exc)}"
            logger.warning(message, extra={**log_context, "chain_id": outcome.chain_id, "action": "payment_failed"})
            await self._audit.record_payment(
                user_id=user_id,
                endpoint=url,
                chain_id=outcome.chain_id,
                network=offer.network,
                amount_raw=offer.amount,
                asset=offer.asset,
                status=AuditStatus.FAILED,
                error_message=message,
            )
            return PaymentResult.failed(
                message,
                signing_path=SigningPath.AUTOMATIC,
                chain_id=outcome.chain_id,
                network=offer.network,
                amount_raw=offer.amount,
                asset=offer.asset,
            )

        return await self.settle(
            user_id=user_id,
            url=url,
            options=options,
            requirements=requirements,
            offer=offer,
            chain_id=outcome.chain_id,
            authorization=authorization,
            signature=signature,
            signing_path=SigningPath.AUTOMATIC,
        )

    # =========================================================================
    # Paid retry
    # =========================================================================

    async def settle(
        self,
        *,
        user_id: str,
        url: str,
        options: RequestOptions,
        requirements: PaymentRequirementSet,
        offer: PaymentOffer,
        chain_id: int,
        authorization: TransferAuthorization,
        signature: str,
        signing_path: SigningPath,
        payment_id: Optional[str] = None,
    ) -> PaymentResult:
        """
        Re-issue the original request with a proof of payment and audit the outcome.

        Used for automatic payments and for replaying approved pending
        payments. Exactly one audit record is written per call.

        Returns:
            PaymentResult: ``completed`` for a 2xx answer, ``failed`` otherwise
        """
        proof = build_proof(requirements, offer, authorization, signature, url)
        proof_header = {requirements.wire_format.proof_header: proof.encode()}
        common = {
            "signing_path": signing_path,
            "chain_id": chain_id,
            "network": offer.network,
            "amount_raw": offer.amount,
            "asset": offer.asset,
        }
        log_context = {"user_id": user_id, "url": url, "chain_id": chain_id, "payment_id": payment_id}

        try:
            response = await self._send(url, options, proof_header)
        except (httpx.HTTPError, httpx.InvalidURL, UnsafeUrlError) as exc:
            message = f"Network error: {_describe(exc)}"
            logger.warning("paid retry failed: %s", message, extra={**log_context, "action": "payment_failed"})
            await self._audit.record_payment(
                user_id=user_id,
                endpoint=url,
                chain_id=chain_id,
                network=offer.network,
                amount_raw=offer.amount,
                asset=offer.asset,
                status=AuditStatus.FAILED,
                error_message=message,
                payment_id=payment_id,
            )
            return PaymentResult.failed(message, **common)

        tx_hash, settlement = extract_settlement(response)
        if response.ok:
            logger.info("payment completed", extra={**log_context, "action": "payment_completed"})
            await self._audit.record_payment(
                user_id=user_id,
                endpoint=url,
                chain_id=chain_id,
                network=offer.network,
                amount_raw=offer.amount,
                asset=offer.asset,
                status=AuditStatus.COMPLETED,
                tx_hash=tx_hash,
                response_status=response.status_code,
                response_payload=response.body,
                payment_id=payment_id,
            )
            return PaymentResult(
                status=PaymentStatus.COMPLETED,
                response=response,
                settlement=settlement,
                tx_hash=tx_hash,
                **common,
            )

        message = f"Payment submitted but server responded with {response.status_code}"
        excerpt = response.body[: self._settings.response_excerpt_chars]
        error = f"{message}: {excerpt}" if excerpt else message
        logger.warning(message, extra={**log_context, "action": "payment_failed"})
        await self._audit.record_payment(
            user_id=user_id,
            endpoint=url,
            chain_id=chain_id,
            network=offer.network,
            amount_raw=offer.amount,
            asset=offer.asset,
            status=AuditStatus.FAILED,
            tx_hash=tx_hash,
            error_message=message,
            response_status=response.status_code,
            response_payload=response.body,
            payment_id=payment_id,
        )
        return PaymentResult.failed(error, response=response, settlement=settlement, tx_hash=tx_hash, **common)
