"""
Shared fixtures for the x402 autopay test suite.

Provides real eth_account keys (so signatures are genuine and recoverable),
offer builders for both challenge encodings, and a configurable FastAPI
paywall served through ``httpx.ASGITransport`` so the executor talks HTTP
without opening sockets.
"""

import base64
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio
from eth_account import Account
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse, Response

from x402_autopay.adapters.evm.signatures import HotWalletSigner
from x402_autopay.adapters.memory import (
    InMemoryAuditStore,
    InMemoryPendingPaymentStore,
    InMemoryPolicyStore,
    StaticBalanceSource,
    StaticWalletDirectory,
)
from x402_autopay.clients.http_client import PaymentHttpClient
from x402_autopay.config import Settings
from x402_autopay.engine.audit import AuditLogWriter
from x402_autopay.engine.executors import SettlementExecutor
from x402_autopay.engine.pending import PendingPaymentService
from x402_autopay.engine.selector import ChainSelector
from x402_autopay.schemas.bases import PolicyStatus
from x402_autopay.schemas.https import PaymentProof
from x402_autopay.schemas.records import EndpointPolicy


# ========================================================================
# Test keys and addresses (never use in production)
# ========================================================================

PAYER_PRIVATE_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
SESSION_PRIVATE_KEY = "0x8da4ef21b864d2cc526dbdb2a120bd2874c36c9d0a1fb7f8c63d7f7a8b41de8f"
PAYER_ADDRESS = Account.from_key(PAYER_PRIVATE_KEY).address
SMART_ACCOUNT_ADDRESS = "0x5ce9454909639d2d17a3f753ce7d93fa0b9ab12e"
PAY_TO = "0x209693bc6afc0c5328ba36faf03c514ef312287c"

BASE = 8453
BASE_SEPOLIA = 84532
BASE_USDC = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
BASE_SEPOLIA_USDC = "0x036CbD53842c5426634e7929541eC2318f3dCF7e"

USER_ID = "user-1"
PAYWALL = "https://paywall.example.com"
PAID_URL = f"{PAYWALL}/paid"
FREE_URL = f"{PAYWALL}/free"
TX_HASH = "0x" + "ab" * 32


def b64_json(data: Any) -> str:
    return base64.b64encode(json.dumps(data).encode("utf-8")).decode("ascii")


def header_offer(
    network: str = "eip155:8453",
    asset: str = BASE_USDC,
    amount: str = "10000",
    **overrides,
) -> Dict[str, Any]:
    """Offer as it appears in a PAYMENT-REQUIRED header (``amount``)."""
    offer = {
        "scheme": "exact",
        "network": network,
        "asset": asset,
        "amount": amount,
        "payTo": PAY_TO,
        "maxTimeoutSeconds": 60,
        "extra": {"name": "USD Coin", "version": "2"},
    }
    offer.update(overrides)
    return offer


def body_offer(
    network: str = "base",
    asset: str = BASE_USDC,
    amount: str = "10000",
    **overrides,
) -> Dict[str, Any]:
    """Offer as it appears in a JSON 402 body (``maxAmountRequired``)."""
    offer = {
        "scheme": "exact",
        "network": network,
        "asset": asset,
        "maxAmountRequired": amount,
        "payTo": PAY_TO,
        "resource": PAID_URL,
        "maxTimeoutSeconds": 60,
    }
    offer.update(overrides)
    return offer


# ========================================================================
# Paywall
# ========================================================================

@dataclass
class PaywallState:
    """
    Behaviour of the mock paid API.

    Attributes:
        wire_format: "header" or "body" challenge encoding
        offers: Offers advertised in the challenge
        paid_status: Status returned once a proof is presented
        receipt: Where the tx hash is reported: "payment-response",
            "x-payment-response", "tx-hash-header", "body" or None
        requests: Every request received, in order
        proofs: Decoded proofs received
    """

    wire_format: str = "header"
    offers: List[Dict[str, Any]] = field(default_factory=lambda: [header_offer()])
    paid_status: int = 200
    receipt: Optional[str] = "payment-response"
    requests: List[Dict[str, Any]] = field(default_factory=list)
    proofs: List[Dict[str, Any]] = field(default_factory=list)

    def challenge(self) -> Response:
        if self.wire_format == "header":
            challenge = {"x402Version": 2, "resource": {"url": PAID_URL}, "accepts": self.offers}
            return Response(status_code=402, headers={"PAYMENT-REQUIRED": b64_json(challenge)})
        return JSONResponse(
            {"x402Version": 1, "error": "X-PAYMENT header is required", "accepts": self.offers},
            status_code=402,
        )


def build_paywall_app(state: PaywallState) -> FastAPI:
    app = FastAPI()

    @app.get("/free")
    async def free():
        return {"free": True}

    @app.get("/malformed")
    async def malformed():
        return PlainTextResponse(
            "payment required",
            status_code=402,
            headers={"PAYMENT-REQUIRED": "%%%not-base64%%%"},
        )

    @app.get("/redirect-internal")
    async def redirect_internal():
        return RedirectResponse("http://169.254.169.254/latest/meta-data", status_code=302)

    @app.get("/redirect-loop")
    async def redirect_loop():
        return RedirectResponse("/redirect-loop", status_code=302)

    @app.get("/redirect-free")
    async def redirect_free():
        return RedirectResponse("/free", status_code=307)

    @app.api_route("/paid", methods=["GET", "POST", "PUT"])
    async def paid(request: Request):
        body = (await request.body()).decode("utf-8")
        state.requests.append({"method": request.method, "headers": dict(request.headers), "body": body})

        proof_header = request.headers.get("payment-signature") or request.headers.get("x-payment")
        if proof_header is None:
            return state.challenge()

        proof = PaymentProof.decode(proof_header)
        state.proofs.append(proof.model_dump(mode="json", by_alias=True, exclude_none=True))
        if state.paid_status >= 300:
            return JSONResponse({"error": "settlement failed: insufficient funds"}, status_code=state.paid_status)

        content: Dict[str, Any] = {"data": "premium", "method": request.method, "body": body}
        headers: Dict[str, str] = {}
        receipt = {"success": True, "transaction": TX_HASH, "network": "eip155:8453"}
        if state.receipt == "payment-response":
            headers["PAYMENT-RESPONSE"] = b64_json(receipt)
        elif state.receipt == "x-payment-response":
            headers["X-PAYMENT-RESPONSE"] = b64_json(receipt)
        elif state.receipt == "tx-hash-header":
            headers["X-PAYMENT-TX-HASH"] = TX_HASH
        elif state.receipt == "body":
            content["txHash"] = TX_HASH
        return JSONResponse(content, headers=headers)

    return app


# ========================================================================
# Engine wiring
# ========================================================================

@dataclass
class Engine:
    """Every collaborator of one test deployment, all in memory."""

    settings: Settings
    paywall: PaywallState
    policies: InMemoryPolicyStore
    wallets: StaticWalletDirectory
    balances: StaticBalanceSource
    audit_store: InMemoryAuditStore
    pending_store: InMemoryPendingPaymentStore
    audit: AuditLogWriter
    selector: ChainSelector
    executor: SettlementExecutor
    pending: PendingPaymentService
    signer: HotWalletSigner

    def allow(self, chain_id: int = BASE, pattern: str = PAYWALL, auto_sign: bool = True) -> EndpointPolicy:
        return self.policies.add(
            EndpointPolicy(
                user_id=USER_ID,
                endpoint_pattern=pattern,
                chain_id=chain_id,
                status=PolicyStatus.ACTIVE,
                auto_sign=auto_sign,
            )
        )


@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
def paywall() -> PaywallState:
    return PaywallState()


@pytest_asyncio.fixture
async def http_client(settings, paywall):
    transport = httpx.ASGITransport(app=build_paywall_app(paywall))
    async with PaymentHttpClient.from_settings(settings, transport=transport) as client:
        yield client


@pytest.fixture
def engine(settings, paywall, http_client) -> Engine:
    signer = HotWalletSigner(PAYER_PRIVATE_KEY)
    policies = InMemoryPolicyStore()
    wallets = StaticWalletDirectory()
    wallets.register_signer(USER_ID, BASE, signer)
    wallets.register_signer(USER_ID, BASE_SEPOLIA, signer)
    balances = StaticBalanceSource({(signer.address, BASE): "1.00"})
    audit_store = InMemoryAuditStore()
    pending_store = InMemoryPendingPaymentStore()
    audit = AuditLogWriter.from_settings(audit_store, settings, retry_delay=0)
    selector = ChainSelector(policies, wallets, balances, default_chain_id=settings.default_chain_id)
    executor = SettlementExecutor(http_client, selector, audit, settings)
    pending = PendingPaymentService(pending_store, audit, executor, settings)
    return Engine(
        settings=settings,
        paywall=paywall,
        policies=policies,
        wallets=wallets,
        balances=balances,
        audit_store=audit_store,
        pending_store=pending_store,
        audit=audit,
        selector=selector,
        executor=executor,
        pending=pending,
        signer=signer,
    )
