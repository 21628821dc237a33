"""
Policy & Chain Selection

Decides whether a 402 challenge may be paid at all, on which chain, and
whether the authorization can be signed automatically or needs a human.

Selection is a read-only function of existing policies and current
balances: it never creates, activates or edits a policy, even when none
covers the URL.

Core Classes:
    - ChainSelector: Runs the selection
    - Selection: The admissible offer, chain, policy and signing path
    - Rejection: Human-readable reason the challenge cannot be paid
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Union

from ..adapters.bases import BalanceSource, PolicyStore, Signer, WalletDirectory
from ..adapters.evm.constants import (
    get_chain_config,
    get_decimals_and_symbol,
    is_supported_chain,
    resolve_network_to_chain_id,
    value_to_amount,
)
from ..schemas.bases import SigningPath
from ..schemas.https import PaymentOffer, PaymentRequirementSet
from ..schemas.records import EndpointPolicy
from .exceptions import BlockchainInteractionError


logger = logging.getLogger(__name__)

PAYABLE_SCHEME = "exact"


def required_amount(chain_id: int, offer: PaymentOffer) -> Decimal:
    """Offer amount in token units, comparable with a ``BalanceSource`` reading."""
    decimals, _symbol = get_decimals_and_symbol(chain_id, offer.asset)
    return value_to_amount(value=offer.value, decimals=decimals)


def parse_balance(raw) -> Decimal:
    """
    Parse a balance reading (decimal string in token units, e.g. ``"12.5"``).

    Raises:
        ValueError: If the reading is not a finite, non-negative number
    """
    try:
        balance = Decimal(str(raw).strip())
    except (InvalidOperation, TypeError) as exc:
        raise ValueError(f"Unreadable balance: {raw!r}") from exc
    if not balance.is_finite() or balance < 0:
        raise ValueError(f"Unreadable balance: {raw!r}")
    return balance


@dataclass
class Selection:
    offer: PaymentOffer
    chain_id: int
    signing_path: SigningPath
    policy: EndpointPolicy
    payer_address: Optional[str] = None
    signer: Optional[Signer] = None
    balance: Optional[Decimal] = None

    @property
    def sufficient_balance(self) -> bool:
        return self.balance is not None and self.balance >= required_amount(self.chain_id, self.offer)


@dataclass
class Rejection:
    reason: str


@dataclass
class _Candidate:
    index: int
    chain_id: int
    offer: PaymentOffer
    policy: EndpointPolicy
    payer_address: Optional[str] = None
    balance: Optional[Decimal] = None

    @property
    def covered(self) -> bool:
        return self.balance is not None and self.balance >= required_amount(self.chain_id, self.offer)


class ChainSelector:
    """
    Picks the chain and signing path for a requirement set.

    Order of evaluation:
        1. Explicit chain: only offers on that chain are considered.
        2. Otherwise every offer whose network maps to a supported chain.
        3. Candidates without an active policy covering the URL are dropped;
           none left means "Policy denied".
        4. Balances are read for the remaining candidates. Among chains whose
           balance covers the amount, the highest balance wins, ties going to
           the default chain and then to offer order. When no balance
           covers the amount the highest balance still wins.
        5. Automatic signing requires ``auto_sign``, a signer, and a
           covering balance; anything else goes to manual approval.

    Args:
        policy_store: Read-only policy lookup
        wallets: Signer / payer address resolution
        balance_source: Balance reader
        default_chain_id: Tie-breaker chain
    """

    def __init__(
        self,
        policy_store: PolicyStore,
        wallets: WalletDirectory,
        balance_source: BalanceSource,
        default_chain_id: int = 8453,
    ):
        self._policies = policy_store
        self._wallets = wallets
        self._balances = balance_source
        self._default_chain_id = default_chain_id

    async def select(
        self,
        requirements: PaymentRequirementSet,
        user_id: str,
        url: str,
        chain_id: Optional[int] = None,
    ) -> Union[Selection, Rejection]:
        offers = [offer for offer in requirements.accepts if offer.scheme.lower() == PAYABLE_SCHEME]

        if chain_id is not None:
            if not is_supported_chain(chain_id):
                return Rejection(f"Chain {chain_id} is not supported")
            matching = [offer for offer in offers if resolve_network_to_chain_id(offer.network) == chain_id]
            if not matching:
                network = get_chain_config(chain_id).caip2
                return Rejection(f"Chain {chain_id} ({network}) is not supported for this resource")
            pairs = [(chain_id, matching[0])]
        else:
            pairs = self._supported_offers(offers)
            if not pairs:
                return Rejection(self._unsupported_reason(requirements, offers))

        candidates: List[_Candidate] = []
        for index, (candidate_chain, offer) in enumerate(pairs):
            policy = await self._policies.find_active_policy(user_id, candidate_chain, url)
            if policy is not None:
                candidates.append(_Candidate(index, candidate_chain, offer, policy))
        if not candidates:
            logger.info(
                "no active policy",
                extra={"user_id": user_id, "url": url, "action": "policy_denied", "chain_id": chain_id},
            )
            return Rejection(f'Policy denied: No active policy for "{url}"')

        await asyncio.gather(*(self._load_balance(user_id, candidate) for candidate in candidates))
        winner = self._rank(candidates)

        signer = await self._wallets.get_signer(user_id, winner.chain_id)
        if winner.policy.auto_sign and signer is not None and winner.covered:
            path = SigningPath.AUTOMATIC
        else:
            path = SigningPath.MANUAL_APPROVAL

        return Selection(
            offer=winner.offer,
            chain_id=winner.chain_id,
            signing_path=path,
            policy=winner.policy,
            payer_address=winner.payer_address,
            signer=signer if path == SigningPath.AUTOMATIC else None,
            balance=winner.balance,
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _supported_offers(offers: List[PaymentOffer]) -> List[tuple]:
        pairs = []
        seen = set()
        for offer in offers:
            resolved = resolve_network_to_chain_id(offer.network)
            if resolved is None or resolved in seen:
                continue
            seen.add(resolved)
            pairs.append((resolved, offer))
        return pairs

    @staticmethod
    def _unsupported_reason(requirements: PaymentRequirementSet, payable: List[PaymentOffer]) -> str:
        if not payable:
            schemes = sorted({offer.scheme for offer in requirements.accepts})
            return f"None of the endpoint's accepted payment schemes are supported: {', '.join(schemes)}"
        networks = []
        for offer in payable:
            if offer.network not in networks:
                networks.append(offer.network)
        return f"None of the endpoint's accepted networks are supported: {', '.join(networks)}"

    async def _load_balance(self, user_id: str, candidate: _Candidate) -> None:
        candidate.payer_address = await self._wallets.get_payer_address(user_id, candidate.chain_id)
        if candidate.payer_address is None:
            return
        try:
            raw = await self._balances.balance(candidate.payer_address, candidate.chain_id)
            candidate.balance = parse_balance(raw)
        except (BlockchainInteractionError, ValueError) as exc:
            logger.warning(
                "balance unavailable: %s",
                exc,
                extra={"user_id": user_id, "action": "balance_unavailable", "chain_id": candidate.chain_id},
            )
            candidate.balance = None

    def _rank(self, candidates: List[_Candidate]) -> _Candidate:
        readable = [c for c in candidates if c.balance is not None]
        sufficient = [c for c in readable if c.covered]
        pool = sufficient or readable or candidates
        return max(
            pool,
            key=lambda c: (
                c.balance if c.balance is not None else Decimal(-1),
                c.chain_id == self._default_chain_id,
                -c.index,
            ),
        )
