"""
Abstract Base Classes for Engine Collaborators

Defines the narrow interfaces through which the payment engine reaches
everything it does not own: key material, chain balances, endpoint
policies, and the two stores (pending payments and audit log).

Core Classes:
    - Signer: Signs EIP-712 typed data for one payer address
    - WalletDirectory: Resolves the signer / payer address of a user on a chain
    - BalanceSource: Reads a token balance
    - PolicyStore: Read-only lookup of active endpoint policies
    - PendingPaymentStore: Pending payment persistence with guarded transitions
    - AuditStore: Append-only audit log

Concrete in-memory implementations live in ``adapters.memory``; EVM-backed
signers and the Web3 balance source live in ``adapters.evm``.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, FrozenSet, List, Optional

from ..schemas.bases import PendingStatus
from ..schemas.records import AuditRecord, EndpointPolicy, PendingPayment, utcnow

if TYPE_CHECKING:
    from .evm.standards import ERC3009TypedData


class Signer(ABC):
    """
    Capability to sign a typed transfer authorization.

    Implementations wrap either a hot-wallet private key or a session key
    acting for a smart account. The engine never branches on which one it
    holds, and implementations must not expose key material.
    """

    @property
    @abstractmethod
    def address(self) -> str:
        """Payer address the signatures are valid for."""

    @abstractmethod
    async def sign(self, typed_data: "ERC3009TypedData") -> str:
        """
        Sign an EIP-712 envelope.

        Args:
            typed_data: Authorization envelope whose ``from`` equals ``address``

        Returns:
            str: 0x-prefixed hex signature

        Raises:
            PaymentSignatureError: If the envelope cannot be signed
        """


class WalletDirectory(ABC):
    """Maps (user, chain) to the wallet that pays on that chain."""

    @abstractmethod
    async def get_signer(self, user_id: str, chain_id: int) -> Optional[Signer]:
        """Signer usable for automatic payments, or None when there is none."""

    async def get_payer_address(self, user_id: str, chain_id: int) -> Optional[str]:
        """
        Address whose balance funds payments on ``chain_id``.

        Defaults to the signer's address; directories that know an address
        without holding a signer (manual approval only) override this.
        """
        signer = await self.get_signer(user_id, chain_id)
        return signer.address if signer else None


class BalanceSource(ABC):
    """Token balance reader."""

    @abstractmethod
    async def balance(self, address: str, chain_id: int) -> str:
        """
        Current holding of the chain's payment token for ``address``.

        Returns:
            str: Balance in token units as a decimal string (``"12.5"`` for
            12.5 USDC), not in smallest units

        Raises:
            BlockchainInteractionError: If the balance cannot be read
        """


class PolicyStore(ABC):
    """Read-only view of endpoint policies."""

    @abstractmethod
    async def find_active_policy(self, user_id: str, chain_id: int, url: str) -> Optional[EndpointPolicy]:
        """
        Most specific active policy covering ``url`` on ``chain_id``.

        Matching is longest-prefix among ``active`` policies of the user on
        that chain. Must not create or modify any policy.
        """


class PendingPaymentStore(ABC):
    """
    Persistence contract for pending payments.

    Every lifecycle transition is a single conditional update expressed
    through ``_conditional_update``: "apply ``changes`` to the record
    ``(payment_id, user_id)`` only if its status is in ``expected``". The
    method returns the updated record, or None when no record matched. A
    None result is the normal outcome of a lost race or an out-of-order
    attempt, never an error.
    """

    @abstractmethod
    async def create(self, payment: PendingPayment) -> PendingPayment:
        """Persist a new pending payment."""

    @abstractmethod
    async def get(self, payment_id: str, user_id: str) -> Optional[PendingPayment]:
        """Fetch a record owned by ``user_id``."""

    @abstractmethod
    async def list_pending(
        self,
        user_id: str,
        *,
        chain_id: Optional[int] = None,
        now: Optional[datetime] = None,
        include_expired: bool = False,
    ) -> List[PendingPayment]:
        """
        Pending records of a user, newest first.

        Records past their expiry are excluded unless ``include_expired``.
        """

    @abstractmethod
    async def list_expired_candidates(self, now: datetime) -> List[PendingPayment]:
        """Records of any user still ``pending`` whose expiry has passed."""

    @abstractmethod
    async def _conditional_update(
        self,
        payment_id: str,
        user_id: str,
        expected: FrozenSet[PendingStatus],
        changes: Dict[str, Any],
    ) -> Optional[PendingPayment]:
        """Atomic compare-and-set on status. See class docstring."""

    async def count_pending(self, user_id: str, *, chain_id: Optional[int] = None, now: Optional[datetime] = None) -> int:
        return len(await self.list_pending(user_id, chain_id=chain_id, now=now))

    # ---------------------------------------------------------------------
    # Guarded transitions
    # ---------------------------------------------------------------------

    async def approve(self, payment_id: str, user_id: str, signature: str) -> Optional[PendingPayment]:
        """pending -> approved, storing the signature."""
        return await self._conditional_update(
            payment_id,
            user_id,
            frozenset({PendingStatus.PENDING}),
            {"status": PendingStatus.APPROVED, "signature": signature},
        )

    async def complete(
        self,
        payment_id: str,
        user_id: str,
        *,
        response_payload: Optional[str],
        response_status: Optional[int],
        tx_hash: Optional[str] = None,
    ) -> Optional[PendingPayment]:
        """approved -> completed, storing the paid response."""
        return await self._conditional_update(
            payment_id,
            user_id,
            frozenset({PendingStatus.APPROVED}),
            {
                "status": PendingStatus.COMPLETED,
                "response_payload": response_payload,
                "response_status": response_status,
                "tx_hash": tx_hash,
                "completed_at": utcnow(),
            },
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
        """approved -> failed. The error text is kept when there is no response body."""
        return await self._conditional_update(
            payment_id,
            user_id,
            frozenset({PendingStatus.APPROVED}),
            {
                "status": PendingStatus.FAILED,
                "response_payload": response_payload if response_payload is not None else error,
                "response_status": response_status,
                "completed_at": utcnow(),
            },
        )

    async def expire(self, payment_id: str, user_id: str) -> Optional[PendingPayment]:
        """pending -> expired."""
        return await self._conditional_update(
            payment_id,
            user_id,
            frozenset({PendingStatus.PENDING}),
            {"status": PendingStatus.EXPIRED},
        )

    async def reject(self, payment_id: str, user_id: str) -> Optional[PendingPayment]:
        """{pending, expired} -> rejected."""
        return await self._conditional_update(
            payment_id,
            user_id,
            frozenset({PendingStatus.PENDING, PendingStatus.EXPIRED}),
            {"status": PendingStatus.REJECTED, "completed_at": utcnow()},
        )


class AuditStore(ABC):
    """Append-only audit log."""

    @abstractmethod
    async def append(self, record: AuditRecord) -> AuditRecord:
        """
        Persist one record.

        Raises:
            StoreError: On transient or permanent store failure
        """

    @abstractmethod
    async def list_for_user(
        self,
        user_id: str,
        *,
        since: Optional[datetime] = None,
        chain_id: Optional[int] = None,
        limit: int = 100,
    ) -> List[AuditRecord]:
        """Records of a user, newest first."""
