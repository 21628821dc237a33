"""
EVM Signers

Two implementations of the ``Signer`` capability, both signing EIP-712
``TransferWithAuthorization`` envelopes in-process with ``eth_account``:

HotWalletSigner
    Custodial EOA. The authorization's ``from`` is the key's own address.

SessionKeySigner
    Delegated session key of an ERC-4337 smart account. The authorization's
    ``from`` is the smart account; the token contract validates the
    session key's signature through the account's ERC-1271 hook. The
    session key carries its own expiry, after which it refuses to sign.

Neither class exposes its key material: the ``LocalAccount`` is held in a
private attribute and omitted from ``repr``.
"""

import time
from typing import Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import AsyncWeb3

from ...engine.exceptions import InvalidInputError, PaymentSignatureError
from ..bases import Signer
from .standards import ERC3009TypedData


def _sign_envelope(account: LocalAccount, typed_data: ERC3009TypedData) -> str:
    try:
        signed = Account.sign_typed_data(account.key, full_message=typed_data.to_dict())
    except Exception as exc:
        raise PaymentSignatureError(f"Could not sign authorization: {exc}") from exc
    return "0x" + bytes(signed.signature).hex()


def _load_account(private_key: str) -> LocalAccount:
    if not private_key:
        raise InvalidInputError("Private key is required for signing.")
    try:
        return Account.from_key(private_key)
    except (ValueError, TypeError) as exc:
        raise InvalidInputError("Invalid private key") from exc


class HotWalletSigner(Signer):
    """
    Signer backed by a custodial private key.

    Example:
        signer = HotWalletSigner(private_key="0x...")
        signature = await signer.sign(typed_data)
    """

    def __init__(self, private_key: str):
        self._account = _load_account(private_key)

    def __repr__(self) -> str:
        return f"HotWalletSigner(address={self.address!r})"

    @property
    def address(self) -> str:
        return self._account.address

    async def sign(self, typed_data: ERC3009TypedData) -> str:
        if typed_data.signer_address.lower() != self.address.lower():
            raise PaymentSignatureError(
                f"Authorization payer {typed_data.signer_address} does not match signer {self.address}"
            )
        return _sign_envelope(self._account, typed_data)


class SessionKeySigner(Signer):
    """
    Session key signing on behalf of a smart account.

    Args:
        session_private_key: Private key of the delegated session key
        account_address: Smart account the session key acts for (the payer)
        valid_until: Unix timestamp after which the session key is no longer
            granted; None for no local expiry check
    """

    def __init__(self, session_private_key: str, account_address: str, valid_until: Optional[int] = None):
        self._session = _load_account(session_private_key)
        if not AsyncWeb3.is_address(account_address):
            raise InvalidInputError(f"Invalid smart account address: {account_address!r}")
        self._account_address = AsyncWeb3.to_checksum_address(account_address)
        self._valid_until = valid_until

    def __repr__(self) -> str:
        return (
            f"SessionKeySigner(address={self._account_address!r}, "
            f"session_key={self._session.address!r})"
        )

    @property
    def address(self) -> str:
        return self._account_address

    @property
    def session_key_address(self) -> str:
        return self._session.address

    def is_expired(self, now: Optional[int] = None) -> bool:
        if self._valid_until is None:
            return False
        return (now if now is not None else int(time.time())) >= self._valid_until

    async def sign(self, typed_data: ERC3009TypedData) -> str:
        if self.is_expired():
            raise PaymentSignatureError(
                f"Session key {self._session.address} for {self._account_address} has expired"
            )
        if typed_data.signer_address.lower() != self._account_address.lower():
            raise PaymentSignatureError(
                f"Authorization payer {typed_data.signer_address} is not the smart account "
                f"{self._account_address}"
            )
        return _sign_envelope(self._session, typed_data)
