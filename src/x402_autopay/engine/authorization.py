"""
Transfer Authorization Builder

Builds the exact-scheme (EIP-3009 ``transferWithAuthorization``) message
for a chosen offer and wraps it in an EIP-712 envelope. Signing is not done
here; the envelope goes to whichever ``Signer`` the selector picked.

Authorizations are short-lived on purpose: ``validBefore`` is a few minutes
out regardless of how long the offer itself allows.
"""

import os
import time
from typing import Optional

from ..adapters.evm.constants import EVM_CHAINS
from ..adapters.evm.standards import EIP712Domain, ERC3009TypedData, TransferWithAuthorizationMessage
from ..schemas.https import PaymentOffer, TransferAuthorization
from ..schemas.records import is_evm_address
from .exceptions import InvalidInputError


DEFAULT_VALIDITY_SECONDS = 300


def generate_nonce() -> str:
    """Fresh 32-byte random nonce as 0x-prefixed hex."""
    return "0x" + os.urandom(32).hex()


def build_authorization(
    offer: PaymentOffer,
    payer: str,
    *,
    now: Optional[int] = None,
    validity_seconds: int = DEFAULT_VALIDITY_SECONDS,
) -> TransferAuthorization:
    """
    Build the transfer authorization for ``offer`` paid by ``payer``.

    Args:
        offer: Selected offer (recipient and raw amount come from here)
        payer: Address the tokens are moved from
        now: Unix time to compute the window from (defaults to the clock)
        validity_seconds: Width of the validity window

    Returns:
        TransferAuthorization: ``validAfter`` 0, ``validBefore`` now + window,
        and a fresh random nonce

    Raises:
        InvalidInputError: If an address is malformed, the amount is not
            positive, or the window is not positive
    """
    if not is_evm_address(payer):
        raise InvalidInputError(f"Invalid payer address: {payer!r}")
    if not is_evm_address(offer.pay_to):
        raise InvalidInputError(f"Invalid recipient address: {offer.pay_to!r}")
    if offer.value <= 0:
        raise InvalidInputError(f"Amount must be positive, got {offer.amount}")
    if validity_seconds <= 0:
        raise InvalidInputError(f"validity_seconds must be positive, got {validity_seconds}")

    issued_at = int(time.time()) if now is None else int(now)
    return TransferAuthorization(
        from_=payer,
        to=offer.pay_to,
        value=offer.value,
        valid_after=0,
        valid_before=issued_at + validity_seconds,
        nonce=generate_nonce(),
    )


def build_typed_data(
    authorization: TransferAuthorization,
    offer: PaymentOffer,
    chain_id: int,
) -> ERC3009TypedData:
    """
    Wrap an authorization in the token's EIP-712 envelope.

    The domain name/version come from the offer's ``extra`` when the server
    advertises them, otherwise from the chain registry when the asset is
    the chain's USDC.

    Raises:
        InvalidInputError: If no EIP-712 domain is known for the asset
    """
    name = offer.domain_name
    version = offer.domain_version
    if not name or not version:
        config = EVM_CHAINS.get(chain_id)
        if config is None or config.usdc.address.lower() != offer.asset.lower():
            raise InvalidInputError(
                f"No EIP-712 domain known for asset {offer.asset} on chain {chain_id}"
            )
        name = name or config.usdc.name
        version = version or config.usdc.version

    domain = EIP712Domain(
        name=name,
        version=str(version),
        chainId=chain_id,
        verifyingContract=offer.asset,
    )
    message = TransferWithAuthorizationMessage(
        authorizer=authorization.from_,
        recipient=authorization.to,
        value=authorization.value,
        validAfter=authorization.valid_after,
        validBefore=authorization.valid_before,
        nonce=authorization.nonce,
    )
    return ERC3009TypedData(domain=domain, message=message)
