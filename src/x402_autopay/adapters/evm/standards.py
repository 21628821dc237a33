from dataclasses import dataclass, field
from typing import Any, Dict, List


# -----------------------------
# EIP-712 Domain
# -----------------------------

@dataclass
class EIP712Domain:
    """
    EIP-712 domain separator of the token contract.
    Binds a signature to one token on one chain.
    """
    name: str
    version: str
    chainId: int
    verifyingContract: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "chainId": self.chainId,
            "verifyingContract": self.verifyingContract,
        }


# -----------------------------
# EIP-3009: Transfer With Authorization
# -----------------------------

@dataclass
class TransferWithAuthorizationMessage:
    """
    Message payload of an EIP-3009 ``TransferWithAuthorization``.

    ``from`` is a Python keyword, so the payer is stored as ``authorizer``
    and renamed in ``to_dict()``.

    Attributes:
        authorizer: Payer address (maps to ``from``).
        recipient: Offer recipient (maps to ``to``).
        value: Raw amount in the token's smallest unit.
        validAfter: Unix timestamp after which the authorization is valid.
        validBefore: Unix timestamp at which the authorization expires.
        nonce: 0x-prefixed bytes32 hex string, unique per authorization.
    """
    authorizer: str
    recipient: str
    value: int
    validAfter: int
    validBefore: int
    nonce: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from": self.authorizer,
            "to": self.recipient,
            "value": self.value,
            "validAfter": self.validAfter,
            "validBefore": self.validBefore,
            "nonce": self.nonce,
        }


@dataclass
class ERC3009TypedData:
    """
    Full EIP-712 envelope for an ERC-3009 authorization.

    ``to_dict()`` yields ``{types, primaryType, domain, message}``, the shape
    accepted by ``eth_account.Account.sign_typed_data(full_message=...)``
    and by wallet ``eth_signTypedData_v4`` requests.
    """
    domain: EIP712Domain
    message: TransferWithAuthorizationMessage

    primary_type: str = "TransferWithAuthorization"

    types: Dict[str, List[Dict[str, str]]] = field(
        default_factory=lambda: {
            "EIP712Domain": [
                {"name": "name", "type": "string"},
                {"name": "version", "type": "string"},
                {"name": "chainId", "type": "uint256"},
                {"name": "verifyingContract", "type": "address"},
            ],
            "TransferWithAuthorization": [
                {"name": "from", "type": "address"},
                {"name": "to", "type": "address"},
                {"name": "value", "type": "uint256"},
                {"name": "validAfter", "type": "uint256"},
                {"name": "validBefore", "type": "uint256"},
                {"name": "nonce", "type": "bytes32"},
            ],
        }
    )

    @property
    def signer_address(self) -> str:
        return self.message.authorizer

    def to_dict(self) -> Dict[str, Any]:
        return {
            "types": self.types,
            "primaryType": self.primary_type,
            "domain": self.domain.to_dict(),
            "message": self.message.to_dict(),
        }
