from .bases import (
    Signer,
    WalletDirectory,
    BalanceSource,
    PolicyStore,
    PendingPaymentStore,
    AuditStore,
)
from .memory import (
    InMemoryPolicyStore,
    InMemoryPendingPaymentStore,
    InMemoryAuditStore,
    StaticWalletDirectory,
    StaticBalanceSource,
)
from .evm import HotWalletSigner, SessionKeySigner, Web3BalanceSource

__all__ = [
    "Signer",
    "WalletDirectory",
    "BalanceSource",
    "PolicyStore",
    "PendingPaymentStore",
    "AuditStore",
    "InMemoryPolicyStore",
    "InMemoryPendingPaymentStore",
    "InMemoryAuditStore",
    "StaticWalletDirectory",
    "StaticBalanceSource",
    "HotWalletSigner",
    "SessionKeySigner",
    "Web3BalanceSource",
]
