from .balances import Web3BalanceSource, get_balance_abi
from .constants import (
    EVM_CHAINS,
    EvmAssetConfig,
    EvmChainConfig,
    format_amount_for_display,
    get_chain_config,
    get_decimals_and_symbol,
    get_rpc_url,
    is_supported_chain,
    resolve_network_to_chain_id,
    value_to_amount,
)
from .signatures import HotWalletSigner, SessionKeySigner
from .standards import EIP712Domain, ERC3009TypedData, TransferWithAuthorizationMessage

__all__ = [
    "Web3BalanceSource",
    "get_balance_abi",
    "EVM_CHAINS",
    "EvmAssetConfig",
    "EvmChainConfig",
    "format_amount_for_display",
    "get_chain_config",
    "get_decimals_and_symbol",
    "get_rpc_url",
    "is_supported_chain",
    "resolve_network_to_chain_id",
    "value_to_amount",
    "HotWalletSigner",
    "SessionKeySigner",
    "EIP712Domain",
    "ERC3009TypedData",
    "TransferWithAuthorizationMessage",
]
