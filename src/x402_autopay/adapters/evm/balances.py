"""
On-Chain Balance Source

Reads the payer's USDC holding with an ERC-20 ``balanceOf`` call over an
``AsyncWeb3`` HTTP provider and reports it in token units (``"12.5"``).
One provider is created lazily per chain and reused for subsequent reads.
"""

from typing import TYPE_CHECKING, Any, Dict, List, Optional

from web3 import AsyncWeb3

from ...engine.exceptions import BlockchainInteractionError, ConfigurationError
from ..bases import BalanceSource
from .constants import get_chain_config, get_rpc_url, value_to_amount

if TYPE_CHECKING:
    from ...config import Settings


def get_balance_abi() -> List[Dict[str, Any]]:
    """
    ABI of ERC-20 ``balanceOf``.

    Example:
        contract = web3.eth.contract(address=token_address, abi=get_balance_abi())
        balance = await contract.functions.balanceOf(owner).call()
    """
    return [
        {
            "name": "balanceOf",
            "type": "function",
            "stateMutability": "view",
            "inputs": [{"name": "account", "type": "address"}],
            "outputs": [{"name": "", "type": "uint256"}],
        }
    ]


class Web3BalanceSource(BalanceSource):
    """
    ``BalanceSource`` reading the chain's USDC contract.

    Args:
        rpc_key: Optional infrastructure key; public RPC endpoints are used without it
        rpc_urls: Optional per-chain RPC URL overrides
        request_timeout: RPC request timeout in seconds
    """

    def __init__(
        self,
        rpc_key: Optional[str] = None,
        rpc_urls: Optional[Dict[int, str]] = None,
        request_timeout: float = 30.0,
    ):
        self._rpc_key = rpc_key
        self._rpc_urls = dict(rpc_urls or {})
        self._request_timeout = request_timeout
        self._clients: Dict[int, AsyncWeb3] = {}

    @classmethod
    def from_settings(cls, settings: "Settings", rpc_urls: Optional[Dict[int, str]] = None) -> "Web3BalanceSource":
        """Balance source using the configured RPC key and request timeout."""
        return cls(rpc_key=settings.rpc_key, rpc_urls=rpc_urls, request_timeout=settings.request_timeout)

    def _get_web3_instance(self, chain_id: int) -> AsyncWeb3:
        """
        Return (and cache) an AsyncWeb3 client for ``chain_id``.

        Raises:
            ConfigurationError: If the chain is not in the registry
        """
        if chain_id not in self._clients:
            rpc_url = self._rpc_urls.get(chain_id) or get_rpc_url(chain_id, self._rpc_key)
            self._clients[chain_id] = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(
                rpc_url,
                request_kwargs={"timeout": self._request_timeout},
            ))
        return self._clients[chain_id]

    async def balance(self, address: str, chain_id: int) -> str:
        try:
            usdc = get_chain_config(chain_id).usdc
        except ConfigurationError as exc:
            raise BlockchainInteractionError(str(exc)) from exc

        web3 = self._get_web3_instance(chain_id)
        try:
            contract = web3.eth.contract(
                address=AsyncWeb3.to_checksum_address(usdc.address),
                abi=get_balance_abi(),
            )
            raw = await contract.functions.balanceOf(AsyncWeb3.to_checksum_address(address)).call()
        except Exception as exc:
            raise BlockchainInteractionError(
                f"balanceOf failed on chain {chain_id} for {address}: {exc}"
            ) from exc
        return str(value_to_amount(value=int(raw), decimals=usdc.decimals))
