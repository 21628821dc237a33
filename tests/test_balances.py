"""
Tests for Web3BalanceSource with the RPC layer mocked out.
"""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from x402_autopay.adapters.evm.balances import Web3BalanceSource
from x402_autopay.config import Settings
from x402_autopay.engine.exceptions import BlockchainInteractionError

from conftest import BASE, BASE_USDC, PAYER_ADDRESS


def mock_web3(balance=None, error=None):
    web3 = MagicMock()
    call = AsyncMock(return_value=balance, side_effect=error)
    web3.eth.contract.return_value.functions.balanceOf.return_value.call = call
    return web3


@pytest.mark.asyncio
async def test_balance_reads_usdc_balance_of():
    source = Web3BalanceSource()
    web3 = mock_web3(balance=1_250_000)

    with patch.object(source, "_get_web3_instance", return_value=web3):
        balance = await source.balance(PAYER_ADDRESS, BASE)

    assert Decimal(balance) == Decimal("1.25")
    assert web3.eth.contract.call_args.kwargs["address"] == BASE_USDC
    web3.eth.contract.return_value.functions.balanceOf.assert_called_once_with(PAYER_ADDRESS)


@pytest.mark.asyncio
async def test_rpc_failure_is_wrapped():
    source = Web3BalanceSource()

    with patch.object(source, "_get_web3_instance", return_value=mock_web3(error=TimeoutError("rpc timeout"))):
        with pytest.raises(BlockchainInteractionError, match="rpc timeout"):
            await source.balance(PAYER_ADDRESS, BASE)


@pytest.mark.asyncio
async def test_unsupported_chain_is_a_read_failure():
    with pytest.raises(BlockchainInteractionError):
        await Web3BalanceSource().balance(PAYER_ADDRESS, 999999)


def test_web3_instance_is_cached_per_chain():
    source = Web3BalanceSource(rpc_urls={BASE: "https://rpc.example.com"})

    first = source._get_web3_instance(BASE)

    assert source._get_web3_instance(BASE) is first
    assert first.provider.endpoint_uri == "https://rpc.example.com"


def test_from_settings_uses_rpc_key_and_timeout():
    source = Web3BalanceSource.from_settings(Settings(rpc_key="infra-key", request_timeout=7.5))

    web3 = source._get_web3_instance(BASE)

    assert web3.provider.endpoint_uri == "https://base-mainnet.g.alchemy.com/v2/infra-key"
    assert source._request_timeout == 7.5
