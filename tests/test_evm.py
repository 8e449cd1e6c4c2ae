"""Tests for the EVM JSON-RPC client."""

import json
from decimal import Decimal

import httpx
import pytest
from eth_account import Account

from offramp.errors import ChainRPCError, ConfirmationTimeoutError, TransactionRevertedError
from offramp.signing.evm import EVMClient, from_units, hex_to_int, to_units, to_wei


async def _no_sleep(_delay):
    return None


def rpc_client(responses: dict, calls: list = None, **kwargs) -> EVMClient:
    """Client whose RPC methods answer from ``responses`` (values may be callables)."""

    def handler(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        if calls is not None:
            calls.append(payload)
        answer = responses[payload["method"]]
        if callable(answer):
            answer = answer(payload["params"])
        if isinstance(answer, dict) and "error" in answer:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], **answer})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], "result": answer})

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    kwargs.setdefault("sleep", _no_sleep)
    return EVMClient("https://rpc.test", chain_id=8453, http_client=http, **kwargs)


class TestUnits:
    """Tests for unit conversions."""

    def test_conversions(self):
        """Test wei and token unit helpers."""
        assert to_wei(Decimal("0.0002")) == 200_000_000_000_000
        assert to_units(Decimal("25.5"), 6) == 25_500_000
        assert from_units(25_500_000, 6) == Decimal("25.5")
        assert hex_to_int("0x1a") == 26
        assert hex_to_int(26) == 26


class TestEVMClient:
    """Tests for EVMClient."""

    @pytest.mark.asyncio
    async def test_get_balance(self):
        """Test native balance is decoded from hex."""
        client = rpc_client({"eth_getBalance": hex(10**18)})
        assert await client.get_balance("0x" + "ab" * 20) == 10**18

    @pytest.mark.asyncio
    async def test_get_chain_id(self):
        """Test the chain id is read from the node."""
        client = rpc_client({"eth_chainId": "0x2105"})
        assert await client.get_chain_id() == 8453

    @pytest.mark.asyncio
    async def test_erc20_balance(self):
        """Test balanceOf results are decoded."""
        calls = []
        client = rpc_client(
            {"eth_call": "0x" + (5_000_000).to_bytes(32, "big").hex()}, calls=calls
        )

        balance = await client.erc20_balance("0x" + "11" * 20, "0x" + "ab" * 20)

        assert balance == 5_000_000
        assert calls[0]["params"][0]["data"].startswith("0x70a08231")

    @pytest.mark.asyncio
    async def test_rpc_error(self):
        """Test JSON-RPC error objects raise ChainRPCError."""
        client = rpc_client({"eth_gasPrice": {"error": {"code": -32000, "message": "rate limited"}}})

        with pytest.raises(ChainRPCError, match="rate limited"):
            await client.get_gas_price()

    @pytest.mark.asyncio
    async def test_http_error(self):
        """Test HTTP failures raise ChainRPCError."""

        def handler(request):
            return httpx.Response(503, text="unavailable")

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        client = EVMClient("https://rpc.test", chain_id=8453, http_client=http)

        with pytest.raises(ChainRPCError, match="eth_getBalance failed"):
            await client.get_balance("0x" + "ab" * 20)

    @pytest.mark.asyncio
    async def test_wait_for_confirmation(self):
        """Test receipts are polled until mined."""
        receipts = iter([None, None, {"status": "0x1", "logs": []}])
        client = rpc_client({"eth_getTransactionReceipt": lambda params: next(receipts)})

        receipt = await client.wait_for_confirmation("0xabc")

        assert receipt["status"] == "0x1"

    @pytest.mark.asyncio
    async def test_reverted(self):
        """Test a status 0 receipt raises TransactionRevertedError."""
        client = rpc_client({"eth_getTransactionReceipt": {"status": "0x0", "logs": []}})

        with pytest.raises(TransactionRevertedError) as exc_info:
            await client.wait_for_confirmation("0xabc")
        assert exc_info.value.tx_hash == "0xabc"

    @pytest.mark.asyncio
    async def test_confirmation_timeout(self):
        """Test an unmined transaction times out."""
        client = rpc_client(
            {"eth_getTransactionReceipt": None}, confirmation_timeout=6, poll_interval=2
        )

        with pytest.raises(ConfirmationTimeoutError):
            await client.wait_for_confirmation("0xabc")

    @pytest.mark.asyncio
    async def test_sign_and_send(self):
        """Test a transaction is filled, signed, broadcast and confirmed."""
        calls = []
        client = rpc_client(
            {
                "eth_getTransactionCount": "0x5",
                "eth_gasPrice": hex(10**9),
                "eth_estimateGas": hex(60_000),
                "eth_sendRawTransaction": "0x" + "ee" * 32,
                "eth_getTransactionReceipt": {"status": "0x1", "logs": []},
            },
            calls=calls,
        )
        account = Account.create()

        tx_hash = await client.sign_and_send(account, {"to": "0x" + "11" * 20, "data": "0x1234"})

        assert tx_hash == "0x" + "ee" * 32
        methods = [c["method"] for c in calls]
        assert methods == [
            "eth_getTransactionCount",
            "eth_gasPrice",
            "eth_estimateGas",
            "eth_sendRawTransaction",
            "eth_getTransactionReceipt",
        ]

    @pytest.mark.asyncio
    async def test_send_native_uses_fixed_gas(self):
        """Test ETH transfers skip gas estimation."""
        calls = []
        client = rpc_client(
            {
                "eth_getTransactionCount": "0x0",
                "eth_sendRawTransaction": "0x" + "ff" * 32,
                "eth_getTransactionReceipt": {"status": "0x1", "logs": []},
            },
            calls=calls,
        )

        await client.send_native(Account.create(), "0x" + "22" * 20, 10**15, gas_price=10**9)

        assert "eth_estimateGas" not in [c["method"] for c in calls]
