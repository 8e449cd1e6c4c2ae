"""EVM JSON-RPC client and transaction signer.

Reads balances and allowances, submits signed transactions and waits for
receipts. Keys never live here: callers pass the LocalAccount they derived
for the duration of one operation.
"""

import asyncio
import logging
import math
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional

import httpx
from eth_account.signers.local import LocalAccount
from eth_utils import to_checksum_address

from offramp.config import get_settings
from offramp.errors import ChainRPCError, ConfirmationTimeoutError, TransactionRevertedError
from offramp.signing import erc20

logger = logging.getLogger(__name__)

WEI_PER_ETH = Decimal(10**18)

# Gas for a plain ETH transfer
NATIVE_TRANSFER_GAS = 21000


def to_wei(amount: Decimal) -> int:
    """Convert an ETH amount to wei."""
    return int(amount * WEI_PER_ETH)


def from_wei(amount: int) -> Decimal:
    """Convert wei to ETH."""
    return Decimal(amount) / WEI_PER_ETH


def to_units(amount: Decimal, decimals: int) -> int:
    """Convert a human amount to raw token units."""
    return int(amount * (Decimal(10) ** decimals))


def from_units(raw: int, decimals: int) -> Decimal:
    """Convert raw token units to a human amount."""
    return Decimal(raw) / (Decimal(10) ** decimals)


def hex_to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    return int(value, 16)


class EVMClient:
    """Async JSON-RPC client for an EVM chain.

    Usage:
        client = EVMClient(rpc_url, chain_id=8453)
        balance = await client.get_balance(address)
        tx_hash = await client.sign_and_send(account, {"to": ..., "value": 1})
    """

    def __init__(
        self,
        rpc_url: str,
        chain_id: int,
        http_client: Optional[httpx.AsyncClient] = None,
        confirmation_timeout: float = 120,
        poll_interval: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.rpc_url = rpc_url
        self.chain_id = chain_id
        self.confirmation_timeout = confirmation_timeout
        self.poll_interval = poll_interval
        self._http_client = http_client
        self._sleep = sleep
        self._request_id = 0

    @classmethod
    def from_settings(cls) -> "EVMClient":
        settings = get_settings()
        return cls(
            rpc_url=settings.base_rpc_url,
            chain_id=settings.base_chain_id,
            confirmation_timeout=settings.confirmation_timeout,
            poll_interval=settings.confirmation_poll_interval,
        )

    async def _rpc(self, method: str, params: list) -> Any:
        """Send a JSON-RPC request and return its result."""
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": self._request_id,
        }

        try:
            if self._http_client is not None:
                resp = await self._http_client.post(self.rpc_url, json=payload)
            else:
                async with httpx.AsyncClient(timeout=30.0) as client:
                    resp = await client.post(self.rpc_url, json=payload)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPError as e:
            raise ChainRPCError(f"RPC {method} failed: {e}") from e

        if "error" in data and data["error"]:
            error = data["error"]
            message = error.get("message", error) if isinstance(error, dict) else error
            raise ChainRPCError(f"RPC {method} error: {message}")

        return data.get("result")

    # Reads

    async def get_chain_id(self) -> int:
        return hex_to_int(await self._rpc("eth_chainId", []))

    async def get_balance(self, address: str) -> int:
        """Get native balance in wei."""
        result = await self._rpc("eth_getBalance", [to_checksum_address(address), "latest"])
        return hex_to_int(result)

    async def call(self, to: str, data: str) -> str:
        """Execute a read-only contract call."""
        return await self._rpc(
            "eth_call", [{"to": to_checksum_address(to), "data": data}, "latest"]
        )

    async def erc20_balance(self, token: str, owner: str) -> int:
        """Get ERC20 balance in raw units."""
        return erc20.decode_uint256(await self.call(token, erc20.encode_balance_of(owner)))

    async def erc20_allowance(self, token: str, owner: str, spender: str) -> int:
        return erc20.decode_uint256(
            await self.call(token, erc20.encode_allowance(owner, spender))
        )

    async def erc20_decimals(self, token: str) -> int:
        return erc20.decode_uint256(await self.call(token, erc20.encode_decimals()))

    async def get_gas_price(self) -> int:
        return hex_to_int(await self._rpc("eth_gasPrice", []))

    async def estimate_gas(self, tx: dict) -> int:
        params = {k: (hex(v) if isinstance(v, int) else v) for k, v in tx.items()}
        return hex_to_int(await self._rpc("eth_estimateGas", [params]))

    async def get_nonce(self, address: str, block: str = "pending") -> int:
        return hex_to_int(
            await self._rpc("eth_getTransactionCount", [to_checksum_address(address), block])
        )

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[dict]:
        return await self._rpc("eth_getTransactionReceipt", [tx_hash])

    # Writes

    async def send_raw_transaction(self, raw_tx: bytes) -> str:
        result = await self._rpc("eth_sendRawTransaction", ["0x" + raw_tx.hex()])
        return result

    async def wait_for_confirmation(self, tx_hash: str, timeout: Optional[float] = None) -> dict:
        """Wait for a transaction to be mined.

        Args:
            tx_hash: Transaction hash to wait for
            timeout: Maximum seconds to wait (defaults to the client setting)

        Returns:
            Receipt dict (raw JSON-RPC shape)

        Raises:
            ConfirmationTimeoutError: If not mined within timeout
            TransactionRevertedError: If mined with status 0
        """
        timeout = self.confirmation_timeout if timeout is None else timeout
        max_polls = max(1, math.ceil(timeout / self.poll_interval))

        for _ in range(max_polls):
            receipt = await self.get_transaction_receipt(tx_hash)
            if receipt is not None:
                if hex_to_int(receipt.get("status", "0x1")) == 0:
                    raise TransactionRevertedError(tx_hash)
                return receipt
            await self._sleep(self.poll_interval)

        raise ConfirmationTimeoutError(tx_hash, timeout)

    async def build_transaction(
        self, account: LocalAccount, tx_params: dict, nonce: Optional[int] = None
    ) -> dict:
        """Fill in nonce, chain id, gas and gas price."""
        tx = dict(tx_params)
        tx["to"] = to_checksum_address(tx["to"])
        tx.setdefault("value", 0)
        tx.setdefault("data", "0x")

        if "nonce" not in tx:
            tx["nonce"] = nonce if nonce is not None else await self.get_nonce(account.address)
        tx.setdefault("chainId", self.chain_id)

        if "gasPrice" not in tx and "maxFeePerGas" not in tx:
            tx["gasPrice"] = await self.get_gas_price()

        if "gas" not in tx:
            tx["gas"] = await self.estimate_gas(
                {"from": account.address, "to": tx["to"], "value": tx["value"], "data": tx["data"]}
            )

        return tx

    async def sign_and_send(
        self,
        account: LocalAccount,
        tx_params: dict,
        nonce: Optional[int] = None,
        wait_for_confirmation: bool = True,
    ) -> str:
        """Sign and broadcast a transaction.

        Args:
            account: Signing account
            tx_params: Transaction parameters (to, value, data, gas, ...)
            nonce: Explicit nonce (otherwise the pending count is used)
            wait_for_confirmation: Block until the transaction is mined

        Returns:
            Transaction hash
        """
        tx = await self.build_transaction(account, tx_params, nonce)
        signed_tx = account.sign_transaction(tx)

        # eth-account >= 0.13 uses raw_transaction
        raw_tx = getattr(signed_tx, "raw_transaction", None) or signed_tx.rawTransaction
        tx_hash = await self.send_raw_transaction(raw_tx)
        logger.info(f"Sent transaction {tx_hash} from {account.address} (nonce {tx['nonce']})")

        if wait_for_confirmation:
            await self.wait_for_confirmation(tx_hash)

        return tx_hash

    async def send_native(
        self,
        account: LocalAccount,
        to: str,
        value_wei: int,
        nonce: Optional[int] = None,
        gas_price: Optional[int] = None,
    ) -> str:
        """Send ETH and wait for confirmation."""
        tx: dict = {"to": to, "value": value_wei, "gas": NATIVE_TRANSFER_GAS}
        if gas_price is not None:
            tx["gasPrice"] = gas_price
        return await self.sign_and_send(account, tx, nonce=nonce)

    async def send_erc20(self, account: LocalAccount, token: str, to: str, amount: int) -> str:
        """Send an ERC20 transfer and wait for confirmation."""
        return await self.sign_and_send(
            account, {"to": token, "data": erc20.encode_transfer(to, amount)}
        )
