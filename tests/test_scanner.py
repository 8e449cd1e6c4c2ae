"""Tests for custodial wallet scanning and ERC20 helpers."""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from offramp.chains import SEND_BASE, USDC_BASE, get_chain
from offramp.errors import ChainRPCError
from offramp.scanner import Fungible, Native, TokenBalance, TokenScanner
from offramp.signing import erc20

WALLET = "0x" + "ab" * 20
RECEIVER = "0x" + "cd" * 20


def mock_client(native: int = 0, tokens: dict = None, failing: set = None):
    """EVM client double returning fixed balances per token contract."""
    tokens = {k.lower(): v for k, v in (tokens or {}).items()}
    failing = {f.lower() for f in (failing or set())}

    async def erc20_balance(token, owner):
        if token.lower() in failing:
            raise ChainRPCError("RPC eth_call error: execution reverted")
        return tokens.get(token.lower(), 0)

    client = MagicMock()
    client.get_balance = AsyncMock(return_value=native)
    client.erc20_balance = AsyncMock(side_effect=erc20_balance)
    return client


class TestTokenScanner:
    """Tests for TokenScanner."""

    @pytest.mark.asyncio
    async def test_empty_wallet(self):
        """Test an empty wallet scans to an empty list."""
        scanner = TokenScanner(mock_client())

        assert await scanner.scan(WALLET) == []

    @pytest.mark.asyncio
    async def test_native_first_then_tokens(self):
        """Test native balance is listed before tokens."""
        scanner = TokenScanner(
            mock_client(native=10**15, tokens={SEND_BASE.address: 5 * 10**18})
        )

        balances = await scanner.scan(WALLET)

        assert [b.symbol for b in balances] == ["ETH", "SEND"]
        assert balances[0].is_native
        assert balances[1].amount == Decimal("5")

    @pytest.mark.asyncio
    async def test_failing_token_skipped(self):
        """Test one failing token read does not hide the others."""
        scanner = TokenScanner(
            mock_client(tokens={SEND_BASE.address: 10**18}, failing={USDC_BASE.address})
        )

        balances = await scanner.scan(WALLET)

        assert [b.symbol for b in balances] == ["SEND"]

    @pytest.mark.asyncio
    async def test_extra_tokens(self):
        """Test extra tokens are scanned and duplicates ignored."""
        extra = Fungible("TEST", "0x" + "99" * 20, 8)
        scanner = TokenScanner(
            mock_client(tokens={extra.contract: 3 * 10**8}),
            extra_tokens=[extra, Fungible.from_config(USDC_BASE)],
        )

        assert len(scanner.tokens) == len(get_chain("base").tokens) + 1
        balances = await scanner.scan(WALLET)
        assert balances[0].symbol == "TEST"
        assert balances[0].amount == Decimal("3")

    def test_pick_deposit_prefers_tokens_and_skips_dust(self):
        """Test a token above dust wins over ETH and dust is ignored."""
        scanner = TokenScanner(mock_client())
        send = Fungible.from_config(SEND_BASE)
        usdc = Fungible.from_config(USDC_BASE)
        balances = [
            TokenBalance(Native(), 10**18),
            TokenBalance(usdc, 5_000),  # 0.005 USDC
            TokenBalance(send, 2 * 10**18),
        ]

        deposit = scanner.pick_deposit(balances, Decimal("0.01"))

        assert deposit.asset == send

    def test_pick_deposit_native(self):
        """Test an ETH-only wallet yields a native deposit net of the gas reserve."""
        scanner = TokenScanner(mock_client())
        balances = [TokenBalance(Native(), 10**17)]

        deposit = scanner.pick_deposit(balances, Decimal("0.01"), native_reserve_wei=10**15)

        assert deposit.is_native
        assert deposit.raw_amount == 10**17 - 10**15

    def test_pick_deposit_native_below_reserve(self):
        """Test ETH that only covers gas is not a deposit."""
        scanner = TokenScanner(mock_client())
        balances = [TokenBalance(Native(), 10**16)]

        assert scanner.pick_deposit(balances, Decimal("0.01"), native_reserve_wei=10**15) is None
        assert scanner.pick_deposit([], Decimal("0.01")) is None

    def test_pick_deposits_lists_everything(self):
        """Test every balance above dust is returned, fungibles before ETH."""
        scanner = TokenScanner(mock_client())
        send = Fungible.from_config(SEND_BASE)
        usdc = Fungible.from_config(USDC_BASE)
        balances = [
            TokenBalance(Native(), 10**17),
            TokenBalance(usdc, 3_000_000),
            TokenBalance(send, 2 * 10**18),
        ]

        deposits = scanner.pick_deposits(balances, Decimal("0.01"), native_reserve_wei=10**15)

        assert [d.symbol for d in deposits] == ["USDC", "SEND", "ETH"]
        assert deposits[-1].raw_amount == 10**17 - 10**15

    def test_settlement_asset(self):
        """Test the settlement asset is USDC on Base."""
        scanner = TokenScanner(mock_client())
        assert scanner.settlement_asset.contract == USDC_BASE.address
        assert scanner.settlement_asset.decimals == 6


class TestERC20:
    """Tests for ERC20 call data and receipt decoding."""

    def test_transfer_encoding(self):
        """Test transfer call data carries selector, recipient and amount."""
        data = erc20.encode_transfer(RECEIVER, 1234)

        assert data.startswith("0xa9059cbb")
        assert data[-64:] == (1234).to_bytes(32, "big").hex()
        assert RECEIVER[2:] in data

    def test_approve_defaults_to_max(self):
        """Test approvals default to the maximum allowance."""
        data = erc20.encode_approve(RECEIVER)

        assert data.startswith("0x095ea7b3")
        assert data.endswith("f" * 64)

    def test_decode_uint256(self):
        """Test eth_call results decode to integers."""
        assert erc20.decode_uint256("0x" + (42).to_bytes(32, "big").hex()) == 42
        assert erc20.decode_uint256("0x") == 0
        with pytest.raises(ValueError):
            erc20.decode_uint256("0x1234")

    def test_transfers_in_receipt(self, make_receipt):
        """Test only matching token transfers to the receiver are summed."""
        receipt = make_receipt(USDC_BASE.address, RECEIVER, 25_000_000)
        other = make_receipt(SEND_BASE.address, RECEIVER, 10**18)["logs"][0]
        elsewhere = make_receipt(USDC_BASE.address, WALLET, 7)["logs"][0]
        receipt["logs"].extend([other, elsewhere])

        assert erc20.transfers_in_receipt(receipt, USDC_BASE.address, RECEIVER) == 25_000_000

    def test_transfers_in_empty_receipt(self):
        """Test a receipt without logs sums to zero."""
        assert erc20.transfers_in_receipt({"logs": []}, USDC_BASE.address, RECEIVER) == 0
