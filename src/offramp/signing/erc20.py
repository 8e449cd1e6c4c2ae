"""ERC20 call data encoding and log decoding."""

from eth_abi import decode, encode
from eth_utils import function_signature_to_4byte_selector, keccak, to_checksum_address

MAX_UINT256 = 2**256 - 1

BALANCE_OF = function_signature_to_4byte_selector("balanceOf(address)")
ALLOWANCE = function_signature_to_4byte_selector("allowance(address,address)")
DECIMALS = function_signature_to_4byte_selector("decimals()")
TRANSFER = function_signature_to_4byte_selector("transfer(address,uint256)")
APPROVE = function_signature_to_4byte_selector("approve(address,uint256)")

TRANSFER_EVENT_TOPIC = "0x" + keccak(text="Transfer(address,address,uint256)").hex()


def _hex(selector: bytes, args: bytes = b"") -> str:
    return "0x" + (selector + args).hex()


def encode_balance_of(owner: str) -> str:
    return _hex(BALANCE_OF, encode(["address"], [to_checksum_address(owner)]))


def encode_allowance(owner: str, spender: str) -> str:
    return _hex(
        ALLOWANCE,
        encode(["address", "address"], [to_checksum_address(owner), to_checksum_address(spender)]),
    )


def encode_decimals() -> str:
    return _hex(DECIMALS)


def encode_transfer(to: str, amount: int) -> str:
    return _hex(TRANSFER, encode(["address", "uint256"], [to_checksum_address(to), amount]))


def encode_approve(spender: str, amount: int = MAX_UINT256) -> str:
    return _hex(APPROVE, encode(["address", "uint256"], [to_checksum_address(spender), amount]))


def decode_uint256(data: str) -> int:
    """Decode a single uint256 eth_call result."""
    raw = bytes.fromhex(data[2:] if data.startswith("0x") else data)
    if not raw:
        return 0
    if len(raw) < 32:
        raise ValueError(f"Malformed uint256 result: {data}")
    return decode(["uint256"], raw)[0]


def _topic_address(topic: str) -> str:
    return to_checksum_address("0x" + topic[-40:])


def transfers_in_receipt(receipt: dict, token: str, to: str) -> int:
    """Sum ERC20 Transfer amounts of ``token`` sent to ``to`` in a receipt.

    Works on the raw JSON-RPC receipt shape (hex strings).
    """
    total = 0
    token_lower = token.lower()
    to_lower = to.lower()

    for log in receipt.get("logs", []):
        topics = log.get("topics") or []
        if len(topics) < 3 or str(log.get("address", "")).lower() != token_lower:
            continue
        topic0 = topics[0] if isinstance(topics[0], str) else "0x" + topics[0].hex()
        if topic0.lower() != TRANSFER_EVENT_TOPIC:
            continue
        if _topic_address(topics[2]).lower() != to_lower:
            continue
        total += decode_uint256(log.get("data", "0x"))

    return total
