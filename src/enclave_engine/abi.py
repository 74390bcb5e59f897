"""ABI codec for account calldata.

Encoding goes through eth_abi so the bytes match what the account contract
expects. Decoding is hand-rolled over 32-byte words because preview code must
never crash on hostile input: every read is bounds-checked and raises
MalformedInputError instead of IndexError or a library-specific decode error.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Sequence

from eth_abi import encode
from eth_utils import is_hex_address, to_checksum_address
from web3 import Web3

from .exceptions import MalformedInputError

WORD_SIZE = 32
UINT256_MAX = 2**256 - 1
UINT128_MAX = 2**128 - 1


def function_selector(signature: str) -> bytes:
    """First four bytes of keccak256(signature)."""
    return bytes(Web3.keccak(text=signature)[:4])


EXECUTE_SIGNATURE = "execute(address,uint256,bytes)"
EXECUTE_BATCH_SIGNATURE = "executeBatch((address,uint256,bytes)[])"
ERC20_TRANSFER_SIGNATURE = "transfer(address,uint256)"
ERC20_APPROVE_SIGNATURE = "approve(address,uint256)"
ERC20_TRANSFER_FROM_SIGNATURE = "transferFrom(address,address,uint256)"
ERC20_BALANCE_OF_SIGNATURE = "balanceOf(address)"

EXECUTE_SELECTOR = function_selector(EXECUTE_SIGNATURE)  # 0xb61d27f6
EXECUTE_BATCH_SELECTOR = function_selector(EXECUTE_BATCH_SIGNATURE)  # 0x34fcd5be
ERC20_TRANSFER_SELECTOR = function_selector(ERC20_TRANSFER_SIGNATURE)  # 0xa9059cbb
ERC20_APPROVE_SELECTOR = function_selector(ERC20_APPROVE_SIGNATURE)  # 0x095ea7b3
ERC20_TRANSFER_FROM_SELECTOR = function_selector(ERC20_TRANSFER_FROM_SIGNATURE)  # 0x23b872dd
ERC20_BALANCE_OF_SELECTOR = function_selector(ERC20_BALANCE_OF_SIGNATURE)  # 0x70a08231


# ---------------------------------------------------------------------------
# Hex helpers
# ---------------------------------------------------------------------------

def strip_0x(value: str) -> str:
    if value.startswith(("0x", "0X")):
        return value[2:]
    return value


def hex_to_bytes(value: str | bytes, field: str | None = None) -> bytes:
    """Decode a 0x-prefixed (or bare) hex string, raising MalformedInputError on bad input."""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    raw = strip_0x(value.strip())
    if len(raw) % 2:
        raise MalformedInputError(f"Odd-length hex string: {value!r}", field=field)
    try:
        return bytes.fromhex(raw)
    except ValueError:
        raise MalformedInputError(f"Invalid hex string: {value!r}", field=field) from None


def to_hex(data: bytes) -> str:
    return "0x" + data.hex()


def normalize_address(address: str | bytes, field: str | None = None) -> str:
    """Return the checksummed form of a 20-byte address."""
    if isinstance(address, (bytes, bytearray)):
        if len(address) != 20:
            raise MalformedInputError(
                f"Address must be 20 bytes, got {len(address)}", field=field
            )
        return to_checksum_address(bytes(address))
    if not is_hex_address(address):
        raise MalformedInputError(f"Invalid address: {address!r}", field=field)
    return to_checksum_address(address)


# ---------------------------------------------------------------------------
# Word encoding
# ---------------------------------------------------------------------------

def encode_uint(value: int, field: str | None = None) -> bytes:
    """Encode an unsigned integer as a 32-byte big-endian word."""
    if value < 0 or value > UINT256_MAX:
        raise MalformedInputError(f"Value out of uint256 range: {value}", field=field)
    return value.to_bytes(WORD_SIZE, "big")


def encode_address(address: str | bytes) -> bytes:
    """Encode an address as a left-padded 32-byte word."""
    raw = bytes.fromhex(strip_0x(normalize_address(address)))
    return raw.rjust(WORD_SIZE, b"\x00")


def pack_uint128_pair(high: int, low: int, field: str | None = None) -> bytes:
    """Pack two 128-bit values into one 32-byte word, ``high`` first."""
    for value in (high, low):
        if value < 0 or value > UINT128_MAX:
            raise MalformedInputError(
                f"Value does not fit in 128 bits: {value}", field=field
            )
    return high.to_bytes(16, "big") + low.to_bytes(16, "big")


def unpack_uint128_pair(word: bytes) -> tuple[int, int]:
    if len(word) != WORD_SIZE:
        raise MalformedInputError(f"Packed pair must be 32 bytes, got {len(word)}")
    return int.from_bytes(word[:16], "big"), int.from_bytes(word[16:], "big")


# ---------------------------------------------------------------------------
# Call encoding
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Call:
    """One (destination, value, data) triple executed by the account."""
    to: str
    value: int = 0
    data: bytes = b""

    def as_tuple(self) -> tuple[str, int, bytes]:
        return (normalize_address(self.to, field="to"), self.value, self.data)


def encode_execute(to: str, value: int, data: bytes = b"") -> bytes:
    """Encode execute(address,uint256,bytes) calldata."""
    encoded = encode(["address", "uint256", "bytes"], [normalize_address(to, field="to"), value, data])
    return EXECUTE_SELECTOR + encoded


def encode_execute_batch(calls: Sequence[Call]) -> bytes:
    """Encode executeBatch((address,uint256,bytes)[]) calldata."""
    encoded = encode(["(address,uint256,bytes)[]"], [[call.as_tuple() for call in calls]])
    return EXECUTE_BATCH_SELECTOR + encoded


def encode_erc20_transfer(to: str, amount: int) -> bytes:
    return ERC20_TRANSFER_SELECTOR + encode(["address", "uint256"], [normalize_address(to), amount])


def encode_erc20_approve(spender: str, amount: int) -> bytes:
    return ERC20_APPROVE_SELECTOR + encode(["address", "uint256"], [normalize_address(spender), amount])


def encode_erc20_transfer_from(owner: str, to: str, amount: int) -> bytes:
    return ERC20_TRANSFER_FROM_SELECTOR + encode(
        ["address", "address", "uint256"],
        [normalize_address(owner), normalize_address(to), amount],
    )


def encode_balance_of(owner: str) -> bytes:
    return ERC20_BALANCE_OF_SELECTOR + encode(["address"], [normalize_address(owner)])


# ---------------------------------------------------------------------------
# Total decoding
# ---------------------------------------------------------------------------

class WordReader:
    """Bounds-checked reader over ABI-encoded bytes."""

    def __init__(self, data: bytes) -> None:
        self.data = data

    def __len__(self) -> int:
        return len(self.data)

    def word(self, offset: int) -> bytes:
        if offset < 0 or offset + WORD_SIZE > len(self.data):
            raise MalformedInputError(
                f"Truncated data: need word at {offset}, have {len(self.data)} bytes"
            )
        return self.data[offset:offset + WORD_SIZE]

    def uint(self, offset: int) -> int:
        return int.from_bytes(self.word(offset), "big")

    def address(self, offset: int) -> str:
        return to_checksum_address(self.word(offset)[12:])

    def dynamic_bytes(self, head_offset: int, base: int = 0) -> bytes:
        """Read a ``bytes`` value whose offset word sits at ``head_offset``.

        The offset is relative to ``base``; the payload is a length word
        followed by the data.
        """
        start = base + self.uint(head_offset)
        length = self.uint(start)
        end = start + WORD_SIZE + length
        if end > len(self.data):
            raise MalformedInputError(
                f"Truncated bytes: declared length {length} at {start} exceeds data"
            )
        return self.data[start + WORD_SIZE:end]


def split_selector(call_data: bytes) -> tuple[bytes, bytes]:
    if len(call_data) < 4:
        raise MalformedInputError(f"Calldata shorter than a selector: {len(call_data)} bytes")
    return call_data[:4], call_data[4:]


def decode_execute_params(params: bytes) -> Call:
    """Decode the (address, uint256, bytes) arguments of execute()."""
    if len(params) < 3 * WORD_SIZE:
        raise MalformedInputError(f"execute() arguments truncated: {len(params)} bytes")
    reader = WordReader(params)
    return Call(
        to=reader.address(0),
        value=reader.uint(WORD_SIZE),
        data=reader.dynamic_bytes(2 * WORD_SIZE),
    )


def iter_batch_calls(params: bytes) -> Iterator[Call]:
    """Yield the triples of an executeBatch() argument.

    Element offsets are relative to the start of the element-offset table;
    each element's bytes offset is relative to the element itself. Raises
    MalformedInputError at the first element that cannot be read, after
    yielding every element before it.
    """
    reader = WordReader(params)
    array_start = reader.uint(0)
    count = reader.uint(array_start)
    table = array_start + WORD_SIZE

    for i in range(count):
        element = table + reader.uint(table + i * WORD_SIZE)
        yield Call(
            to=reader.address(element),
            value=reader.uint(element + WORD_SIZE),
            data=reader.dynamic_bytes(element + 2 * WORD_SIZE, base=element),
        )


def decode_execute(call_data: bytes) -> Call:
    selector, params = split_selector(call_data)
    if selector != EXECUTE_SELECTOR:
        raise MalformedInputError(f"Not an execute() call: 0x{selector.hex()}")
    return decode_execute_params(params)


def decode_execute_batch(call_data: bytes) -> list[Call]:
    selector, params = split_selector(call_data)
    if selector != EXECUTE_BATCH_SELECTOR:
        raise MalformedInputError(f"Not an executeBatch() call: 0x{selector.hex()}")
    return list(iter_batch_calls(params))


def decode_token_arguments(inner: bytes) -> tuple[bytes, list[str], int] | None:
    """Split a token call into (selector, address arguments, amount).

    Returns None when ``inner`` is not a well-formed transfer, approve or
    transferFrom call.
    """
    if len(inner) < 4:
        return None
    selector, args = inner[:4], WordReader(inner[4:])
    try:
        if selector in (ERC20_TRANSFER_SELECTOR, ERC20_APPROVE_SELECTOR):
            return selector, [args.address(0)], args.uint(WORD_SIZE)
        if selector == ERC20_TRANSFER_FROM_SELECTOR:
            return selector, [args.address(0), args.address(WORD_SIZE)], args.uint(2 * WORD_SIZE)
    except MalformedInputError:
        return None
    return None
