"""Calldata decoder for transaction previews.

Turns an account's execute()/executeBatch() payload back into a short list of
recognizable actions. Decoding is total: anything that cannot be read becomes
an ``Unknown`` entry, never an exception, because a preview that fails to
render is worse than one that says "unrecognized".
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Union

from .abi import (
    ERC20_APPROVE_SELECTOR,
    ERC20_TRANSFER_FROM_SELECTOR,
    ERC20_TRANSFER_SELECTOR,
    EXECUTE_BATCH_SELECTOR,
    EXECUTE_SELECTOR,
    UINT256_MAX,
    Call,
    decode_execute_params,
    decode_token_arguments,
    hex_to_bytes,
    iter_batch_calls,
    to_hex,
)
from .config import NetworkConfig
from .exceptions import MalformedInputError
from .logging_utils import mask_address
from .units import format_ether, format_units

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenInfo:
    symbol: str
    decimals: int


DEFAULT_TOKEN = TokenInfo("TOKEN", 18)


class TokenRegistry:
    """Symbol and decimals for the tokens a preview knows by address."""

    def __init__(self, tokens: Optional[Mapping[str, TokenInfo]] = None):
        self._tokens: Dict[str, TokenInfo] = {
            address.lower(): info for address, info in (tokens or {}).items()
        }

    @classmethod
    def for_network(cls, network: NetworkConfig) -> "TokenRegistry":
        tokens = {}
        if network.usdc_address:
            tokens[network.usdc_address] = TokenInfo("USDC", 6)
        return cls(tokens)

    def lookup(self, address: str) -> TokenInfo:
        return self._tokens.get(address.lower(), DEFAULT_TOKEN)


@dataclass(frozen=True)
class EthTransfer:
    to: str
    amount: int

    def describe(self, tokens: Optional[TokenRegistry] = None) -> str:
        return f"Send {format_ether(self.amount)} ETH to {mask_address(self.to)}"


@dataclass(frozen=True)
class Erc20Transfer:
    token: str
    to: str
    amount: int

    def describe(self, tokens: Optional[TokenRegistry] = None) -> str:
        info = (tokens or TokenRegistry()).lookup(self.token)
        formatted = format_units(self.amount, info.decimals)
        return f"Send {formatted} {info.symbol} to {mask_address(self.to)}"


@dataclass(frozen=True)
class Erc20Approve:
    token: str
    spender: str
    amount: int

    @property
    def unlimited(self) -> bool:
        return self.amount == UINT256_MAX

    def describe(self, tokens: Optional[TokenRegistry] = None) -> str:
        info = (tokens or TokenRegistry()).lookup(self.token)
        if self.unlimited:
            return f"Approve unlimited {info.symbol} to {mask_address(self.spender)}"
        formatted = format_units(self.amount, info.decimals)
        return f"Approve {formatted} {info.symbol} to {mask_address(self.spender)}"


@dataclass(frozen=True)
class ContractCall:
    to: str
    value: int
    selector: str
    data: bytes

    def describe(self, tokens: Optional[TokenRegistry] = None) -> str:
        if self.value > 0:
            return f"Call {self.selector} on {mask_address(self.to)} with {format_ether(self.value)} ETH"
        return f"Call {self.selector} on {mask_address(self.to)}"


@dataclass(frozen=True)
class Unknown:
    selector: str
    data: bytes

    def describe(self, tokens: Optional[TokenRegistry] = None) -> str:
        return f"Unknown call ({self.selector})"


DecodedAction = Union[EthTransfer, Erc20Transfer, Erc20Approve, ContractCall, Unknown]


def _selector_of(data: bytes) -> str:
    return to_hex(data[:4]) if len(data) >= 4 else "0x"


def _classify(call: Call) -> DecodedAction:
    """Map one (to, value, data) triple to the most specific action."""
    if not call.data:
        if call.value > 0:
            return EthTransfer(to=call.to, amount=call.value)
        return Unknown(selector="0x", data=b"")

    token_call = decode_token_arguments(call.data)
    if token_call is not None:
        selector, addresses, amount = token_call
        if selector == ERC20_TRANSFER_SELECTOR:
            return Erc20Transfer(token=call.to, to=addresses[0], amount=amount)
        if selector == ERC20_APPROVE_SELECTOR:
            return Erc20Approve(token=call.to, spender=addresses[0], amount=amount)
        if selector == ERC20_TRANSFER_FROM_SELECTOR:
            return Erc20Transfer(token=call.to, to=addresses[1], amount=amount)

    return ContractCall(
        to=call.to,
        value=call.value,
        selector=_selector_of(call.data),
        data=call.data,
    )


def decode_call_data(call_data: Union[bytes, str]) -> List[DecodedAction]:
    """Decode an operation's call payload; always returns at least one action."""
    if isinstance(call_data, str):
        try:
            call_data = hex_to_bytes(call_data, field="callData")
        except MalformedInputError:
            return [Unknown(selector="0x", data=b"")]

    if len(call_data) < 4:
        return [Unknown(selector="0x", data=call_data)]

    selector, params = call_data[:4], call_data[4:]

    if selector == EXECUTE_SELECTOR:
        try:
            return [_classify(decode_execute_params(params))]
        except MalformedInputError as e:
            logger.debug("Undecodable execute() payload: %s", e.message)
            return [Unknown(selector=to_hex(selector), data=call_data)]

    if selector == EXECUTE_BATCH_SELECTOR:
        actions: List[DecodedAction] = []
        try:
            for call in iter_batch_calls(params):
                actions.append(_classify(call))
        except MalformedInputError as e:
            # keep the elements decoded before the truncation
            logger.debug("Batch payload truncated after %d calls: %s", len(actions), e.message)
        return actions or [Unknown(selector=to_hex(selector), data=call_data)]

    return [Unknown(selector=to_hex(selector), data=call_data)]


def describe_call_data(
    call_data: Union[bytes, str],
    tokens: Optional[TokenRegistry] = None,
) -> List[str]:
    return [action.describe(tokens) for action in decode_call_data(call_data)]
