"""ERC-4337 bundler client.

Submission returns an explicit result instead of raising for the one relay
error that needs structured handling:

- ``Accepted(user_op_hash)``
- ``NeedsFeeBump(floor)``: the relay rejected the fees and reported the floor
- ``Rejected(error)``: any other relay error
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional, Union

import httpx
from pydantic import Field

from ..config import ENTRY_POINT_V07, RelayConfig
from ..exceptions import MalformedInputError, ReceiptTimeoutError, RelayRejectedError
from ..logging_utils import mask_url
from ..retry import RetryConfig
from .jsonrpc import JSONRPCClient, JSONRPCError, Quantity, RelayModel
from .user_operation import UserOperation

logger = logging.getLogger(__name__)

FEE_TOO_LOW_MARKERS = ("fee too low", "underpriced", "must be at least")


class GasEstimate(RelayModel):
    pre_verification_gas: Quantity = Field(alias="preVerificationGas")
    verification_gas_limit: Quantity = Field(alias="verificationGasLimit")
    call_gas_limit: Quantity = Field(alias="callGasLimit")
    paymaster_verification_gas_limit: Optional[Quantity] = Field(
        default=None, alias="paymasterVerificationGasLimit"
    )


class TransactionReceipt(RelayModel):
    transaction_hash: str = Field(alias="transactionHash")
    block_number: Quantity = Field(alias="blockNumber")
    status: Quantity = 1

    @property
    def succeeded(self) -> bool:
        return self.status == 1


class UserOperationReceipt(RelayModel):
    user_op_hash: Optional[str] = Field(default=None, alias="userOpHash")
    success: bool
    actual_gas_cost: Quantity = Field(default=0, alias="actualGasCost")
    actual_gas_used: Quantity = Field(default=0, alias="actualGasUsed")
    reason: Optional[str] = None
    receipt: Optional[TransactionReceipt] = None

    @property
    def transaction_hash(self) -> Optional[str]:
        return self.receipt.transaction_hash if self.receipt else None


class FeeFloor(RelayModel):
    """Minimum fees the relay will accept, from a fee-too-low error's data."""
    max_fee_per_gas: Quantity = Field(default=0, alias="maxFeePerGas")
    max_priority_fee_per_gas: Quantity = Field(default=0, alias="maxPriorityFeePerGas")

    @property
    def is_empty(self) -> bool:
        return self.max_fee_per_gas == 0 and self.max_priority_fee_per_gas == 0

    def replacement_fees(
        self,
        current_max_fee: int,
        current_priority_fee: int,
        bump_percent: int,
    ) -> tuple[int, int]:
        """Fees for the replacement: above the floor, never below what was offered."""

        def bump(floor: int, current: int) -> int:
            return max(floor * bump_percent // 100, floor + 1, current)

        priority = bump(self.max_priority_fee_per_gas, current_priority_fee)
        max_fee = max(bump(self.max_fee_per_gas, current_max_fee), priority)
        return max_fee, priority


@dataclass(frozen=True)
class Accepted:
    user_op_hash: str


@dataclass(frozen=True)
class NeedsFeeBump:
    floor: FeeFloor
    message: str = ""
    code: Optional[int] = None


@dataclass(frozen=True)
class Rejected:
    error: RelayRejectedError


SubmissionResult = Union[Accepted, NeedsFeeBump, Rejected]


def classify_send_error(error: JSONRPCError) -> Union[NeedsFeeBump, Rejected]:
    """Tell a fee-too-low rejection (with a usable floor) from any other error."""
    message = error.message.lower()
    if any(marker in message for marker in FEE_TOO_LOW_MARKERS) and isinstance(error.data, dict):
        try:
            floor = FeeFloor.parse(error.data, "eth_sendUserOperation")
        except MalformedInputError:
            floor = None
        if floor is not None and not floor.is_empty:
            return NeedsFeeBump(floor=floor, message=error.message, code=error.code)
    return Rejected(error=error.to_exception("eth_sendUserOperation"))


@dataclass
class BundlerConfig:
    url: str
    entry_point: str = ENTRY_POINT_V07
    timeout_seconds: float = 30.0
    retry: RetryConfig = field(default_factory=RetryConfig)

    @classmethod
    def from_relay_config(cls, url: str, entry_point: str, relay: RelayConfig) -> "BundlerConfig":
        return cls(
            url=url,
            entry_point=entry_point,
            timeout_seconds=relay.timeout_seconds,
            retry=RetryConfig(
                max_retries=relay.max_transport_retries,
                base_delay=relay.retry_base_delay_seconds,
            ),
        )


class BundlerClient(JSONRPCClient):
    def __init__(self, config: BundlerConfig, http_client: Optional[httpx.AsyncClient] = None):
        super().__init__(
            config.url,
            timeout_seconds=config.timeout_seconds,
            retry=config.retry,
            http_client=http_client,
        )
        self._config = config

    @property
    def entry_point(self) -> str:
        return self._config.entry_point

    async def supported_entry_points(self) -> list[str]:
        result = await self._rpc("eth_supportedEntryPoints", [])
        if not isinstance(result, list):
            raise MalformedInputError("Bundler returned invalid entry point list")
        return [str(address) for address in result]

    async def supports_entry_point(self) -> bool:
        supported = {address.lower() for address in await self.supported_entry_points()}
        return self.entry_point.lower() in supported

    async def estimate_user_operation_gas(self, user_op: UserOperation) -> GasEstimate:
        result = await self._rpc("eth_estimateUserOperationGas", [user_op.to_rpc(), self.entry_point])
        return GasEstimate.parse(result, "eth_estimateUserOperationGas")

    async def send_user_operation(self, user_op: UserOperation) -> SubmissionResult:
        response = await self._call("eth_sendUserOperation", [user_op.to_rpc(), self.entry_point])
        if response.error is not None:
            outcome = classify_send_error(response.error)
            if isinstance(outcome, NeedsFeeBump):
                logger.warning(
                    "Bundler wants higher fees: maxFee>=%d priority>=%d",
                    outcome.floor.max_fee_per_gas, outcome.floor.max_priority_fee_per_gas,
                )
            else:
                logger.error("Bundler rejected UserOperation: %s", response.error.message)
            return outcome
        if not isinstance(response.result, str):
            raise MalformedInputError("Bundler returned invalid user op hash")
        logger.info("UserOp submitted to %s: %s", mask_url(self.url), response.result)
        return Accepted(user_op_hash=response.result)

    async def get_user_operation_receipt(self, user_op_hash: str) -> Optional[UserOperationReceipt]:
        result = await self._rpc("eth_getUserOperationReceipt", [user_op_hash])
        if result is None:
            return None
        return UserOperationReceipt.parse(result, "eth_getUserOperationReceipt")

    async def wait_for_receipt(
        self,
        user_op_hash: str,
        timeout_seconds: float = 60.0,
        poll_seconds: float = 2.0,
    ) -> UserOperationReceipt:
        """Poll until a receipt appears or the deadline passes.

        Cancelling the awaiting task stops polling immediately.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_seconds
        while True:
            receipt = await self.get_user_operation_receipt(user_op_hash)
            if receipt is not None:
                return receipt
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise ReceiptTimeoutError(user_op_hash, timeout_seconds)
            await asyncio.sleep(min(poll_seconds, remaining))


__all__ = [
    "Accepted",
    "BundlerClient",
    "BundlerConfig",
    "FeeFloor",
    "GasEstimate",
    "NeedsFeeBump",
    "Rejected",
    "SubmissionResult",
    "TransactionReceipt",
    "UserOperationReceipt",
    "classify_send_error",
]

