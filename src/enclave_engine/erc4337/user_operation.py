"""PackedUserOperation primitives for ERC-4337 v0.7."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Optional

from ..abi import (
    UINT128_MAX,
    UINT256_MAX,
    hex_to_bytes,
    normalize_address,
    pack_uint128_pair,
    strip_0x,
    to_hex,
)
from ..exceptions import MalformedInputError
from ..units import parse_quantity, to_quantity


@dataclass(frozen=True)
class DeploymentPayload:
    """Factory call that deploys the sender on its first operation."""
    factory: str
    factory_data: bytes

    def __post_init__(self) -> None:
        object.__setattr__(self, "factory", normalize_address(self.factory, field="factory"))

    @property
    def init_code(self) -> bytes:
        return bytes.fromhex(strip_0x(self.factory)) + self.factory_data


@dataclass(frozen=True)
class PaymasterFields:
    """Sponsor fields; packed as paymaster(20) || verificationGas(16) || postOpGas(16) || data."""
    paymaster: str
    verification_gas_limit: int = 0
    post_op_gas_limit: int = 0
    data: bytes = b""

    def __post_init__(self) -> None:
        object.__setattr__(self, "paymaster", normalize_address(self.paymaster, field="paymaster"))
        pack_uint128_pair(self.verification_gas_limit, self.post_op_gas_limit, field="paymaster")

    def pack(self) -> bytes:
        return (
            bytes.fromhex(strip_0x(self.paymaster))
            + pack_uint128_pair(self.verification_gas_limit, self.post_op_gas_limit)
            + self.data
        )

    @classmethod
    def unpack(cls, packed: bytes) -> "PaymasterFields":
        if len(packed) < 52:
            raise MalformedInputError(
                f"paymasterAndData must be at least 52 bytes, got {len(packed)}",
                field="paymasterAndData",
            )
        return cls(
            paymaster=normalize_address(packed[:20]),
            verification_gas_limit=int.from_bytes(packed[20:36], "big"),
            post_op_gas_limit=int.from_bytes(packed[36:52], "big"),
            data=packed[52:],
        )


_GAS_FIELDS = (
    "verification_gas_limit",
    "call_gas_limit",
    "max_fee_per_gas",
    "max_priority_fee_per_gas",
)


@dataclass(frozen=True)
class UserOperation:
    """One authorized action, in unpacked form.

    Instances are immutable; gas, fee, paymaster and signature updates
    return a new operation.
    """
    sender: str
    nonce: int
    call_data: bytes = b""
    deployment: Optional[DeploymentPayload] = None
    verification_gas_limit: int = 0
    call_gas_limit: int = 0
    pre_verification_gas: int = 0
    max_fee_per_gas: int = 0
    max_priority_fee_per_gas: int = 0
    paymaster: Optional[PaymasterFields] = None
    signature: bytes = field(default=b"", repr=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "sender", normalize_address(self.sender, field="sender"))
        if not 0 <= self.nonce <= UINT256_MAX:
            raise MalformedInputError(f"Nonce out of range: {self.nonce}", field="nonce")
        if not 0 <= self.pre_verification_gas <= UINT256_MAX:
            raise MalformedInputError(
                f"preVerificationGas out of range: {self.pre_verification_gas}",
                field="pre_verification_gas",
            )
        for name in _GAS_FIELDS:
            value = getattr(self, name)
            if not 0 <= value <= UINT128_MAX:
                raise MalformedInputError(
                    f"{name} does not fit in 128 bits: {value}", field=name
                )

    # -- packed views used by the hash -------------------------------------

    @property
    def init_code(self) -> bytes:
        return self.deployment.init_code if self.deployment else b""

    @property
    def paymaster_and_data(self) -> bytes:
        return self.paymaster.pack() if self.paymaster else b""

    @property
    def account_gas_limits(self) -> bytes:
        return pack_uint128_pair(self.verification_gas_limit, self.call_gas_limit)

    @property
    def gas_fees(self) -> bytes:
        return pack_uint128_pair(self.max_priority_fee_per_gas, self.max_fee_per_gas)

    @property
    def total_gas(self) -> int:
        total = self.pre_verification_gas + self.verification_gas_limit + self.call_gas_limit
        if self.paymaster:
            total += self.paymaster.verification_gas_limit + self.paymaster.post_op_gas_limit
        return total

    @property
    def max_gas_cost(self) -> int:
        return self.total_gas * self.max_fee_per_gas

    # -- copy-on-write updates ---------------------------------------------

    def with_gas(
        self,
        *,
        verification_gas_limit: Optional[int] = None,
        call_gas_limit: Optional[int] = None,
        pre_verification_gas: Optional[int] = None,
    ) -> "UserOperation":
        return replace(
            self,
            verification_gas_limit=self.verification_gas_limit if verification_gas_limit is None else verification_gas_limit,
            call_gas_limit=self.call_gas_limit if call_gas_limit is None else call_gas_limit,
            pre_verification_gas=self.pre_verification_gas if pre_verification_gas is None else pre_verification_gas,
            signature=b"",
        )

    def with_fees(self, max_fee_per_gas: int, max_priority_fee_per_gas: int) -> "UserOperation":
        return replace(
            self,
            max_fee_per_gas=max_fee_per_gas,
            max_priority_fee_per_gas=max_priority_fee_per_gas,
            signature=b"",
        )

    def with_paymaster(self, paymaster: Optional[PaymasterFields]) -> "UserOperation":
        return replace(self, paymaster=paymaster, signature=b"")

    def with_signature(self, signature: bytes) -> "UserOperation":
        return replace(self, signature=signature)

    # -- JSON-RPC form -----------------------------------------------------

    def to_rpc(self) -> dict[str, Any]:
        """Unpacked v0.7 JSON form used by bundlers and paymasters."""
        rpc: dict[str, Any] = {
            "sender": self.sender,
            "nonce": to_quantity(self.nonce),
        }
        if self.deployment:
            rpc["factory"] = self.deployment.factory
            rpc["factoryData"] = to_hex(self.deployment.factory_data)
        rpc.update({
            "callData": to_hex(self.call_data),
            "callGasLimit": to_quantity(self.call_gas_limit),
            "verificationGasLimit": to_quantity(self.verification_gas_limit),
            "preVerificationGas": to_quantity(self.pre_verification_gas),
            "maxFeePerGas": to_quantity(self.max_fee_per_gas),
            "maxPriorityFeePerGas": to_quantity(self.max_priority_fee_per_gas),
        })
        if self.paymaster:
            rpc["paymaster"] = self.paymaster.paymaster
            rpc["paymasterVerificationGasLimit"] = to_quantity(self.paymaster.verification_gas_limit)
            rpc["paymasterPostOpGasLimit"] = to_quantity(self.paymaster.post_op_gas_limit)
            rpc["paymasterData"] = to_hex(self.paymaster.data)
        rpc["signature"] = to_hex(self.signature)
        return rpc

    @classmethod
    def from_rpc(cls, payload: dict[str, Any]) -> "UserOperation":
        try:
            deployment = None
            if payload.get("factory"):
                deployment = DeploymentPayload(
                    factory=payload["factory"],
                    factory_data=hex_to_bytes(payload.get("factoryData", "0x"), field="factoryData"),
                )
            paymaster = None
            if payload.get("paymaster"):
                paymaster = PaymasterFields(
                    paymaster=payload["paymaster"],
                    verification_gas_limit=parse_quantity(payload.get("paymasterVerificationGasLimit")),
                    post_op_gas_limit=parse_quantity(payload.get("paymasterPostOpGasLimit")),
                    data=hex_to_bytes(payload.get("paymasterData", "0x"), field="paymasterData"),
                )
            return cls(
                sender=payload["sender"],
                nonce=parse_quantity(payload["nonce"], field="nonce"),
                call_data=hex_to_bytes(payload.get("callData", "0x"), field="callData"),
                deployment=deployment,
                verification_gas_limit=parse_quantity(payload.get("verificationGasLimit")),
                call_gas_limit=parse_quantity(payload.get("callGasLimit")),
                pre_verification_gas=parse_quantity(payload.get("preVerificationGas")),
                max_fee_per_gas=parse_quantity(payload.get("maxFeePerGas")),
                max_priority_fee_per_gas=parse_quantity(payload.get("maxPriorityFeePerGas")),
                paymaster=paymaster,
                signature=hex_to_bytes(payload.get("signature", "0x"), field="signature"),
            )
        except KeyError as e:
            raise MalformedInputError(f"UserOperation missing field {e.args[0]}", field=e.args[0]) from e
