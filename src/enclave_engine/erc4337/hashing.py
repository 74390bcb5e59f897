"""UserOperation hashing, bit-for-bit with the v0.7 EntryPoint.

The hash is two layers:

1. ``struct_hash = keccak(abi.encode(TYPEHASH, sender, nonce, keccak(initCode),
   keccak(callData), accountGasLimits, preVerificationGas, gasFees,
   keccak(paymasterAndData)))``
2. ``user_op_hash = keccak(abi.encode(struct_hash, entryPoint, chainId))``

The packed gas and fee words go in as opaque bytes32 values.
"""

from __future__ import annotations

from eth_abi import encode
from web3 import Web3

from ..abi import normalize_address
from .user_operation import UserOperation

PACKED_USER_OPERATION_TYPE = (
    "PackedUserOperation(address sender,uint256 nonce,bytes initCode,bytes callData,"
    "bytes32 accountGasLimits,uint256 preVerificationGas,bytes32 gasFees,"
    "bytes paymasterAndData)"
)
PACKED_USER_OPERATION_TYPEHASH = bytes(Web3.keccak(text=PACKED_USER_OPERATION_TYPE))


def keccak(data: bytes) -> bytes:
    return bytes(Web3.keccak(data))


def struct_hash(user_op: UserOperation) -> bytes:
    """Inner hash over the type tag and the operation fields (signature excluded)."""
    encoded = encode(
        [
            "bytes32",
            "address",
            "uint256",
            "bytes32",
            "bytes32",
            "bytes32",
            "uint256",
            "bytes32",
            "bytes32",
        ],
        [
            PACKED_USER_OPERATION_TYPEHASH,
            user_op.sender,
            user_op.nonce,
            keccak(user_op.init_code),
            keccak(user_op.call_data),
            user_op.account_gas_limits,
            user_op.pre_verification_gas,
            user_op.gas_fees,
            keccak(user_op.paymaster_and_data),
        ],
    )
    return keccak(encoded)


def user_operation_hash(user_op: UserOperation, entry_point: str, chain_id: int) -> bytes:
    """The digest the account signs and the bundler reports as the operation id."""
    encoded = encode(
        ["bytes32", "address", "uint256"],
        [struct_hash(user_op), normalize_address(entry_point, field="entry_point"), chain_id],
    )
    return keccak(encoded)
