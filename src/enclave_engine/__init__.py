"""
enclave-engine: ERC-4337 transaction engine for P-256 smart accounts.

Builds, hashes, signs and submits UserOperations for accounts controlled by
a hardware-class P-256 key, and decodes their call payloads for preview.
"""
from __future__ import annotations

from .accounts import AccountIdentity, P256KeyMaterial, Secp256k1KeyMaterial
from .config import EngineConfig, Network, NetworkConfig, build_default_config
from .decoder import decode_call_data, describe_call_data
from .engine import Submission, SubmissionState, TransactionEngine
from .erc4337 import (
    Accepted,
    BundlerClient,
    BundlerConfig,
    NeedsFeeBump,
    PaymasterClient,
    PaymasterConfig,
    Rejected,
    UserOperation,
    user_operation_hash,
)
from .exceptions import (
    EnclaveError,
    FeeTooLowError,
    MalformedInputError,
    OperationRevertedError,
    ReceiptTimeoutError,
    RelayRejectedError,
    SignerUnavailableError,
)
from .rpc_client import ChainRPCClient
from .signing import KeyType, Secp256k1Signer, Signer, SoftwareP256Signer

__version__ = "0.1.0"

__all__ = [
    "Accepted",
    "AccountIdentity",
    "BundlerClient",
    "BundlerConfig",
    "ChainRPCClient",
    "EnclaveError",
    "EngineConfig",
    "FeeTooLowError",
    "KeyType",
    "MalformedInputError",
    "NeedsFeeBump",
    "Network",
    "NetworkConfig",
    "OperationRevertedError",
    "P256KeyMaterial",
    "PaymasterClient",
    "PaymasterConfig",
    "ReceiptTimeoutError",
    "Rejected",
    "RelayRejectedError",
    "Secp256k1KeyMaterial",
    "Secp256k1Signer",
    "Signer",
    "SignerUnavailableError",
    "SoftwareP256Signer",
    "Submission",
    "SubmissionState",
    "TransactionEngine",
    "UserOperation",
    "build_default_config",
    "decode_call_data",
    "describe_call_data",
    "user_operation_hash",
]
