"""ERC-4337 v0.7 helpers for the enclave engine."""

from .account_factory import (
    CREATE_ACCOUNT_SELECTOR,
    GET_ADDRESS_SELECTOR,
    AddressDeriver,
    build_deployment_payload,
    build_factory_data,
    compute_counterfactual_address,
    encode_get_address_call,
)
from .bundler_client import (
    Accepted,
    BundlerClient,
    BundlerConfig,
    FeeFloor,
    GasEstimate,
    NeedsFeeBump,
    Rejected,
    SubmissionResult,
    TransactionReceipt,
    UserOperationReceipt,
)
from .hashing import PACKED_USER_OPERATION_TYPEHASH, struct_hash, user_operation_hash
from .paymaster_client import PaymasterClient, PaymasterConfig, SponsorshipResult
from .user_operation import DeploymentPayload, PaymasterFields, UserOperation

__all__ = [
    "CREATE_ACCOUNT_SELECTOR",
    "GET_ADDRESS_SELECTOR",
    "AddressDeriver",
    "build_deployment_payload",
    "build_factory_data",
    "compute_counterfactual_address",
    "encode_get_address_call",
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
    "PACKED_USER_OPERATION_TYPEHASH",
    "struct_hash",
    "user_operation_hash",
    "PaymasterClient",
    "PaymasterConfig",
    "SponsorshipResult",
    "DeploymentPayload",
    "PaymasterFields",
    "UserOperation",
]
