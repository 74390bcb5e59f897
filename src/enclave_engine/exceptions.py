"""Errors raised by the enclave engine.

Everything derives from EnclaveError, which carries a stable ``error_code``
and a ``details`` mapping that callers can branch on. Local errors such as
bad input or a declined signer are kept apart from answers given by a node
or relay.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from .erc4337.bundler_client import FeeFloor, UserOperationReceipt


class EnclaveError(Exception):
    """Root of the hierarchy; ``to_dict`` is the form embedded in submission records."""

    error_code: str = "ENCLAVE_ERROR"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        result = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Local errors
# =============================================================================

class ConfigurationError(EnclaveError):
    """Required configuration is missing or invalid."""

    error_code = "CONFIGURATION_ERROR"

    def __init__(self, message: str, setting: Optional[str] = None) -> None:
        details = {"setting": setting} if setting else None
        super().__init__(message, details=details)
        self.setting = setting


class MalformedInputError(EnclaveError):
    """Bad hex, wrong-length signature, truncated calldata or out-of-range value."""

    error_code = "MALFORMED_INPUT"

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(message, details=details)
        self.field = field


class SignerUnavailableError(EnclaveError):
    """The signing capability declined or failed to produce a signature."""

    error_code = "SIGNER_UNAVAILABLE"

    def __init__(self, reason: str, declined: bool = False) -> None:
        super().__init__(
            f"Signer unavailable: {reason}",
            details={"declined": declined},
        )
        self.reason = reason
        self.declined = declined


# =============================================================================
# Chain node errors
# =============================================================================

class RPCError(EnclaveError):
    """JSON-RPC error returned by a chain node."""

    error_code = "RPC_ERROR"

    def __init__(self, message: str, code: Optional[int] = None, data: Any = None) -> None:
        super().__init__(message, details={"code": code} if code is not None else None)
        self.code = code
        self.data = data


class ChainIDMismatchError(EnclaveError):
    """The node serves a different chain than the configured network."""

    error_code = "CHAIN_ID_MISMATCH"

    def __init__(self, network: str, expected: int, received: int) -> None:
        self.network = network
        self.expected = expected
        self.received = received
        super().__init__(
            f"Chain ID mismatch for {network}: expected {expected}, got {received}. "
            f"Refusing to sign for the wrong network.",
            details={"expected": expected, "received": received},
        )


class AllEndpointsFailedError(EnclaveError):
    """No node endpoint produced an answer."""

    error_code = "ALL_ENDPOINTS_FAILED"

    def __init__(self, network: str, errors: list[tuple[str, str]]) -> None:
        self.network = network
        self.errors = errors
        summary = "; ".join(f"{url}: {err}" for url, err in errors[:3])
        super().__init__(
            f"All RPC endpoints failed for {network}. Errors: {summary}"
        )


# =============================================================================
# Relay errors
# =============================================================================

class RelayRejectedError(EnclaveError):
    """The bundler or paymaster answered with a JSON-RPC error."""

    error_code = "RELAY_REJECTED"

    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        data: Any = None,
        method: Optional[str] = None,
    ) -> None:
        details: dict[str, Any] = {}
        if code is not None:
            details["code"] = code
        if method:
            details["method"] = method
        super().__init__(message, details=details)
        self.code = code
        self.data = data
        self.method = method


class FeeTooLowError(RelayRejectedError):
    """The relay still demanded higher fees after the automatic replacement."""

    error_code = "FEE_TOO_LOW"

    def __init__(self, message: str, floor: "FeeFloor", code: Optional[int] = None) -> None:
        super().__init__(message, code=code, method="eth_sendUserOperation")
        self.floor = floor
        self.details["max_fee_per_gas"] = floor.max_fee_per_gas
        self.details["max_priority_fee_per_gas"] = floor.max_priority_fee_per_gas


class ReceiptTimeoutError(EnclaveError):
    """No receipt was observed before the polling deadline."""

    error_code = "RECEIPT_TIMEOUT"

    def __init__(self, user_op_hash: str, timeout_seconds: float) -> None:
        super().__init__(
            f"UserOperation not included within {timeout_seconds:g}s: {user_op_hash}",
            details={"user_op_hash": user_op_hash, "timeout_seconds": timeout_seconds},
        )
        self.user_op_hash = user_op_hash
        self.timeout_seconds = timeout_seconds


class OperationRevertedError(EnclaveError):
    """A receipt was found but execution did not succeed."""

    error_code = "OPERATION_REVERTED"

    def __init__(self, user_op_hash: str, receipt: "UserOperationReceipt") -> None:
        details: dict[str, Any] = {"user_op_hash": user_op_hash}
        if receipt.transaction_hash:
            details["transaction_hash"] = receipt.transaction_hash
        if receipt.reason:
            details["reason"] = receipt.reason
        super().__init__(f"UserOperation reverted: {user_op_hash}", details=details)
        self.user_op_hash = user_op_hash
        self.receipt = receipt
