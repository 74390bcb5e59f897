"""Executable model of the on-chain account, its factory and the EntryPoint.

The engine's output is only correct if this contract accepts it, so the
contract's rules live here as plain Python: signature validation through a
P-256 precompile with a fallback verifier, per-token daily spending limits,
self-only administration and revert-data bubbling. Tests drive the engine
against it end to end; nothing here talks to a real chain.
"""
from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Set, Tuple

from eth_abi import encode

from .abi import (
    ERC20_APPROVE_SELECTOR,
    ERC20_BALANCE_OF_SELECTOR,
    ERC20_TRANSFER_FROM_SELECTOR,
    ERC20_TRANSFER_SELECTOR,
    EXECUTE_BATCH_SELECTOR,
    EXECUTE_SELECTOR,
    WORD_SIZE,
    WordReader,
    decode_execute_params,
    decode_token_arguments,
    function_selector,
    hex_to_bytes,
    iter_batch_calls,
    normalize_address,
)
from .erc4337.account_factory import CREATE_ACCOUNT_SELECTOR, GET_ADDRESS_SELECTOR, compute_counterfactual_address
from .erc4337.hashing import user_operation_hash
from .erc4337.user_operation import UserOperation
from .exceptions import EnclaveError, MalformedInputError
from .signing import (
    P256_HALF_ORDER,
    recover_secp256k1_address,
    verify_p256,
)

logger = logging.getLogger(__name__)

VALID_SIGNATURE = bytes.fromhex("1626ba7e")  # ERC-1271 magic value
INVALID_SIGNATURE = bytes.fromhex("ffffffff")
SIG_VALIDATION_SUCCESS = 0
SIG_VALIDATION_FAILED = 1

NATIVE_TOKEN = "0x0000000000000000000000000000000000000000"
SECONDS_PER_DAY = 86_400

P256_PRECOMPILE = "0x0000000000000000000000000000000000000100"
P256_FALLBACK_VERIFIER = "0xc2b78104907F722DABAc4C69f826a522B2754De4"
VERIFIER_SUCCESS = (1).to_bytes(32, "big")

SET_DAILY_LIMIT_SELECTOR = function_selector("setDailyLimit(address,uint256)")
ADD_SESSION_KEY_SELECTOR = function_selector("addSessionKey(address)")
REMOVE_SESSION_KEY_SELECTOR = function_selector("removeSessionKey(address)")
IS_VALID_SIGNATURE_SELECTOR = function_selector("isValidSignature(bytes32,bytes)")

ERROR_STRING_SELECTOR = function_selector("Error(string)")


def revert_reason(message: str) -> bytes:
    """ABI-encoded ``Error(string)`` revert data."""
    return ERROR_STRING_SELECTOR + encode(["string"], [message])


class ContractRevert(EnclaveError):
    """A modeled call reverted; ``data`` is the raw revert data."""

    error_code = "CONTRACT_REVERT"

    def __init__(self, data: bytes, message: Optional[str] = None):
        super().__init__(message or f"execution reverted: 0x{data.hex()}")
        self.data = data

    @classmethod
    def with_reason(cls, reason: str) -> "ContractRevert":
        return cls(revert_reason(reason), message=f"execution reverted: {reason}")


class Contract(Protocol):
    def call(self, chain: "ChainState", caller: str, value: int, data: bytes) -> bytes:
        ...


# A verifier takes hash || r || s || x || y and returns its output, or
# None when nothing is deployed at its address.
Verifier = Callable[[bytes], Optional[bytes]]


def p256_verifier(payload: bytes) -> Optional[bytes]:
    """P-256 verifier accepting only low-S signatures; empty output on failure."""
    if len(payload) != 160:
        return b""
    reader = WordReader(payload)
    message_hash = payload[:32]
    r, s, x, y = (reader.uint(i * WORD_SIZE) for i in range(1, 5))
    if s > P256_HALF_ORDER:
        return b""
    return VERIFIER_SUCCESS if verify_p256(message_hash, r, s, x, y) else b""


def unavailable_verifier(payload: bytes) -> Optional[bytes]:
    """Stands in for a chain without the precompile."""
    return None


@dataclass
class ChainState:
    """Native balances and deployed contract models, keyed by lowercase address."""
    balances: Dict[str, int] = field(default_factory=dict)
    contracts: Dict[str, Contract] = field(default_factory=dict)
    verifiers: Dict[str, Verifier] = field(default_factory=lambda: {
        P256_PRECOMPILE.lower(): p256_verifier,
        P256_FALLBACK_VERIFIER.lower(): p256_verifier,
    })
    clock: Callable[[], float] = time.time

    def now(self) -> int:
        return int(self.clock())

    def balance_of(self, address: str) -> int:
        return self.balances.get(address.lower(), 0)

    def credit(self, address: str, amount: int) -> None:
        self.balances[address.lower()] = self.balance_of(address) + amount

    def deploy(self, address: str, contract: Contract) -> None:
        self.contracts[address.lower()] = contract

    def is_deployed(self, address: str) -> bool:
        return address.lower() in self.contracts

    def get_contract(self, address: str) -> Optional[Contract]:
        return self.contracts.get(address.lower())

    def staticcall_verifier(self, address: str, payload: bytes) -> Optional[bytes]:
        verifier = self.verifiers.get(address.lower())
        if verifier is None:
            return None
        return verifier(payload)

    def call(self, caller: str, to: str, value: int, data: bytes) -> bytes:
        """Message call; value moves only if the callee does not revert."""
        if value > self.balance_of(caller):
            raise ContractRevert(b"", message="insufficient native balance")
        contract = self.get_contract(to)
        result = contract.call(self, caller, value, data) if contract else b""
        if value:
            self.balances[caller.lower()] = self.balance_of(caller) - value
            self.credit(to, value)
        return result


class ERC20Token:
    """Minimal ERC-20 with Error(string) reverts."""

    def __init__(self, address: str, symbol: str = "TOKEN", decimals: int = 18):
        self.address = normalize_address(address)
        self.symbol = symbol
        self.decimals = decimals
        self.balances: Dict[str, int] = {}
        self.allowances: Dict[Tuple[str, str], int] = {}

    def mint(self, to: str, amount: int) -> None:
        self.balances[to.lower()] = self.balance_of(to) + amount

    def balance_of(self, owner: str) -> int:
        return self.balances.get(owner.lower(), 0)

    def _move(self, owner: str, to: str, amount: int) -> None:
        if self.balance_of(owner) < amount:
            raise ContractRevert.with_reason("ERC20: transfer amount exceeds balance")
        self.balances[owner.lower()] = self.balance_of(owner) - amount
        self.mint(to, amount)

    def call(self, chain: ChainState, caller: str, value: int, data: bytes) -> bytes:
        if data[:4] == ERC20_BALANCE_OF_SELECTOR:
            return self.balance_of(WordReader(data[4:]).address(0)).to_bytes(32, "big")

        token_call = decode_token_arguments(data)
        if token_call is None:
            raise ContractRevert(b"")
        selector, addresses, amount = token_call

        if selector == ERC20_TRANSFER_SELECTOR:
            self._move(caller, addresses[0], amount)
        elif selector == ERC20_APPROVE_SELECTOR:
            self.allowances[(caller.lower(), addresses[0].lower())] = amount
        elif selector == ERC20_TRANSFER_FROM_SELECTOR:
            owner, to = addresses
            allowed = self.allowances.get((owner.lower(), caller.lower()), 0)
            if allowed < amount:
                raise ContractRevert.with_reason("ERC20: insufficient allowance")
            self._move(owner, to, amount)
            self.allowances[(owner.lower(), caller.lower())] = allowed - amount
        return (1).to_bytes(32, "big")


class AccountState(str, Enum):
    """Progress of one call through the account."""
    UNVALIDATED = "unvalidated"
    SIGNATURE_CHECKED = "signature_checked"
    SPEND_LIMIT_CHECKED = "spend_limit_checked"
    EXECUTED = "executed"
    REVERTED = "reverted"


class SmartAccount:
    """P-256 smart account with daily limits and secondary signers."""

    def __init__(
        self,
        address: str,
        entry_point: str,
        x: int,
        y: int,
        precompile: str = P256_PRECOMPILE,
        fallback_verifier: str = P256_FALLBACK_VERIFIER,
    ):
        self.address = normalize_address(address)
        self.entry_point = normalize_address(entry_point)
        self.x = x
        self.y = y
        self.precompile = precompile
        self.fallback_verifier = fallback_verifier
        self.daily_limit: Dict[str, int] = {}
        self.daily_spent: Dict[Tuple[str, int], int] = {}
        self.session_keys: Set[str] = set()
        self.state = AccountState.UNVALIDATED
        self.history: List[AccountState] = []

    def _transition(self, state: AccountState) -> None:
        self.state = state
        self.history.append(state)

    # -- signature validation ----------------------------------------------

    def _verify_p256(self, chain: ChainState, digest: bytes, signature: bytes) -> bool:
        # P-256 signers sign sha256(digest)
        message_hash = hashlib.sha256(digest).digest()
        payload = message_hash + signature + self.x.to_bytes(32, "big") + self.y.to_bytes(32, "big")
        for verifier in (self.precompile, self.fallback_verifier):
            output = chain.staticcall_verifier(verifier, payload)
            if output == VERIFIER_SUCCESS:
                return True
            if output is None:
                logger.debug("Verifier %s unavailable, trying fallback", verifier)
        return False

    def _check_signature(self, chain: ChainState, digest: bytes, signature: bytes) -> bool:
        if len(signature) == 64:
            return self._verify_p256(chain, digest, signature)
        if len(signature) == 65:
            signer = recover_secp256k1_address(digest, signature)
            return signer is not None and signer.lower() in self.session_keys
        raise ContractRevert.with_reason("invalid signature length")

    def validate_user_op(
        self,
        chain: ChainState,
        caller: str,
        user_op: UserOperation,
        user_op_hash: bytes,
    ) -> int:
        if caller.lower() != self.entry_point.lower():
            raise ContractRevert.with_reason("not from EntryPoint")
        self._transition(AccountState.UNVALIDATED)
        if not self._check_signature(chain, user_op_hash, user_op.signature):
            return SIG_VALIDATION_FAILED
        self._transition(AccountState.SIGNATURE_CHECKED)
        return SIG_VALIDATION_SUCCESS

    def is_valid_signature(self, chain: ChainState, digest: bytes, signature: bytes) -> bytes:
        """ERC-1271; reverts only on a malformed signature length."""
        if self._check_signature(chain, digest, signature):
            return VALID_SIGNATURE
        return INVALID_SIGNATURE

    # -- spending limits ---------------------------------------------------

    @staticmethod
    def day_index(timestamp: int) -> int:
        return timestamp // SECONDS_PER_DAY

    def spent_today(self, chain: ChainState, token: str) -> int:
        return self.daily_spent.get((token.lower(), self.day_index(chain.now())), 0)

    def _pending_spend(self, chain: ChainState, to: str, value: int, data: bytes) -> Dict[Tuple[str, int], int]:
        """New running totals this call would produce; raises if a limit would be exceeded."""
        day = self.day_index(chain.now())
        amounts: List[Tuple[str, int]] = []
        if value > 0:
            amounts.append((NATIVE_TOKEN, value))
        token_call = decode_token_arguments(data)
        if token_call is not None and token_call[0] in (ERC20_TRANSFER_SELECTOR, ERC20_APPROVE_SELECTOR):
            amounts.append((to.lower(), token_call[2]))

        totals: Dict[Tuple[str, int], int] = {}
        for token, amount in amounts:
            key = (token.lower(), day)
            total = totals.get(key, self.daily_spent.get(key, 0)) + amount
            limit = self.daily_limit.get(token.lower(), 0)
            if limit and total > limit:
                raise ContractRevert.with_reason("daily limit exceeded")
            totals[key] = total
        return totals

    # -- execution ---------------------------------------------------------

    def _require_self(self, caller: str) -> None:
        if caller.lower() != self.address.lower():
            raise ContractRevert.with_reason("only self")

    def _require_entry_point_or_self(self, caller: str) -> None:
        if caller.lower() not in (self.entry_point.lower(), self.address.lower()):
            raise ContractRevert.with_reason("not from EntryPoint")

    def execute(self, chain: ChainState, caller: str, to: str, value: int, data: bytes) -> bytes:
        self._require_entry_point_or_self(caller)
        try:
            totals = self._pending_spend(chain, to, value, data)
            self._transition(AccountState.SPEND_LIMIT_CHECKED)
            result = chain.call(self.address, to, value, data)
        except ContractRevert:
            self._transition(AccountState.REVERTED)
            raise
        self.daily_spent.update(totals)
        self._transition(AccountState.EXECUTED)
        return result

    def execute_batch(self, chain: ChainState, caller: str, calls: Sequence[Tuple[str, int, bytes]]) -> None:
        # Daily limits are only enforced by execute()
        self._require_entry_point_or_self(caller)
        try:
            for to, value, data in calls:
                chain.call(self.address, to, value, data)
        except ContractRevert:
            self._transition(AccountState.REVERTED)
            raise
        self._transition(AccountState.EXECUTED)

    def call(self, chain: ChainState, caller: str, value: int, data: bytes) -> bytes:
        """Dispatch an incoming message call by selector."""
        selector, args = data[:4], data[4:]
        try:
            if selector == EXECUTE_SELECTOR:
                call = decode_execute_params(args)
                return self.execute(chain, caller, call.to, call.value, call.data)
            if selector == EXECUTE_BATCH_SELECTOR:
                calls = [(c.to, c.value, c.data) for c in iter_batch_calls(args)]
                self.execute_batch(chain, caller, calls)
                return b""
            reader = WordReader(args)
            if selector == SET_DAILY_LIMIT_SELECTOR:
                self._require_self(caller)
                self.daily_limit[reader.address(0).lower()] = reader.uint(WORD_SIZE)
                return b""
            if selector == ADD_SESSION_KEY_SELECTOR:
                self._require_self(caller)
                self.session_keys.add(reader.address(0).lower())
                return b""
            if selector == REMOVE_SESSION_KEY_SELECTOR:
                self._require_self(caller)
                self.session_keys.discard(reader.address(0).lower())
                return b""
            if selector == IS_VALID_SIGNATURE_SELECTOR:
                digest = reader.word(0)
                signature = reader.dynamic_bytes(WORD_SIZE)
                return self.is_valid_signature(chain, digest, signature).ljust(32, b"\x00")
        except MalformedInputError as e:
            raise ContractRevert(b"", message=f"malformed calldata: {e.message}") from e
        if not data and value:
            return b""  # plain deposit
        raise ContractRevert(b"", message=f"unknown selector 0x{selector.hex()}")


class AccountFactory:
    """Deploys accounts at their counterfactual address; create is idempotent."""

    def __init__(self, address: str, creation_code: bytes, entry_point: str):
        self.address = normalize_address(address)
        self.creation_code = creation_code
        self.entry_point = normalize_address(entry_point)
        self.deployments = 0

    def get_address(self, x: int, y: int, salt: int) -> str:
        return compute_counterfactual_address(
            self.address, self.creation_code, self.entry_point, x, y, salt
        )

    def create_account(self, chain: ChainState, x: int, y: int, salt: int) -> str:
        address = self.get_address(x, y, salt)
        if not chain.is_deployed(address):
            chain.deploy(address, SmartAccount(address, self.entry_point, x, y))
            self.deployments += 1
            logger.info("Deployed account %s (salt=%d)", address, salt)
        return address

    def call(self, chain: ChainState, caller: str, value: int, data: bytes) -> bytes:
        selector, reader = data[:4], WordReader(data[4:])
        try:
            x, y, salt = reader.uint(0), reader.uint(WORD_SIZE), reader.uint(2 * WORD_SIZE)
        except MalformedInputError as e:
            raise ContractRevert(b"", message=f"malformed calldata: {e.message}") from e
        if selector == CREATE_ACCOUNT_SELECTOR:
            address = self.create_account(chain, x, y, salt)
        elif selector == GET_ADDRESS_SELECTOR:
            address = self.get_address(x, y, salt)
        else:
            raise ContractRevert(b"", message=f"unknown selector 0x{selector.hex()}")
        return hex_to_bytes(address).rjust(32, b"\x00")


@dataclass
class ExecutionResult:
    user_op_hash: bytes
    success: bool
    revert_data: bytes = b""


class EntryPointModel:
    """Validates and executes UserOperations against a ChainState."""

    def __init__(self, chain: ChainState, address: str, chain_id: int):
        self.chain = chain
        self.address = normalize_address(address)
        self.chain_id = chain_id
        self.nonces: Dict[str, int] = {}

    def get_nonce(self, sender: str) -> int:
        return self.nonces.get(sender.lower(), 0)

    def _deploy_sender(self, user_op: UserOperation) -> None:
        deployment = user_op.deployment
        if self.chain.is_deployed(user_op.sender):
            if deployment is not None:
                raise ContractRevert.with_reason("AA10 sender already constructed")
            return
        if deployment is None:
            raise ContractRevert.with_reason("AA20 account not deployed")
        factory = self.chain.get_contract(deployment.factory)
        if factory is None:
            raise ContractRevert.with_reason("AA13 initCode failed or OOG")
        created = factory.call(self.chain, self.address, 0, deployment.factory_data)
        if normalize_address(created[12:32]).lower() != user_op.sender.lower():
            raise ContractRevert.with_reason("AA14 initCode must return sender")

    def validate(self, user_op: UserOperation) -> Tuple[SmartAccount, bytes]:
        """Deploy if needed, check the signature and the nonce; raises ContractRevert."""
        op_hash = user_operation_hash(user_op, self.address, self.chain_id)
        was_deployed = self.chain.is_deployed(user_op.sender)
        try:
            self._deploy_sender(user_op)
            account = self.chain.get_contract(user_op.sender)
            if not isinstance(account, SmartAccount):
                raise ContractRevert.with_reason("AA20 account not deployed")
            if account.validate_user_op(self.chain, self.address, user_op, op_hash) != SIG_VALIDATION_SUCCESS:
                raise ContractRevert.with_reason("AA24 signature error")
            if user_op.nonce != self.get_nonce(user_op.sender):
                raise ContractRevert.with_reason("AA25 invalid account nonce")
        except ContractRevert:
            if not was_deployed:
                self.chain.contracts.pop(user_op.sender.lower(), None)
            raise
        return account, op_hash

    def handle_op(self, user_op: UserOperation) -> ExecutionResult:
        """Validate (raising on failure), then execute; execution reverts are reported, not raised."""
        account, op_hash = self.validate(user_op)
        self.nonces[user_op.sender.lower()] = user_op.nonce + 1
        if not user_op.call_data:
            return ExecutionResult(user_op_hash=op_hash, success=True)
        try:
            account.call(self.chain, self.address, 0, user_op.call_data)
        except ContractRevert as e:
            logger.info("UserOperation execution reverted: %s", e.message)
            return ExecutionResult(user_op_hash=op_hash, success=False, revert_data=e.data)
        return ExecutionResult(user_op_hash=op_hash, success=True)
