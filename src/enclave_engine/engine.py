"""
Transaction engine: build, estimate, sponsor, sign, submit and track
UserOperations for P-256 smart accounts.

Features:
- Per-account serialization (nonce assignment and first-deployment
  detection never race, and a signer is never asked twice at once)
- Verification gas over-provisioning for an account's first operation
- Optional paymaster sponsorship whose gas quantities override the estimate
- One automatic fee replacement when the bundler reports a fee floor
- Receipt polling that tells a timeout apart from an on-chain revert
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

from eth_account.messages import SignableMessage, encode_defunct, encode_typed_data
from web3 import Web3

from .abi import (
    Call,
    encode_erc20_approve,
    encode_erc20_transfer,
    encode_execute,
    encode_execute_batch,
    normalize_address,
    to_hex,
)
from .accounts import AccountIdentity, AccountLocks, KeyMaterial, P256KeyMaterial, SignerLocks
from .config import EngineConfig
from .decoder import DecodedAction, TokenRegistry, decode_call_data
from .erc4337.account_factory import AddressDeriver
from .erc4337.bundler_client import (
    Accepted,
    BundlerClient,
    NeedsFeeBump,
    Rejected,
    UserOperationReceipt,
)
from .erc4337.hashing import user_operation_hash
from .erc4337.paymaster_client import PaymasterClient
from .erc4337.user_operation import UserOperation
from .exceptions import (
    ConfigurationError,
    EnclaveError,
    FeeTooLowError,
    OperationRevertedError,
    ReceiptTimeoutError,
    SignerUnavailableError,
)
from .logging_utils import OperationType, log_operation, mask_address
from .rpc_client import ChainRPCClient
from .signing import Signer, placeholder_signature, sign_digest

logger = logging.getLogger(__name__)


class SubmissionState(str, Enum):
    """Lifecycle of one UserOperation."""
    BUILT = "built"
    ESTIMATING = "estimating"
    SIGNED = "signed"
    SUBMITTED = "submitted"
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REVERTED = "reverted"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


TERMINAL_STATES = frozenset({
    SubmissionState.CONFIRMED,
    SubmissionState.REVERTED,
    SubmissionState.TIMED_OUT,
    SubmissionState.FAILED,
})


def signable_digest(signable: SignableMessage) -> bytes:
    """EIP-191 digest: keccak(0x19 || version || header || body)."""
    return bytes(Web3.keccak(b"\x19" + signable.version + signable.header + signable.body))


@dataclass
class Submission:
    """Record of one operation moving through the engine."""
    account: AccountIdentity
    user_op: UserOperation
    actions: List[DecodedAction]
    state: SubmissionState = SubmissionState.BUILT
    history: List[SubmissionState] = field(default_factory=lambda: [SubmissionState.BUILT])
    user_op_hash: Optional[str] = None
    receipt: Optional[UserOperationReceipt] = None
    sponsored: bool = False
    fee_bumped: bool = False
    error: Optional[EnclaveError] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def advance(self, state: SubmissionState) -> None:
        logger.debug(
            f"UserOp for {mask_address(self.account.address)}: {self.state.value} -> {state.value}"
        )
        self.state = state
        self.history.append(state)

    def fail(self, error: EnclaveError) -> None:
        self.error = error
        self.advance(SubmissionState.FAILED)

    @property
    def is_final(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def transaction_hash(self) -> Optional[str]:
        return self.receipt.transaction_hash if self.receipt else None

    @property
    def deploys_account(self) -> bool:
        return self.user_op.deployment is not None

    def raise_for_state(self) -> None:
        """Raise the exception matching a failed submission; no-op otherwise."""
        if self.state is SubmissionState.REVERTED and self.receipt is not None:
            raise OperationRevertedError(self.user_op_hash or "", self.receipt)
        if self.state in (SubmissionState.TIMED_OUT, SubmissionState.FAILED) and self.error is not None:
            raise self.error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account": self.account.address,
            "state": self.state.value,
            "history": [s.value for s in self.history],
            "user_op_hash": self.user_op_hash,
            "transaction_hash": self.transaction_hash,
            "sponsored": self.sponsored,
            "fee_bumped": self.fee_bumped,
            "error": self.error.to_dict() if self.error else None,
        }


class TransactionEngine:
    """
    Drives UserOperations from intent to receipt.

    Collaborators are passed in; the engine owns no network clients of its
    own and holds no process-wide state. One engine instance serializes
    operations per account address.
    """

    def __init__(
        self,
        config: EngineConfig,
        rpc: ChainRPCClient,
        bundler: BundlerClient,
        paymaster: Optional[PaymasterClient] = None,
        deriver: Optional[AddressDeriver] = None,
        tokens: Optional[TokenRegistry] = None,
    ):
        self._config = config
        self._rpc = rpc
        self._bundler = bundler
        self._paymaster = paymaster
        self._deriver = deriver or AddressDeriver(config.factory, config.entry_point)
        self._tokens = tokens or TokenRegistry.for_network(config.network)
        self._locks = AccountLocks()
        self._signer_locks = SignerLocks()

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def rpc(self) -> ChainRPCClient:
        return self._rpc

    @property
    def bundler(self) -> BundlerClient:
        return self._bundler

    @property
    def tokens(self) -> TokenRegistry:
        return self._tokens

    @property
    def locks(self) -> AccountLocks:
        return self._locks

    @property
    def _network_name(self) -> str:
        return self._config.network.name

    # =========================================================================
    # Accounts
    # =========================================================================

    async def account_for(self, key: KeyMaterial, index: int = 0) -> AccountIdentity:
        """Resolve the identity for a key, with its current deployment flag."""
        if isinstance(key, P256KeyMaterial):
            identity = self._deriver.identity_for(key, index)
        else:
            identity = AccountIdentity(index=index, address=key.address, key_material=key)
        return await self.refresh_deployment(identity)

    async def refresh_deployment(self, account: AccountIdentity) -> AccountIdentity:
        async with log_operation(
            OperationType.DEPLOYMENT_CHECK, self._network_name, logger,
            account=mask_address(account.address),
        ):
            deployed = await self._rpc.is_deployed(account.address)
        return account.with_deployed(deployed)

    # =========================================================================
    # Building
    # =========================================================================

    async def build_operation(
        self,
        account: AccountIdentity,
        call_data: bytes,
        signer: Signer,
    ) -> UserOperation:
        """Unsigned operation with a placeholder signature and zeroed gas.

        An undeployed account carries its deployment payload.
        """
        deployment = None
        if not account.deployed:
            if not isinstance(account.key_material, P256KeyMaterial):
                raise ConfigurationError(
                    f"Account {account.address} is not deployed and has no factory deployment"
                )
            deployment = self._deriver.deployment_for(account.key_material, account.index)

        nonce = await self._rpc.get_entry_point_nonce(account.address)
        return UserOperation(
            sender=account.address,
            nonce=nonce,
            call_data=call_data,
            deployment=deployment,
            signature=placeholder_signature(signer.key_type),
        )

    async def estimate_gas(self, user_op: UserOperation) -> UserOperation:
        """Ask the bundler for gas limits, keeping policy floors and deployment headroom."""
        policy = self._config.gas
        async with log_operation(
            OperationType.GAS_ESTIMATION, self._network_name, logger,
            sender=mask_address(user_op.sender),
        ):
            estimate = await self._bundler.estimate_user_operation_gas(user_op)

        verification = max(estimate.verification_gas_limit, policy.default_verification_gas_limit)
        if user_op.deployment is not None:
            # First-time initialization is routinely under-quoted
            verification = max(
                estimate.verification_gas_limit * policy.deployment_verification_multiplier,
                policy.deployment_verification_floor,
            )
        estimated = user_op.with_gas(
            verification_gas_limit=verification,
            call_gas_limit=max(estimate.call_gas_limit, policy.default_call_gas_limit),
            pre_verification_gas=max(estimate.pre_verification_gas, policy.default_pre_verification_gas),
        )
        return estimated.with_signature(user_op.signature)

    async def price_operation(self, user_op: UserOperation) -> UserOperation:
        """Fill EIP-1559 fees from the node's current gas price."""
        policy = self._config.gas
        gas_price = await self._rpc.get_gas_price()
        priority = max(await self._rpc.get_max_priority_fee(), policy.min_priority_fee_per_gas)
        max_fee = max(gas_price * policy.max_fee_multiplier_percent // 100, priority)
        return user_op.with_fees(max_fee, priority).with_signature(user_op.signature)

    async def sponsor(self, user_op: UserOperation) -> tuple[UserOperation, bool]:
        """Attach paymaster sponsorship when available; a decline leaves the operation as is."""
        if self._paymaster is None:
            return user_op, False
        async with log_operation(
            OperationType.SPONSORSHIP, self._network_name, logger,
            sender=mask_address(user_op.sender),
        ):
            sponsorship = await self._paymaster.sponsor_user_operation(user_op)
        if sponsorship is None:
            return user_op, False
        return sponsorship.apply(user_op).with_signature(user_op.signature), True

    def operation_hash(self, user_op: UserOperation) -> bytes:
        return user_operation_hash(user_op, self._config.entry_point, self._config.chain_id)

    async def _sign(self, signer: Signer, digest: bytes) -> bytes:
        async with self._signer_locks.get(signer):
            return await sign_digest(signer, digest)

    async def sign_operation(self, user_op: UserOperation, signer: Signer) -> UserOperation:
        digest = self.operation_hash(user_op)
        async with log_operation(
            OperationType.SIGNING, self._network_name, logger,
            sender=mask_address(user_op.sender), user_op_hash=to_hex(digest),
        ):
            signature = await self._sign(signer, digest)
        return user_op.with_signature(signature)

    async def prepare(
        self,
        account: AccountIdentity,
        call_data: bytes,
        signer: Signer,
    ) -> Submission:
        """Build, estimate, price and sponsor; the result is ready for signing."""
        account = await self.refresh_deployment(account)
        user_op = await self.build_operation(account, call_data, signer)
        submission = Submission(account=account, user_op=user_op, actions=self.preview(call_data))
        submission.advance(SubmissionState.ESTIMATING)
        user_op = await self.estimate_gas(user_op)
        user_op = await self.price_operation(user_op)
        user_op, submission.sponsored = await self.sponsor(user_op)
        submission.user_op = user_op
        return submission

    def preview(self, call_data: Union[bytes, str]) -> List[DecodedAction]:
        return decode_call_data(call_data)

    def describe(self, call_data: Union[bytes, str]) -> List[str]:
        return [action.describe(self._tokens) for action in self.preview(call_data)]

    # =========================================================================
    # Submission
    # =========================================================================

    async def _replace_fees(self, submission: Submission, bump: NeedsFeeBump, signer: Signer) -> UserOperation:
        current = submission.user_op
        max_fee, priority = bump.floor.replacement_fees(
            current.max_fee_per_gas,
            current.max_priority_fee_per_gas,
            self._config.gas.fee_bump_percent,
        )
        logger.info(
            f"Replacing fees for {mask_address(current.sender)}: "
            f"maxFee {current.max_fee_per_gas} -> {max_fee}, priority {current.max_priority_fee_per_gas} -> {priority}"
        )
        # Same nonce: this replaces the rejected operation in place
        replacement = current.with_fees(max_fee, priority)
        if submission.sponsored:
            # The sponsor signed over the old fees
            replacement = replacement.with_paymaster(None)
        replacement = replacement.with_signature(placeholder_signature(signer.key_type))
        if submission.sponsored:
            replacement, submission.sponsored = await self.sponsor(replacement)
        return replacement

    async def _sign_and_send(self, submission: Submission, signer: Signer) -> None:
        """Sign, send, and handle at most one fee replacement."""
        for attempt in range(2):
            try:
                submission.user_op = await self.sign_operation(submission.user_op, signer)
            except SignerUnavailableError as e:
                logger.warning(f"Signing aborted for {mask_address(submission.account.address)}: {e.reason}")
                submission.fail(e)
                return
            submission.advance(SubmissionState.SIGNED)

            async with log_operation(
                OperationType.SUBMISSION, self._network_name, logger,
                sender=mask_address(submission.user_op.sender), attempt=attempt + 1,
            ):
                result = await self._bundler.send_user_operation(submission.user_op)

            if isinstance(result, Accepted):
                submission.user_op_hash = result.user_op_hash
                submission.advance(SubmissionState.SUBMITTED)
                return
            if isinstance(result, Rejected):
                submission.fail(result.error)
                return
            if submission.fee_bumped:
                submission.fail(FeeTooLowError(result.message or "fee too low", result.floor, code=result.code))
                return

            async with log_operation(OperationType.FEE_REPLACEMENT, self._network_name, logger):
                submission.user_op = await self._replace_fees(submission, result, signer)
            submission.fee_bumped = True

    async def wait_for_receipt(self, submission: Submission) -> Submission:
        """Poll for the receipt of a submitted operation.

        Cancellation propagates out of polling; nothing is resubmitted.
        """
        if submission.user_op_hash is None:
            return submission
        polling = self._config.polling
        submission.advance(SubmissionState.PENDING)
        try:
            async with log_operation(
                OperationType.RECEIPT_POLLING, self._network_name, logger,
                user_op_hash=submission.user_op_hash,
            ):
                receipt = await self._bundler.wait_for_receipt(
                    submission.user_op_hash,
                    timeout_seconds=polling.timeout_seconds,
                    poll_seconds=polling.poll_interval_seconds,
                )
        except ReceiptTimeoutError as e:
            submission.error = e
            submission.advance(SubmissionState.TIMED_OUT)
            return submission

        submission.receipt = receipt
        if receipt.success:
            submission.advance(SubmissionState.CONFIRMED)
            if submission.deploys_account:
                submission.account = submission.account.with_deployed(True)
        else:
            submission.error = OperationRevertedError(submission.user_op_hash, receipt)
            submission.advance(SubmissionState.REVERTED)
        return submission

    async def execute(
        self,
        account: AccountIdentity,
        call_data: bytes,
        signer: Signer,
        wait: bool = True,
        confirm: Optional[Callable[[Submission], Awaitable[bool]]] = None,
    ) -> Submission:
        """Run one operation for ``account`` end to end.

        Operations for the same account are serialized; the lock is held
        until the receipt arrives (or polling ends) so the next operation
        sees the advanced nonce.

        ``confirm`` sees the estimated, priced and sponsored submission
        before anything is signed. Returning False fails it with a declined
        SignerUnavailableError and nothing is sent.
        """
        async with self._locks.get(account.address):
            submission = await self.prepare(account, call_data, signer)
            if confirm is not None and not await confirm(submission):
                submission.fail(SignerUnavailableError("submission declined", declined=True))
                return submission
            await self._sign_and_send(submission, signer)
            if wait and submission.state is SubmissionState.SUBMITTED:
                await self.wait_for_receipt(submission)
        logger.info(
            f"UserOp for {mask_address(account.address)} finished as {submission.state.value}"
        )
        return submission

    # =========================================================================
    # Convenience operations
    # =========================================================================

    async def send_eth(self, account: AccountIdentity, signer: Signer, to: str, amount_wei: int) -> Submission:
        return await self.execute(account, encode_execute(normalize_address(to), amount_wei), signer)

    async def send_erc20(
        self,
        account: AccountIdentity,
        signer: Signer,
        token: str,
        to: str,
        amount: int,
    ) -> Submission:
        call_data = encode_execute(token, 0, encode_erc20_transfer(to, amount))
        return await self.execute(account, call_data, signer)

    async def approve_erc20(
        self,
        account: AccountIdentity,
        signer: Signer,
        token: str,
        spender: str,
        amount: int,
    ) -> Submission:
        call_data = encode_execute(token, 0, encode_erc20_approve(spender, amount))
        return await self.execute(account, call_data, signer)

    async def send_batch(self, account: AccountIdentity, signer: Signer, calls: Sequence[Call]) -> Submission:
        return await self.execute(account, encode_execute_batch(calls), signer)

    async def deploy(self, account: AccountIdentity, signer: Signer) -> Optional[Submission]:
        """Deploy the account with an empty operation; None if it already exists."""
        account = await self.refresh_deployment(account)
        if account.deployed:
            logger.info(f"Account {mask_address(account.address)} is already deployed")
            return None
        return await self.execute(account, b"", signer)

    # =========================================================================
    # Off-chain signatures
    # =========================================================================

    async def sign_message(self, signer: Signer, message: Union[str, bytes]) -> bytes:
        """EIP-191 personal message signature through the signer capability."""
        if isinstance(message, str):
            signable = encode_defunct(text=message)
        else:
            signable = encode_defunct(primitive=message)
        return await self._sign(signer, signable_digest(signable))

    async def sign_typed_data(self, signer: Signer, typed_data: Dict[str, Any]) -> bytes:
        """EIP-712 signature over a full typed-data message."""
        signable = encode_typed_data(full_message=typed_data)
        return await self._sign(signer, signable_digest(signable))

