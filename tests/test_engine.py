"""
Tests for enclave_engine.engine.

Tests cover:
- End-to-end send from an undeployed account (deployment headroom, receipt)
- Gas floors and fee pricing
- One automatic fee replacement, strictly above the relay's floor
- Timeout versus revert outcomes
- Signer refusal and failure
- Paymaster sponsorship and decline
- Per-account and per-signer serialization, cancellation during polling
- Confirmation of a prepared operation before signing
- Secondary (secp256k1) signers and off-chain message signatures
"""
from __future__ import annotations

import asyncio
import hashlib

import pytest
from eth_abi import encode
from eth_account.messages import encode_defunct, encode_typed_data

from enclave_engine.abi import (
    Call,
    encode_address,
    encode_erc20_transfer,
    encode_execute,
)
from enclave_engine.account_contract import (
    ADD_SESSION_KEY_SELECTOR,
    ERROR_STRING_SELECTOR,
    SET_DAILY_LIMIT_SELECTOR,
    VALID_SIGNATURE,
)
from enclave_engine.accounts import Secp256k1KeyMaterial
from enclave_engine.engine import (
    Submission,
    SubmissionState,
    TransactionEngine,
    signable_digest,
)
from enclave_engine.exceptions import (
    ConfigurationError,
    FeeTooLowError,
    OperationRevertedError,
    ReceiptTimeoutError,
    RelayRejectedError,
    SignerUnavailableError,
)
from enclave_engine.signing import (
    KeyType,
    RawSignature,
    Secp256k1Signer,
    Signer,
    verify_p256,
)

from conftest import PAYMASTER, RECIPIENT, USDC

HALF_ETH = 5 * 10**17

_PERMIT_TYPED_DATA = {
    "types": {
        "EIP712Domain": [
            {"name": "name", "type": "string"},
            {"name": "chainId", "type": "uint256"},
        ],
        "Permit": [
            {"name": "spender", "type": "address"},
            {"name": "value", "type": "uint256"},
        ],
    },
    "primaryType": "Permit",
    "domain": {"name": "Example", "chainId": 42161},
    "message": {"spender": RECIPIENT, "value": 1000},
}

HAPPY_PATH = [
    SubmissionState.BUILT,
    SubmissionState.ESTIMATING,
    SubmissionState.SIGNED,
    SubmissionState.SUBMITTED,
    SubmissionState.PENDING,
    SubmissionState.CONFIRMED,
]


class DecliningSigner(Signer):
    key_type = KeyType.P256

    def __init__(self):
        self.requests = 0

    async def sign(self, digest: bytes) -> RawSignature:
        self.requests += 1
        raise SignerUnavailableError("user cancelled the biometric prompt", declined=True)


class BrokenSigner(Signer):
    key_type = KeyType.P256

    async def sign(self, digest: bytes) -> RawSignature:
        raise RuntimeError("secure enclave unreachable")


class SlowSigner(Signer):
    """Wraps a signer and records how many requests overlap."""

    def __init__(self, inner: Signer, delay: float = 0.02):
        self.inner = inner
        self.key_type = inner.key_type
        self.delay = delay
        self.active = 0
        self.max_active = 0

    async def sign(self, digest: bytes) -> RawSignature:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
            return await self.inner.sign(digest)
        finally:
            self.active -= 1


def _self_call(account_address: str, selector: bytes, *words: bytes) -> bytes:
    return encode_execute(account_address, 0, selector + b"".join(words))


class TestEndToEnd:
    """Send 0.5 ETH from an undeployed account through estimate, sign, submit and poll."""

    @pytest.mark.asyncio
    async def test_send_from_undeployed_account(self, engine, account, p256_signer, fake_chain):
        fake_chain.state.credit(account.address, 10**18)

        submission = await engine.send_eth(account, p256_signer, RECIPIENT, HALF_ETH)

        assert submission.state is SubmissionState.CONFIRMED
        assert submission.history == HAPPY_PATH
        assert submission.transaction_hash
        assert submission.transaction_hash.startswith("0x")
        assert submission.account.deployed is True
        assert fake_chain.state.is_deployed(account.address)
        assert fake_chain.state.balance_of(RECIPIENT) == HALF_ETH

    @pytest.mark.asyncio
    async def test_first_estimation_carries_deployment(self, engine, account, p256_signer, fake_chain):
        fake_chain.state.credit(account.address, 10**18)

        await engine.send_eth(account, p256_signer, RECIPIENT, HALF_ETH)

        estimated = fake_chain.estimated[0]
        assert estimated.deployment is not None
        assert estimated.deployment.factory == fake_chain.factory.address
        assert estimated.signature == b"\x00" * 64
        # max(150_000 * 10, 5_000_000)
        assert fake_chain.sent[0].verification_gas_limit == 5_000_000

    @pytest.mark.asyncio
    async def test_second_operation_trusts_estimate(self, engine, account, p256_signer, fake_chain):
        fake_chain.state.credit(account.address, 10**18)
        fake_chain.estimate["verificationGasLimit"] = 650_000

        await engine.send_eth(account, p256_signer, RECIPIENT, 10**17)
        second = await engine.send_eth(account, p256_signer, RECIPIENT, 10**17)

        assert second.state is SubmissionState.CONFIRMED
        op = fake_chain.sent[-1]
        assert op.deployment is None
        assert op.nonce == 1
        assert op.verification_gas_limit == 650_000

    @pytest.mark.asyncio
    async def test_gas_floors_and_fees(self, engine, account, p256_signer, fake_chain):
        fake_chain.state.credit(account.address, 10**18)
        fake_chain.estimate["verificationGasLimit"] = 100_000

        await engine.send_eth(account, p256_signer, RECIPIENT, 10**17)
        await engine.send_eth(account, p256_signer, RECIPIENT, 10**17)

        op = fake_chain.sent[-1]
        assert op.verification_gas_limit == 500_000
        assert op.call_gas_limit == 200_000
        assert op.pre_verification_gas == 100_000
        assert op.max_fee_per_gas == 120_000_000
        assert op.max_priority_fee_per_gas == 1_500_000

    @pytest.mark.asyncio
    async def test_erc20_transfer(self, engine, account, p256_signer, fake_chain):
        fake_chain.usdc.mint(account.address, 10_000_000)

        submission = await engine.send_erc20(account, p256_signer, USDC, RECIPIENT, 2_500_000)

        assert submission.state is SubmissionState.CONFIRMED
        assert fake_chain.usdc.balance_of(RECIPIENT) == 2_500_000
        assert fake_chain.usdc.balance_of(account.address) == 7_500_000
        assert submission.actions[0].describe(engine.tokens) == "Send 2.5000 USDC to 0x1234...7890"

    @pytest.mark.asyncio
    async def test_erc20_approval(self, engine, account, p256_signer, fake_chain):
        submission = await engine.approve_erc20(account, p256_signer, USDC, RECIPIENT, 2**256 - 1)

        assert submission.state is SubmissionState.CONFIRMED
        assert fake_chain.usdc.allowances[(account.address.lower(), RECIPIENT.lower())] == 2**256 - 1
        assert submission.actions[0].describe(engine.tokens) == "Approve unlimited USDC to 0x1234...7890"

    @pytest.mark.asyncio
    async def test_batch_runs_calls_in_order(self, engine, account, p256_signer, fake_chain):
        fake_chain.state.credit(account.address, 10**18)
        fake_chain.usdc.mint(account.address, 3_000_000)
        calls = [
            Call(to=RECIPIENT, value=10**17, data=b""),
            Call(to=USDC, value=0, data=encode_erc20_transfer(RECIPIENT, 1_000_000)),
        ]

        submission = await engine.send_batch(account, p256_signer, calls)

        assert submission.state is SubmissionState.CONFIRMED
        assert fake_chain.state.balance_of(RECIPIENT) == 10**17
        assert fake_chain.usdc.balance_of(RECIPIENT) == 1_000_000
        assert [type(action).__name__ for action in submission.actions] == ["EthTransfer", "Erc20Transfer"]

    @pytest.mark.asyncio
    async def test_legacy_account_cannot_be_deployed(self, engine):
        signer = Secp256k1Signer(b"\x11" * 32)
        legacy = await engine.account_for(Secp256k1KeyMaterial(address=signer.address))

        assert legacy.deployed is False
        with pytest.raises(ConfigurationError):
            await engine.execute(legacy, encode_execute(RECIPIENT, 1), signer)


class TestFeeReplacement:
    """A fee-too-low rejection is answered by exactly one re-signed replacement."""

    @pytest.mark.asyncio
    async def test_replacement_fees_exceed_floor(self, engine, account, p256_signer, fake_chain):
        fake_chain.state.credit(account.address, 10**18)
        fake_chain.fee_floor = {"maxFeePerGas": 200_000_000, "maxPriorityFeePerGas": 3_000_000}

        submission = await engine.send_eth(account, p256_signer, RECIPIENT, HALF_ETH)

        assert submission.state is SubmissionState.CONFIRMED
        assert submission.fee_bumped is True
        first, replacement = fake_chain.sent
        assert replacement.max_fee_per_gas > 200_000_000
        assert replacement.max_priority_fee_per_gas > 3_000_000
        assert replacement.nonce == first.nonce
        assert replacement.signature != first.signature
        assert submission.history.count(SubmissionState.SIGNED) == 2

    @pytest.mark.asyncio
    async def test_second_rejection_surfaces_fee_too_low(self, engine, account, p256_signer, fake_chain):
        fake_chain.state.credit(account.address, 10**18)
        fake_chain.fee_floor_chases_offer = True

        submission = await engine.send_eth(account, p256_signer, RECIPIENT, HALF_ETH)

        assert submission.state is SubmissionState.FAILED
        assert isinstance(submission.error, FeeTooLowError)
        assert len(fake_chain.sent) == 2
        with pytest.raises(FeeTooLowError):
            submission.raise_for_state()

    @pytest.mark.asyncio
    async def test_other_rejection_is_not_retried(self, engine, account, fake_chain):
        # A signer the account does not know: validation fails at the bundler
        stranger = Secp256k1Signer(b"\x22" * 32)

        submission = await engine.send_eth(account, stranger, RECIPIENT, 1)

        assert submission.state is SubmissionState.FAILED
        assert isinstance(submission.error, RelayRejectedError)
        assert not isinstance(submission.error, FeeTooLowError)
        assert len(fake_chain.sent) == 1


class TestReceiptOutcomes:
    """A missing receipt and a failed execution are different failures."""

    @pytest.mark.asyncio
    async def test_timeout_is_not_revert(self, engine, account, p256_signer, fake_chain):
        fake_chain.state.credit(account.address, 10**18)
        fake_chain.withhold_receipts = True

        submission = await engine.send_eth(account, p256_signer, RECIPIENT, HALF_ETH)

        assert submission.state is SubmissionState.TIMED_OUT
        assert submission.user_op_hash is not None
        assert submission.receipt is None
        with pytest.raises(ReceiptTimeoutError):
            submission.raise_for_state()

    @pytest.mark.asyncio
    async def test_revert_keeps_inner_reason(self, engine, account, p256_signer, fake_chain):
        # No USDC balance: the token reverts and the account bubbles its data
        submission = await engine.send_erc20(account, p256_signer, USDC, RECIPIENT, 1_000_000)

        assert submission.state is SubmissionState.REVERTED
        assert submission.receipt is not None
        assert submission.receipt.success is False
        expected = ERROR_STRING_SELECTOR + encode(["string"], ["ERC20: transfer amount exceeds balance"])
        assert submission.receipt.reason == "0x" + expected.hex()
        with pytest.raises(OperationRevertedError) as exc_info:
            submission.raise_for_state()
        assert exc_info.value.details["transaction_hash"] == submission.transaction_hash

    @pytest.mark.asyncio
    async def test_confirmed_does_not_raise(self, engine, account, p256_signer, fake_chain):
        fake_chain.state.credit(account.address, 10**18)

        submission = await engine.send_eth(account, p256_signer, RECIPIENT, 1)

        submission.raise_for_state()
        assert submission.is_final


class TestSignerFailures:
    """Nothing reaches the bundler unless a valid signature exists."""

    @pytest.mark.asyncio
    async def test_declined_signature_sends_nothing(self, engine, account, fake_chain):
        signer = DecliningSigner()

        submission = await engine.send_eth(account, signer, RECIPIENT, HALF_ETH)

        assert submission.state is SubmissionState.FAILED
        assert isinstance(submission.error, SignerUnavailableError)
        assert submission.error.declined is True
        assert signer.requests == 1
        assert fake_chain.sent == []
        assert "eth_sendUserOperation" not in fake_chain.methods("bundler.test")

    @pytest.mark.asyncio
    async def test_rejected_confirmation_signs_nothing(self, engine, account, fake_chain):
        signer = DecliningSigner()
        seen = []

        async def confirm(prepared: Submission) -> bool:
            seen.append(prepared)
            return False

        submission = await engine.execute(account, encode_execute(RECIPIENT, HALF_ETH), signer, confirm=confirm)

        assert submission.state is SubmissionState.FAILED
        assert submission.error.declined is True
        assert signer.requests == 0
        assert seen[0].state is SubmissionState.ESTIMATING
        assert seen[0].user_op.max_fee_per_gas > 0
        assert "eth_sendUserOperation" not in fake_chain.methods("bundler.test")

    @pytest.mark.asyncio
    async def test_confirmation_reuses_estimate(self, engine, account, p256_signer, fake_chain):
        fake_chain.state.credit(account.address, 10**18)
        prepared_ops = []

        async def confirm(prepared: Submission) -> bool:
            prepared_ops.append(prepared.user_op)
            return True

        submission = await engine.execute(
            account, encode_execute(RECIPIENT, HALF_ETH), p256_signer, confirm=confirm
        )

        assert submission.state is SubmissionState.CONFIRMED
        assert fake_chain.methods("bundler.test").count("eth_estimateUserOperationGas") == 1
        assert fake_chain.sent[0].max_gas_cost == prepared_ops[0].max_gas_cost

    @pytest.mark.asyncio
    async def test_signer_crash_becomes_unavailable(self, engine, account, fake_chain):
        submission = await engine.send_eth(account, BrokenSigner(), RECIPIENT, HALF_ETH)

        assert submission.state is SubmissionState.FAILED
        assert isinstance(submission.error, SignerUnavailableError)
        assert submission.error.declined is False
        assert "secure enclave unreachable" in submission.error.reason
        assert fake_chain.sent == []


class TestSponsorship:
    """Paymaster gas quantities win over the bundler estimate; a decline is not fatal."""

    @pytest.mark.asyncio
    async def test_sponsored_gas_overrides_estimate(
        self, engine_config, rpc, bundler, paymaster, account, p256_signer, fake_chain
    ):
        fake_chain.sponsor = "sponsor"
        fake_chain.state.credit(account.address, 10**18)
        engine = TransactionEngine(engine_config, rpc, bundler, paymaster)

        submission = await engine.send_eth(account, p256_signer, RECIPIENT, HALF_ETH)

        assert submission.state is SubmissionState.CONFIRMED
        assert submission.sponsored is True
        op = fake_chain.sent[0]
        assert op.paymaster is not None
        assert op.paymaster.paymaster == PAYMASTER
        assert op.paymaster.data == bytes.fromhex("deadbeef")
        assert op.verification_gas_limit == 7_000_000
        assert op.call_gas_limit == 123_456
        assert op.pre_verification_gas == 55_555
        # The sponsor saw priced fees and a placeholder signature
        assert fake_chain.sponsored[0].max_fee_per_gas == 120_000_000
        assert len(fake_chain.sponsored[0].signature) == 64

    @pytest.mark.asyncio
    async def test_decline_proceeds_unsponsored(
        self, engine_config, rpc, bundler, paymaster, account, p256_signer, fake_chain
    ):
        fake_chain.sponsor = "decline"
        fake_chain.state.credit(account.address, 10**18)
        engine = TransactionEngine(engine_config, rpc, bundler, paymaster)

        submission = await engine.send_eth(account, p256_signer, RECIPIENT, HALF_ETH)

        assert submission.state is SubmissionState.CONFIRMED
        assert submission.sponsored is False
        assert fake_chain.sent[0].paymaster is None

    @pytest.mark.asyncio
    async def test_fee_replacement_is_responsored(
        self, engine_config, rpc, bundler, paymaster, account, p256_signer, fake_chain
    ):
        fake_chain.sponsor = "sponsor"
        fake_chain.fee_floor = {"maxFeePerGas": 200_000_000, "maxPriorityFeePerGas": 3_000_000}
        fake_chain.state.credit(account.address, 10**18)
        engine = TransactionEngine(engine_config, rpc, bundler, paymaster)

        submission = await engine.send_eth(account, p256_signer, RECIPIENT, HALF_ETH)

        assert submission.state is SubmissionState.CONFIRMED
        assert len(fake_chain.sponsored) == 2
        assert fake_chain.sponsored[1].max_fee_per_gas > 200_000_000
        assert fake_chain.sponsored[1].paymaster is None
        assert fake_chain.sent[1].paymaster is not None


class TestSerialization:
    """Operations for one account run one at a time."""

    @pytest.mark.asyncio
    async def test_concurrent_sends_are_serialized(self, engine, account, p256_signer, fake_chain):
        fake_chain.state.credit(account.address, 10**18)
        signer = SlowSigner(p256_signer)

        first, second = await asyncio.gather(
            engine.send_eth(account, signer, RECIPIENT, 10**17),
            engine.send_eth(account, signer, RECIPIENT, 10**17),
        )

        assert signer.max_active == 1
        assert first.state is SubmissionState.CONFIRMED
        assert second.state is SubmissionState.CONFIRMED
        assert sorted(op.nonce for op in fake_chain.sent) == [0, 1]
        # Only the first operation deploys
        assert [op.deployment is not None for op in fake_chain.sent] == [True, False]

    @pytest.mark.asyncio
    async def test_message_signing_waits_for_operation_signature(
        self, engine, account, p256_signer, fake_chain
    ):
        fake_chain.state.credit(account.address, 10**18)
        signer = SlowSigner(p256_signer, delay=0.2)

        submission, first_message, second_message = await asyncio.gather(
            engine.send_eth(account, signer, RECIPIENT, 10**17),
            engine.sign_message(signer, "Sign in to example.org"),
            engine.sign_typed_data(signer, _PERMIT_TYPED_DATA),
        )

        assert signer.max_active == 1
        assert submission.state is SubmissionState.CONFIRMED
        assert len(first_message) == 64
        assert len(second_message) == 64

    @pytest.mark.asyncio
    async def test_cancellation_stops_polling(self, engine, account, p256_signer, fake_chain):
        fake_chain.state.credit(account.address, 10**18)
        fake_chain.withhold_receipts = True
        engine.config.polling.timeout_seconds = 30.0

        task = asyncio.create_task(engine.send_eth(account, p256_signer, RECIPIENT, HALF_ETH))
        for _ in range(200):
            if fake_chain.methods("bundler.test").count("eth_getUserOperationReceipt") >= 2:
                break
            await asyncio.sleep(0.01)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert len(fake_chain.sent) == 1
        assert not engine.locks.is_locked(account.address)


class TestDeploy:
    @pytest.mark.asyncio
    async def test_deploy_then_noop(self, engine, account, p256_signer, fake_chain):
        submission = await engine.deploy(account, p256_signer)

        assert submission is not None
        assert submission.state is SubmissionState.CONFIRMED
        assert fake_chain.sent[0].call_data == b""
        assert fake_chain.factory.deployments == 1

        assert await engine.deploy(account, p256_signer) is None
        assert len(fake_chain.sent) == 1


class TestSecondarySigners:
    """secp256k1 session keys authorized by the account itself."""

    @pytest.mark.asyncio
    async def test_session_key_can_sign_after_authorization(self, engine, account, p256_signer, fake_chain):
        fake_chain.state.credit(account.address, 10**18)
        session = Secp256k1Signer(b"\x33" * 32)

        authorize = _self_call(account.address, ADD_SESSION_KEY_SELECTOR, encode_address(session.address))
        assert (await engine.execute(account, authorize, p256_signer)).state is SubmissionState.CONFIRMED

        submission = await engine.send_eth(account, session, RECIPIENT, HALF_ETH)

        assert submission.state is SubmissionState.CONFIRMED
        assert len(fake_chain.sent[-1].signature) == 65
        assert len(fake_chain.estimated[-1].signature) == 65

    @pytest.mark.asyncio
    async def test_daily_limit_reverts_oversized_send(self, engine, account, p256_signer, fake_chain):
        fake_chain.state.credit(account.address, 10**18)
        limit = _self_call(
            account.address,
            SET_DAILY_LIMIT_SELECTOR,
            encode_address("0x0000000000000000000000000000000000000000"),
            (3 * 10**17).to_bytes(32, "big"),
        )
        await engine.execute(account, limit, p256_signer)

        within = await engine.send_eth(account, p256_signer, RECIPIENT, 2 * 10**17)
        over = await engine.send_eth(account, p256_signer, RECIPIENT, 2 * 10**17)

        assert within.state is SubmissionState.CONFIRMED
        assert over.state is SubmissionState.REVERTED
        assert fake_chain.state.balance_of(RECIPIENT) == 2 * 10**17

    @pytest.mark.asyncio
    async def test_batch_is_not_held_to_daily_limit(self, engine, account, p256_signer, fake_chain):
        fake_chain.state.credit(account.address, 10**18)
        limit = _self_call(
            account.address,
            SET_DAILY_LIMIT_SELECTOR,
            encode_address("0x0000000000000000000000000000000000000000"),
            (10**17).to_bytes(32, "big"),
        )
        await engine.execute(account, limit, p256_signer)

        calls = [Call(to=RECIPIENT, value=2 * 10**17, data=b"")] * 2
        submission = await engine.send_batch(account, p256_signer, calls)

        assert submission.state is SubmissionState.CONFIRMED
        assert fake_chain.state.balance_of(RECIPIENT) == 4 * 10**17


class TestOffChainSignatures:
    @pytest.mark.asyncio
    async def test_message_signature_validates_on_account(self, engine, account, p256_signer, fake_chain):
        await engine.deploy(account, p256_signer)
        contract = fake_chain.state.get_contract(account.address)

        signature = await engine.sign_message(p256_signer, "Sign in to example.org")

        digest = signable_digest(encode_defunct(text="Sign in to example.org"))
        assert len(signature) == 64
        assert contract.is_valid_signature(fake_chain.state, digest, signature) == VALID_SIGNATURE

    @pytest.mark.asyncio
    async def test_typed_data_signature(self, engine, p256_signer):
        signature = await engine.sign_typed_data(p256_signer, _PERMIT_TYPED_DATA)

        digest = signable_digest(encode_typed_data(full_message=_PERMIT_TYPED_DATA))
        x, y = p256_signer.public_key_coordinates
        r = int.from_bytes(signature[:32], "big")
        s = int.from_bytes(signature[32:], "big")
        assert verify_p256(hashlib.sha256(digest).digest(), r, s, x, y)


class TestPreview:
    def test_describe_eth_transfer(self, engine):
        assert engine.describe(encode_execute(RECIPIENT, HALF_ETH)) == [
            "Send 0.5000 ETH to 0x1234...7890"
        ]

    def test_describe_garbage(self, engine):
        assert engine.describe("0xdeadbeef00") == ["Unknown call (0xdeadbeef)"]

    def test_submission_to_dict(self, account):
        from enclave_engine.erc4337.user_operation import UserOperation

        submission = Submission(
            account=account,
            user_op=UserOperation(sender=account.address, nonce=0),
            actions=[],
        )
        data = submission.to_dict()
        assert data["state"] == "built"
        assert data["history"] == ["built"]
        assert data["error"] is None
