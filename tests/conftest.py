"""
Pytest configuration for enclave-engine tests.

Provides an in-process chain (node, bundler and paymaster) served over
httpx.MockTransport. The bundler validates and executes operations with the
account contract model, so engine tests exercise real hashing, signing and
signature verification without a network.
"""
from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

import httpx
import pytest
from web3 import Web3

from enclave_engine.abi import normalize_address, to_hex
from enclave_engine.account_contract import (
    AccountFactory,
    ChainState,
    ContractRevert,
    EntryPointModel,
    ERC20Token,
)
from enclave_engine.accounts import AccountIdentity, P256KeyMaterial
from enclave_engine.config import (
    ENTRY_POINT_V07,
    EngineConfig,
    FactoryConfig,
    Network,
    NetworkConfig,
    ReceiptPollingConfig,
    RelayConfig,
    RPCEndpointConfig,
)
from enclave_engine.engine import TransactionEngine
from enclave_engine.erc4337.account_factory import AddressDeriver
from enclave_engine.erc4337.bundler_client import BundlerClient, BundlerConfig
from enclave_engine.erc4337.paymaster_client import PaymasterClient, PaymasterConfig
from enclave_engine.erc4337.user_operation import UserOperation
from enclave_engine.rpc_client import ENTRY_POINT_GET_NONCE_SELECTOR, ChainRPCClient
from enclave_engine.signing import SoftwareP256Signer

CHAIN_ID = 42161
NODE_URL = "http://node.test/rpc"
BUNDLER_URL = "http://bundler.test/rpc"
PAYMASTER_URL = "http://paymaster.test/rpc"

FACTORY = "0x9406Cc6185a346906296840746125a0E44976454"
USDC = "0xaf88d065e77c8cC2239327C5EDb3A432268e5831"
PAYMASTER = "0x00000000000000fB866DaAA79352cC568a005D96"
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
RECIPIENT = "0x1234567890123456789012345678901234567890"

# Arbitrary init code prefix; only its hash matters for address derivation
CREATION_CODE = bytes.fromhex("60806040526040516104d03803806104d0833981016040819052") + b"\x00" * 16

P256_SECRET = 0x519B423D715F8B581F4FA8EE59F4771A5B44C8130B4E3EACCA54A56DDA72B464


def _rpc_error(code: int, message: str, data: Any = None) -> Dict[str, Any]:
    error: Dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return error


class FakeChain:
    """Node, bundler and paymaster endpoints over one ChainState."""

    def __init__(self) -> None:
        self.now = 1_700_000_000
        self.block_number = 1_000
        self.state = ChainState(clock=lambda: self.now)
        self.entry_point = EntryPointModel(self.state, ENTRY_POINT_V07, CHAIN_ID)
        self.factory = AccountFactory(FACTORY, CREATION_CODE, ENTRY_POINT_V07)
        self.state.deploy(FACTORY, self.factory)
        self.usdc = ERC20Token(USDC, symbol="USDC", decimals=6)
        self.state.deploy(USDC, self.usdc)

        self.chain_id = CHAIN_ID
        self.gas_price = 100_000_000
        self.priority_fee = 1_500_000
        self.estimate = {
            "preVerificationGas": 45_000,
            "verificationGasLimit": 150_000,
            "callGasLimit": 80_000,
        }

        # Relay behavior knobs
        self.fee_floor: Optional[Dict[str, int]] = None
        self.fee_floor_chases_offer = False
        self.withhold_receipts = False
        self.sponsor: Optional[str] = None  # None (no response), "sponsor" or "decline"
        self.transport_failures: Dict[str, int] = {}

        # Recorded traffic
        self.requests: List[Dict[str, Any]] = []
        self.estimated: List[UserOperation] = []
        self.sent: List[UserOperation] = []
        self.sponsored: List[UserOperation] = []
        self.receipts: Dict[str, Dict[str, Any]] = {}

    # -- node --------------------------------------------------------------

    def node(self, method: str, params: List[Any]) -> Dict[str, Any]:
        if method == "eth_chainId":
            return {"result": hex(self.chain_id)}
        if method == "eth_blockNumber":
            return {"result": hex(self.block_number)}
        if method == "eth_gasPrice":
            return {"result": hex(self.gas_price)}
        if method == "eth_maxPriorityFeePerGas":
            return {"result": hex(self.priority_fee)}
        if method == "eth_getBalance":
            return {"result": hex(self.state.balance_of(params[0]))}
        if method == "eth_getCode":
            return {"result": "0x60806040" if self.state.is_deployed(params[0]) else "0x"}
        if method == "eth_call":
            to = params[0]["to"]
            data = bytes.fromhex(params[0]["data"][2:])
            if to.lower() == ENTRY_POINT_V07.lower() and data[:4] == ENTRY_POINT_GET_NONCE_SELECTOR:
                sender = normalize_address(data[4 + 12:4 + 32])
                return {"result": to_hex(self.entry_point.get_nonce(sender).to_bytes(32, "big"))}
            contract = self.state.get_contract(to)
            if contract is None:
                return {"result": "0x"}
            try:
                return {"result": to_hex(contract.call(self.state, ZERO_ADDRESS, 0, data))}
            except ContractRevert as e:
                return {"error": _rpc_error(3, "execution reverted", to_hex(e.data))}
        return {"error": _rpc_error(-32601, f"method not found: {method}")}

    # -- bundler -----------------------------------------------------------

    def bundler(self, method: str, params: List[Any]) -> Dict[str, Any]:
        if method == "eth_supportedEntryPoints":
            return {"result": [ENTRY_POINT_V07]}
        if method == "eth_estimateUserOperationGas":
            user_op = UserOperation.from_rpc(params[0])
            if len(user_op.signature) not in (64, 65):
                return {"error": _rpc_error(-32602, "invalid signature length for estimation")}
            self.estimated.append(user_op)
            return {"result": {k: hex(v) for k, v in self.estimate.items()}}
        if method == "eth_sendUserOperation":
            return self._send(UserOperation.from_rpc(params[0]))
        if method == "eth_getUserOperationReceipt":
            if self.withhold_receipts:
                return {"result": None}
            return {"result": self.receipts.get(params[0])}
        return {"error": _rpc_error(-32601, f"method not found: {method}")}

    def _send(self, user_op: UserOperation) -> Dict[str, Any]:
        self.sent.append(user_op)
        floor = self.fee_floor
        if self.fee_floor_chases_offer:
            # Every offer is answered with a floor above it
            floor = {
                "maxFeePerGas": user_op.max_fee_per_gas * 2,
                "maxPriorityFeePerGas": user_op.max_priority_fee_per_gas * 2,
            }
        if floor is not None and (
            user_op.max_fee_per_gas < floor["maxFeePerGas"]
            or user_op.max_priority_fee_per_gas < floor["maxPriorityFeePerGas"]
        ):
            data = {k: hex(v) for k, v in floor.items()}
            return {"error": _rpc_error(
                -32602,
                f"maxPriorityFeePerGas must be at least {floor['maxPriorityFeePerGas']}",
                data,
            )}

        try:
            result = self.entry_point.handle_op(user_op)
        except ContractRevert as e:
            return {"error": _rpc_error(-32500, e.message)}

        op_hash = to_hex(result.user_op_hash)
        self.block_number += 1
        receipt: Dict[str, Any] = {
            "userOpHash": op_hash,
            "success": result.success,
            "actualGasCost": hex(user_op.max_gas_cost // 2),
            "actualGasUsed": hex(user_op.total_gas // 2),
            "receipt": {
                "transactionHash": to_hex(bytes(Web3.keccak(result.user_op_hash + b"tx"))),
                "blockNumber": hex(self.block_number),
                "status": "0x1",
            },
        }
        if not result.success:
            receipt["reason"] = to_hex(result.revert_data)
        self.receipts[op_hash] = receipt
        return {"result": op_hash}

    # -- paymaster ---------------------------------------------------------

    def paymaster(self, method: str, params: List[Any]) -> Dict[str, Any]:
        if method != "pm_sponsorUserOperation":
            return {"error": _rpc_error(-32601, f"method not found: {method}")}
        self.sponsored.append(UserOperation.from_rpc(params[0]))
        if self.sponsor == "decline":
            return {"error": _rpc_error(-32602, "sponsorship policy rejected this operation")}
        if self.sponsor == "sponsor":
            return {"result": {
                "paymaster": PAYMASTER,
                "paymasterData": "0xdeadbeef",
                "paymasterVerificationGasLimit": hex(60_000),
                "paymasterPostOpGasLimit": hex(10_000),
                "preVerificationGas": hex(55_555),
                "verificationGasLimit": hex(7_000_000),
                "callGasLimit": hex(123_456),
            }}
        return {"result": {}}

    # -- transport ---------------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        host = request.url.host
        remaining = self.transport_failures.get(host, 0)
        if remaining:
            self.transport_failures[host] = remaining - 1
            return httpx.Response(503, text="service unavailable")

        body = json.loads(request.content)
        self.requests.append({"host": host, **body})
        route = {"node.test": self.node, "bundler.test": self.bundler, "paymaster.test": self.paymaster}
        reply = route[host](body["method"], body.get("params", []))
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], **reply})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def methods(self, host: str) -> List[str]:
        return [r["method"] for r in self.requests if r["host"] == host]


@pytest.fixture
def fake_chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def http_client(fake_chain: FakeChain) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=fake_chain.transport())


@pytest.fixture
def network_config() -> NetworkConfig:
    return NetworkConfig(
        network=Network.ANVIL,
        chain_id=CHAIN_ID,
        display_name="Anvil (Arbitrum fork)",
        rpc_endpoints=[RPCEndpointConfig(url=NODE_URL)],
        bundler_url=BUNDLER_URL,
        paymaster_url=PAYMASTER_URL,
        usdc_address=USDC,
        explorer_url="https://arbiscan.io",
        is_local=True,
    )


@pytest.fixture
def engine_config(network_config: NetworkConfig, tmp_path) -> EngineConfig:
    return EngineConfig(
        network=network_config,
        factory=FactoryConfig(address=FACTORY, creation_code="0x" + CREATION_CODE.hex()),
        polling=ReceiptPollingConfig(poll_interval_seconds=0.01, timeout_seconds=0.2),
        relay=RelayConfig(timeout_seconds=5.0, retry_base_delay_seconds=0.0),
        keys_dir=tmp_path / "keys",
    )


@pytest.fixture
def rpc(network_config: NetworkConfig, http_client: httpx.AsyncClient) -> ChainRPCClient:
    return ChainRPCClient(network_config, http_client=http_client)


@pytest.fixture
def bundler(engine_config: EngineConfig, http_client: httpx.AsyncClient) -> BundlerClient:
    config = BundlerConfig.from_relay_config(BUNDLER_URL, ENTRY_POINT_V07, engine_config.relay)
    return BundlerClient(config, http_client=http_client)


@pytest.fixture
def paymaster(engine_config: EngineConfig, http_client: httpx.AsyncClient) -> PaymasterClient:
    config = PaymasterConfig.from_relay_config(PAYMASTER_URL, ENTRY_POINT_V07, engine_config.relay)
    return PaymasterClient(config, http_client=http_client)


@pytest.fixture
def engine(engine_config: EngineConfig, rpc: ChainRPCClient, bundler: BundlerClient) -> TransactionEngine:
    return TransactionEngine(engine_config, rpc, bundler)


@pytest.fixture
def p256_signer() -> SoftwareP256Signer:
    return SoftwareP256Signer.from_secret(P256_SECRET)


@pytest.fixture
def account(engine_config: EngineConfig, p256_signer: SoftwareP256Signer) -> AccountIdentity:
    x, y = p256_signer.public_key_coordinates
    deriver = AddressDeriver(engine_config.factory, engine_config.entry_point)
    return deriver.identity_for(P256KeyMaterial(x=x, y=y), 0)


@pytest.fixture
def sample_eth_address() -> str:
    return RECIPIENT
