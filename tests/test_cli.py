"""
Tests for the enclave CLI.

Tests cover:
- Key creation and wallet listing
- Network listing and calldata decoding
- status / send / deploy against the in-process chain
- Error exits for missing wallets and bad arguments
"""
from __future__ import annotations

import stat
from contextlib import asynccontextmanager

import pytest
from click.testing import CliRunner

from enclave_engine.abi import encode_erc20_transfer, encode_execute
from enclave_engine.cli import main as cli_main
from enclave_engine.cli.main import cli
from enclave_engine.config import ENTRY_POINT_V07, FactoryConfig
from enclave_engine.engine import TransactionEngine
from enclave_engine.erc4337.account_factory import AddressDeriver
from enclave_engine.keystore import KeyStore

from conftest import CREATION_CODE, FACTORY, RECIPIENT, USDC


@pytest.fixture
def keys_dir(tmp_path):
    return tmp_path / "keys"


@pytest.fixture
def cli_env(monkeypatch, keys_dir):
    for key in ("PAYMASTER_URL", "RPC_URL", "RPC_FALLBACK_URLS", "BUNDLER_URL", "ENTRY_POINT", "USDC_ADDRESS"):
        monkeypatch.delenv(f"ENCLAVE_{key}", raising=False)
    monkeypatch.setenv("ENCLAVE_NETWORK", "anvil")
    monkeypatch.setenv("ENCLAVE_FACTORY_ADDRESS", FACTORY)
    monkeypatch.setenv("ENCLAVE_WALLET_CREATION_CODE", "0x" + CREATION_CODE.hex())
    monkeypatch.setenv("ENCLAVE_KEYS_DIR", str(keys_dir))
    monkeypatch.setenv("ENCLAVE_WALLET", "0")


@pytest.fixture
def runner(cli_env) -> CliRunner:
    return CliRunner()


@pytest.fixture
def wired(monkeypatch, rpc, bundler):
    """Route the CLI's engine to the in-process chain."""

    @asynccontextmanager
    async def fake_open_engine(config):
        yield TransactionEngine(config, rpc, bundler)

    monkeypatch.setattr(cli_main, "open_engine", fake_open_engine)


def _wallet_address(keys_dir, index=0) -> str:
    key = KeyStore(keys_dir).load(index)
    deriver = AddressDeriver(FactoryConfig(address=FACTORY, creation_code=CREATION_CODE.hex()), ENTRY_POINT_V07)
    return deriver.address_for(key.key_material, index)


class TestKeys:
    """new / wallets."""

    def test_new_creates_key(self, runner, keys_dir):
        result = runner.invoke(cli, ["new"])

        assert result.exit_code == 0, result.output
        assert "Created wallet 0 (p256)" in result.output
        assert _wallet_address(keys_dir) in result.output
        assert stat.S_IMODE((keys_dir / "0.json").stat().st_mode) == 0o600

    def test_new_secp256k1(self, runner, keys_dir):
        result = runner.invoke(cli, ["new", "--curve", "secp256k1"])

        assert result.exit_code == 0, result.output
        address = KeyStore(keys_dir).load(0).key_material.address
        assert address in result.output

    def test_new_without_factory(self, runner, monkeypatch):
        monkeypatch.delenv("ENCLAVE_FACTORY_ADDRESS")

        result = runner.invoke(cli, ["new"])

        assert result.exit_code == 0, result.output
        assert "Address unavailable" in result.output

    def test_wallets_empty(self, runner):
        result = runner.invoke(cli, ["wallets"])
        assert result.exit_code == 0
        assert "No wallets found" in result.output

    def test_wallets_lists_keys(self, runner):
        runner.invoke(cli, ["new"])
        runner.invoke(cli, ["new", "--curve", "secp256k1"])

        result = runner.invoke(cli, ["wallets"])

        assert result.exit_code == 0, result.output
        assert "p256" in result.output
        assert "secp256k1" in result.output


class TestInformational:
    """Commands that need no wallet."""

    def test_networks(self, runner):
        result = runner.invoke(cli, ["networks"])

        assert result.exit_code == 0, result.output
        assert "arbitrum_sepolia" in result.output
        assert "421614" in result.output

    def test_unknown_network(self, runner):
        result = runner.invoke(cli, ["--network", "mainnet", "networks"])
        assert result.exit_code == 2
        assert "Unknown network" in result.output

    def test_decode(self, runner):
        call_data = encode_execute(USDC, 0, encode_erc20_transfer(RECIPIENT, 1_500_000))

        result = runner.invoke(cli, ["decode", "0x" + call_data.hex()])

        assert result.exit_code == 0, result.output
        assert "Send 1.5000 USDC to 0x1234...7890" in result.output

    def test_decode_garbage(self, runner):
        result = runner.invoke(cli, ["decode", "0xdeadbeef"])
        assert result.exit_code == 0
        assert "Unknown call (0xdeadbeef)" in result.output


class TestChainCommands:
    """status / send / deploy through the engine."""

    def test_status_requires_wallet(self, runner, wired):
        result = runner.invoke(cli, ["status"])
        assert result.exit_code == 1
        assert "No wallet 0" in result.output

    def test_status(self, runner, wired):
        runner.invoke(cli, ["new"])

        result = runner.invoke(cli, ["status"])

        assert result.exit_code == 0, result.output
        assert "not deployed" in result.output

    def test_balance(self, runner, wired, keys_dir, fake_chain):
        runner.invoke(cli, ["new"])
        address = _wallet_address(keys_dir)
        fake_chain.state.credit(address, 2 * 10**18)
        fake_chain.usdc.mint(address, 1_500_000)

        result = runner.invoke(cli, ["balance"])

        assert result.exit_code == 0, result.output
        assert "ETH:  2" in result.output
        assert "USDC: 1.50" in result.output

    def test_send_eth(self, runner, wired, keys_dir, fake_chain):
        runner.invoke(cli, ["new"])
        fake_chain.state.credit(_wallet_address(keys_dir), 10**18)

        result = runner.invoke(cli, ["send", RECIPIENT, "0.1", "--yes"])

        assert result.exit_code == 0, result.output
        assert "Send 0.1000 ETH to 0x1234...7890" in result.output
        assert "Estimated gas:" in result.output
        assert "Confirmed" in result.output
        assert fake_chain.state.balance_of(RECIPIENT) == 10**17

    def test_send_usdc(self, runner, wired, keys_dir, fake_chain):
        runner.invoke(cli, ["new"])
        fake_chain.usdc.mint(_wallet_address(keys_dir), 5_000_000)

        result = runner.invoke(cli, ["send", RECIPIENT, "1.5", "--token", "usdc", "--yes"])

        assert result.exit_code == 0, result.output
        assert fake_chain.usdc.balance_of(RECIPIENT) == 1_500_000

    def test_send_estimates_once(self, runner, wired, keys_dir, fake_chain):
        runner.invoke(cli, ["new"])
        fake_chain.state.credit(_wallet_address(keys_dir), 10**18)

        result = runner.invoke(cli, ["send", RECIPIENT, "0.1"], input="y\n")

        assert result.exit_code == 0, result.output
        assert "Confirmed" in result.output
        assert fake_chain.methods("bundler.test").count("eth_estimateUserOperationGas") == 1

    def test_send_cancelled(self, runner, wired, fake_chain):
        runner.invoke(cli, ["new"])

        result = runner.invoke(cli, ["send", RECIPIENT, "0.1"], input="n\n")

        assert result.exit_code == 0, result.output
        assert "Cancelled" in result.output
        assert "eth_sendUserOperation" not in fake_chain.methods("bundler.test")

    def test_send_reverted(self, runner, wired, fake_chain):
        runner.invoke(cli, ["new"])

        # unfunded account: execution reverts after validation
        result = runner.invoke(cli, ["send", RECIPIENT, "0.1", "--yes"])

        assert result.exit_code == 1
        assert "Reverted" in result.output

    def test_send_bad_address(self, runner, wired):
        runner.invoke(cli, ["new"])
        result = runner.invoke(cli, ["send", "0x1234", "0.1", "--yes"])
        assert result.exit_code == 2

    def test_send_bad_amount(self, runner, wired):
        runner.invoke(cli, ["new"])
        result = runner.invoke(cli, ["send", RECIPIENT, "lots", "--yes"])
        assert result.exit_code == 2

    def test_deploy_then_already_deployed(self, runner, wired, keys_dir, fake_chain):
        runner.invoke(cli, ["new"])

        first = runner.invoke(cli, ["deploy"])
        second = runner.invoke(cli, ["deploy"])

        assert first.exit_code == 0, first.output
        assert "Confirmed" in first.output
        assert fake_chain.state.is_deployed(_wallet_address(keys_dir))
        assert second.exit_code == 0, second.output
        assert "already deployed" in second.output
