"""
Configuration management for enclave-engine.

Provides explicit configuration objects for:
- Network selection (RPC endpoints, bundler, paymaster, token addresses)
- Account factory location and creation code
- Gas and fee policy
- Receipt polling
- Relay transport timeouts and retries

Configuration is built once and passed to the clients that need it;
there is no process-wide instance.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "ENCLAVE_"

ENTRY_POINT_V07 = "0x0000000071727De22E5E9d8BAf0edAc6f37da032"

USDC_ARBITRUM_ONE = "0xaf88d065e77c8cC2239327C5EDb3A432268e5831"
USDC_ARBITRUM_SEPOLIA = "0x75faf114eafb1BDbe2F0316DF893fd58CE46AA4d"


class Network(str, Enum):
    """Supported networks."""
    ANVIL = "anvil"
    ARBITRUM_SEPOLIA = "arbitrum_sepolia"
    ARBITRUM_ONE = "arbitrum_one"


@dataclass
class RPCEndpointConfig:
    """Configuration for a single RPC endpoint."""
    url: str
    priority: int = 0  # Lower is higher priority
    timeout_seconds: float = 30.0

    # After a failure the endpoint is tried last for this long
    cooldown_seconds: float = 30.0
    max_consecutive_failures: int = 3


@dataclass
class NetworkConfig:
    """Configuration for one network the engine can submit to."""
    network: Network
    chain_id: int
    display_name: str
    rpc_endpoints: List[RPCEndpointConfig] = field(default_factory=list)
    bundler_url: str = ""
    paymaster_url: Optional[str] = None
    usdc_address: str = ""
    explorer_url: str = ""
    is_local: bool = False
    entry_point: str = ENTRY_POINT_V07

    @property
    def name(self) -> str:
        return self.network.value

    def get_all_rpc_urls(self) -> List[str]:
        """Get all RPC URLs in priority order."""
        sorted_endpoints = sorted(self.rpc_endpoints, key=lambda e: e.priority)
        return [e.url for e in sorted_endpoints]

    def explorer_tx_url(self, tx_hash: str) -> Optional[str]:
        if not self.explorer_url:
            return None
        return f"{self.explorer_url.rstrip('/')}/tx/{tx_hash}"


@dataclass
class FactoryConfig:
    """Location and creation code of the account factory."""
    address: Optional[str] = None
    creation_code: Optional[str] = None  # hex, constructor arguments excluded

    def require_address(self) -> str:
        if not self.address:
            raise ConfigurationError(
                "Account factory address is not configured",
                setting=f"{ENV_PREFIX}FACTORY_ADDRESS",
            )
        return self.address

    def require_creation_code(self) -> bytes:
        if not self.creation_code:
            raise ConfigurationError(
                "Account creation code is not configured",
                setting=f"{ENV_PREFIX}WALLET_CREATION_CODE",
            )
        code = self.creation_code
        if code.startswith(("0x", "0X")):
            code = code[2:]
        try:
            return bytes.fromhex(code)
        except ValueError as e:
            raise ConfigurationError(
                f"Account creation code is not valid hex: {e}",
                setting=f"{ENV_PREFIX}WALLET_CREATION_CODE",
            ) from e


@dataclass
class GasPolicyConfig:
    """Gas and fee policy applied while building operations."""
    # Floors used when the relay under-quotes
    default_verification_gas_limit: int = 500_000
    default_call_gas_limit: int = 200_000
    default_pre_verification_gas: int = 100_000

    # First operation of an undeployed account
    deployment_verification_multiplier: int = 10
    deployment_verification_floor: int = 5_000_000

    # Fees
    max_fee_multiplier_percent: int = 120  # maxFeePerGas = gasPrice * 1.2
    min_priority_fee_per_gas: int = 1_000_000

    # Replacement after a fee-too-low rejection
    fee_bump_percent: int = 125


@dataclass
class ReceiptPollingConfig:
    """Receipt polling settings."""
    poll_interval_seconds: float = 2.0
    timeout_seconds: float = 60.0


@dataclass
class RelayConfig:
    """Transport settings shared by the bundler and paymaster clients."""
    timeout_seconds: float = 30.0
    max_transport_retries: int = 2
    retry_base_delay_seconds: float = 0.5
    sponsorship_policy_id: Optional[str] = None


@dataclass
class EngineConfig:
    """
    Master configuration for enclave-engine.

    Supports loading from environment variables with prefix ENCLAVE_.
    """
    network: NetworkConfig
    factory: FactoryConfig = field(default_factory=FactoryConfig)
    gas: GasPolicyConfig = field(default_factory=GasPolicyConfig)
    polling: ReceiptPollingConfig = field(default_factory=ReceiptPollingConfig)
    relay: RelayConfig = field(default_factory=RelayConfig)
    keys_dir: Path = field(default_factory=lambda: Path.home() / ".enclave" / "keys")

    @property
    def chain_id(self) -> int:
        return self.network.chain_id

    @property
    def entry_point(self) -> str:
        return self.network.entry_point


def _get_env(key: str, default: Any = None, prefix: str = ENV_PREFIX) -> Any:
    """Get environment variable with prefix."""
    return os.getenv(f"{prefix}{key}", default)


def _get_env_list(key: str, default: Optional[List[str]] = None, prefix: str = ENV_PREFIX) -> List[str]:
    """Get list environment variable (comma-separated)."""
    value = os.getenv(f"{prefix}{key}")
    if value:
        return [v.strip() for v in value.split(",") if v.strip()]
    return default or []


def _get_env_int(key: str, default: int, prefix: str = ENV_PREFIX) -> int:
    value = os.getenv(f"{prefix}{key}")
    if value is None or value == "":
        return default
    try:
        return int(value, 0)
    except ValueError as e:
        raise ConfigurationError(
            f"{prefix}{key} must be an integer, got {value!r}",
            setting=f"{prefix}{key}",
        ) from e


def _get_env_float(key: str, default: float, prefix: str = ENV_PREFIX) -> float:
    value = os.getenv(f"{prefix}{key}")
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError as e:
        raise ConfigurationError(
            f"{prefix}{key} must be a number, got {value!r}",
            setting=f"{prefix}{key}",
        ) from e


# Built-in network defaults; URLs can be overridden from the environment.
NETWORK_DEFAULTS: Dict[Network, Dict[str, Any]] = {
    Network.ANVIL: {
        # Local fork of Arbitrum One, so it reports the mainnet chain ID
        "chain_id": 42161,
        "display_name": "Anvil (local)",
        "rpc_url": "http://127.0.0.1:8545",
        "bundler_url": "http://127.0.0.1:4337",
        "usdc_address": USDC_ARBITRUM_ONE,
        "explorer_url": "",
        "is_local": True,
    },
    Network.ARBITRUM_SEPOLIA: {
        "chain_id": 421614,
        "display_name": "Arbitrum Sepolia",
        "rpc_url": "https://sepolia-rollup.arbitrum.io/rpc",
        "bundler_url": "https://public.pimlico.io/v2/421614/rpc",
        "usdc_address": USDC_ARBITRUM_SEPOLIA,
        "explorer_url": "https://sepolia.arbiscan.io",
        "is_local": False,
    },
    Network.ARBITRUM_ONE: {
        "chain_id": 42161,
        "display_name": "Arbitrum One",
        "rpc_url": "https://arb1.arbitrum.io/rpc",
        "bundler_url": "https://public.pimlico.io/v2/42161/rpc",
        "usdc_address": USDC_ARBITRUM_ONE,
        "explorer_url": "https://arbiscan.io",
        "is_local": False,
    },
}


def parse_network(name: str) -> Network:
    """Resolve a network name, accepting the camelCase spellings too."""
    normalized = name.strip().lower().replace("-", "_")
    aliases = {
        "arbitrumsepolia": Network.ARBITRUM_SEPOLIA,
        "arbitrumone": Network.ARBITRUM_ONE,
        "arbitrum": Network.ARBITRUM_ONE,
    }
    if normalized in aliases:
        return aliases[normalized]
    try:
        return Network(normalized)
    except ValueError:
        available = ", ".join(n.value for n in Network)
        raise ConfigurationError(
            f"Unknown network: {name}. Available: {available}",
            setting=f"{ENV_PREFIX}NETWORK",
        ) from None


def build_network_config(network: Network) -> NetworkConfig:
    """Build a NetworkConfig with environment variable overrides."""
    defaults = NETWORK_DEFAULTS[network]

    primary_url = _get_env("RPC_URL") or defaults["rpc_url"]
    endpoints = [RPCEndpointConfig(url=primary_url, priority=0)]
    for i, url in enumerate(_get_env_list("RPC_FALLBACK_URLS")):
        if url != primary_url:  # Don't duplicate primary
            endpoints.append(RPCEndpointConfig(url=url, priority=i + 1))

    return NetworkConfig(
        network=network,
        chain_id=defaults["chain_id"],
        display_name=defaults["display_name"],
        rpc_endpoints=endpoints,
        bundler_url=_get_env("BUNDLER_URL") or defaults["bundler_url"],
        paymaster_url=_get_env("PAYMASTER_URL") or None,
        usdc_address=_get_env("USDC_ADDRESS") or defaults["usdc_address"],
        explorer_url=defaults["explorer_url"],
        is_local=defaults["is_local"],
        entry_point=_get_env("ENTRY_POINT", ENTRY_POINT_V07),
    )


def build_default_config(network: Optional[str | Network] = None) -> EngineConfig:
    """Build an EngineConfig from defaults and ENCLAVE_* environment variables."""
    if network is None:
        network = _get_env("NETWORK", Network.ANVIL.value)
    if not isinstance(network, Network):
        network = parse_network(network)

    keys_dir = _get_env("KEYS_DIR")

    config = EngineConfig(
        network=build_network_config(network),
        factory=FactoryConfig(
            address=_get_env("FACTORY_ADDRESS") or None,
            creation_code=_get_env("WALLET_CREATION_CODE") or None,
        ),
        gas=GasPolicyConfig(
            deployment_verification_multiplier=_get_env_int("DEPLOY_GAS_MULTIPLIER", 10),
            deployment_verification_floor=_get_env_int("DEPLOY_GAS_FLOOR", 5_000_000),
            fee_bump_percent=_get_env_int("FEE_BUMP_PERCENT", 125),
        ),
        polling=ReceiptPollingConfig(
            poll_interval_seconds=_get_env_float("RECEIPT_POLL_SECONDS", 2.0),
            timeout_seconds=_get_env_float("RECEIPT_TIMEOUT_SECONDS", 60.0),
        ),
        relay=RelayConfig(
            timeout_seconds=_get_env_float("RELAY_TIMEOUT_SECONDS", 30.0),
            sponsorship_policy_id=_get_env("SPONSORSHIP_POLICY_ID") or None,
        ),
        keys_dir=Path(keys_dir).expanduser() if keys_dir else Path.home() / ".enclave" / "keys",
    )

    if config.gas.fee_bump_percent <= 100:
        raise ConfigurationError(
            "Fee bump percent must be greater than 100",
            setting=f"{ENV_PREFIX}FEE_BUMP_PERCENT",
        )

    logger.debug(
        "Built engine config for %s (chain_id=%d)",
        config.network.name, config.network.chain_id,
    )
    return config
