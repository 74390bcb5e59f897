"""
Node JSON-RPC client for one network.

Endpoints are tried in priority order. A transport failure, an HTTP error,
an unparseable body or a node-side overload code moves the request on to the
next endpoint and puts the failing one at the back of the queue for
``cooldown_seconds``. Any other JSON-RPC error is the node's answer and is
raised as ``RPCError`` without trying further endpoints.

The first request verifies ``eth_chainId`` against the configured network so
nothing is estimated or signed against the wrong chain.
"""
from __future__ import annotations

import itertools
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import httpx

from .abi import (
    WordReader,
    encode_address,
    encode_balance_of,
    encode_uint,
    hex_to_bytes,
    normalize_address,
    to_hex,
)
from .config import NetworkConfig, RPCEndpointConfig
from .erc4337.account_factory import encode_get_address_call
from .erc4337.jsonrpc import JSONRPCRequest, JSONRPCResponse
from .exceptions import (
    AllEndpointsFailedError,
    ChainIDMismatchError,
    MalformedInputError,
    RPCError,
)
from .logging_utils import mask_url
from .units import parse_quantity

logger = logging.getLogger(__name__)

# EntryPoint.getNonce(address sender, uint192 key)
ENTRY_POINT_GET_NONCE_SELECTOR = bytes.fromhex("35567e1a")

MIN_PRIORITY_FEE_PER_GAS = 1_000_000

# -32000 generic server error, -32005 limit exceeded
_OVERLOADED_CODES = frozenset({-32000, -32005})

# Successful responses slower than this mark the endpoint degraded
_SLOW_RESPONSE_MS = 5_000.0


class EndpointStatus(str, Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class _EndpointUnusable(Exception):
    """Internal signal: give up on this endpoint for the current request."""


@dataclass
class _Endpoint:
    config: RPCEndpointConfig
    status: EndpointStatus = EndpointStatus.UNKNOWN
    requests: int = 0
    failures: int = 0
    failure_streak: int = 0
    latency_ms: Optional[float] = None
    failed_at: Optional[float] = None
    last_error: Optional[str] = None

    @property
    def label(self) -> str:
        return mask_url(self.config.url)

    def cooling(self, now: float) -> bool:
        return self.failed_at is not None and now - self.failed_at < self.config.cooldown_seconds

    def order_key(self, now: float) -> Tuple[int, int, int, float]:
        return (
            int(self.cooling(now)),
            int(self.status is EndpointStatus.UNHEALTHY),
            self.config.priority,
            self.latency_ms or 0.0,
        )

    def succeeded(self, elapsed_ms: float) -> None:
        self.requests += 1
        self.failure_streak = 0
        self.failed_at = None
        # smoothed so one slow response does not reorder endpoints
        if self.latency_ms is None:
            self.latency_ms = elapsed_ms
        else:
            self.latency_ms += (elapsed_ms - self.latency_ms) / 10
        self.status = EndpointStatus.DEGRADED if elapsed_ms > _SLOW_RESPONSE_MS else EndpointStatus.HEALTHY

    def failed(self, reason: str) -> None:
        self.requests += 1
        self.failures += 1
        self.failure_streak += 1
        self.failed_at = time.monotonic()
        self.last_error = reason
        if self.failure_streak >= self.config.max_consecutive_failures:
            self.status = EndpointStatus.UNHEALTHY

    def stats(self) -> Dict[str, Any]:
        return {
            "url": self.label,
            "priority": self.config.priority,
            "status": self.status.value,
            "consecutive_failures": self.failure_streak,
            "total_requests": self.requests,
            "total_failures": self.failures,
            "avg_latency_ms": round(self.latency_ms or 0.0, 2),
            "last_error": self.last_error,
        }


class ChainRPCClient:
    """
    Reads the engine needs from a chain node, with endpoint failover.

    One instance per network; pass ``http_client`` to route requests through
    a shared or mocked ``httpx.AsyncClient``.
    """

    def __init__(
        self,
        network: NetworkConfig,
        validate_chain_id_on_connect: bool = True,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        if not network.rpc_endpoints:
            raise ValueError(f"No RPC endpoints configured for {network.name}")
        self._network = network
        self._check_chain = validate_chain_id_on_connect
        self._endpoints = [_Endpoint(config) for config in network.rpc_endpoints]
        self._request_ids = itertools.count(1)
        self._http = http_client
        self._owns_http = http_client is None
        self._connected = False
        self._chain_id: Optional[int] = None

    @property
    def network(self) -> NetworkConfig:
        return self._network

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(
                timeout=httpx.Timeout(max(e.config.timeout_seconds for e in self._endpoints), connect=10.0),
            )
        return self._http

    async def connect(self) -> None:
        """Verify the node serves the configured chain. Idempotent."""
        if self._connected:
            return
        if self._check_chain:
            received = await self._fetch_chain_id()
            if received != self._network.chain_id:
                raise ChainIDMismatchError(
                    network=self._network.name,
                    expected=self._network.chain_id,
                    received=received,
                )
            self._chain_id = received
        self._connected = True
        logger.debug("Connected to %s (%d endpoints)", self._network.name, len(self._endpoints))

    async def _fetch_chain_id(self) -> int:
        return parse_quantity(await self._dispatch("eth_chainId", []), field="chainId")

    async def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """
        Send one JSON-RPC request, failing over across endpoints.

        Raises:
            ChainIDMismatchError: the node serves a different chain
            RPCError: the node answered with an error
            AllEndpointsFailedError: no endpoint produced an answer
        """
        if not self._connected:
            await self.connect()
        return await self._dispatch(method, params or [])

    async def _dispatch(self, method: str, params: List[Any]) -> Any:
        request = JSONRPCRequest(id=next(self._request_ids), method=method, params=params)
        now = time.monotonic()
        errors: List[Tuple[str, str]] = []

        for endpoint in sorted(self._endpoints, key=lambda e: e.order_key(now)):
            try:
                return await self._send(endpoint, request)
            except _EndpointUnusable as e:
                reason = str(e)
                endpoint.failed(reason)
                errors.append((endpoint.label, reason))
                logger.warning("%s via %s failed: %s", method, endpoint.label, reason)

        raise AllEndpointsFailedError(network=self._network.name, errors=errors)

    async def _send(self, endpoint: _Endpoint, request: JSONRPCRequest) -> Any:
        started = time.monotonic()
        try:
            http_response = await self._client().post(
                endpoint.config.url,
                json=request.model_dump(),
                timeout=endpoint.config.timeout_seconds,
            )
            http_response.raise_for_status()
            body = http_response.json()
        except httpx.HTTPError as e:
            raise _EndpointUnusable(str(e) or type(e).__name__) from e
        except ValueError as e:
            raise _EndpointUnusable("response is not JSON") from e
        elapsed_ms = (time.monotonic() - started) * 1000

        try:
            response = JSONRPCResponse.parse(body, request.method)
        except MalformedInputError as e:
            raise _EndpointUnusable(e.message) from e

        if response.error is not None:
            if response.error.code in _OVERLOADED_CODES:
                raise _EndpointUnusable(response.error.message)
            endpoint.succeeded(elapsed_ms)
            raise RPCError(message=response.error.message, code=response.error.code, data=response.error.data)

        endpoint.succeeded(elapsed_ms)
        return response.result

    # -- reads --------------------------------------------------------------

    async def get_chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = await self._fetch_chain_id()
        return self._chain_id

    async def get_block_number(self) -> int:
        return parse_quantity(await self.call("eth_blockNumber"))

    async def get_gas_price(self) -> int:
        return parse_quantity(await self.call("eth_gasPrice"))

    async def get_max_priority_fee(self) -> int:
        """Node's tip suggestion, raised to ``MIN_PRIORITY_FEE_PER_GAS``."""
        try:
            suggested = parse_quantity(await self.call("eth_maxPriorityFeePerGas"))
        except RPCError as e:
            logger.debug("No priority fee suggestion from %s: %s", self._network.name, e.message)
            suggested = 0
        return max(suggested, MIN_PRIORITY_FEE_PER_GAS)

    async def get_balance(self, address: str, block: str = "latest") -> int:
        return parse_quantity(await self.call("eth_getBalance", [normalize_address(address), block]))

    async def get_code(self, address: str, block: str = "latest") -> bytes:
        code = await self.call("eth_getCode", [normalize_address(address), block])
        return hex_to_bytes(code or "0x", field="code")

    async def is_deployed(self, address: str) -> bool:
        return bool(await self.get_code(address))

    async def eth_call(self, to: str, data: bytes, block: str = "latest") -> bytes:
        result = await self.call("eth_call", [{"to": normalize_address(to), "data": to_hex(data)}, block])
        return hex_to_bytes(result or "0x", field="eth_call")

    async def get_entry_point_nonce(self, sender: str, key: int = 0) -> int:
        """Next nonce the EntryPoint will accept from ``sender`` under ``key``."""
        data = ENTRY_POINT_GET_NONCE_SELECTOR + encode_address(sender) + encode_uint(key)
        return WordReader(await self.eth_call(self._network.entry_point, data)).uint(0)

    async def get_erc20_balance(self, token: str, owner: str) -> int:
        return WordReader(await self.eth_call(token, encode_balance_of(owner))).uint(0)

    async def get_factory_address(self, factory: str, x: int, y: int, index: int) -> str:
        """The factory's own prediction for the account at (x, y, index)."""
        returned = await self.eth_call(factory, encode_get_address_call(x, y, index))
        if len(returned) < 32:
            raise MalformedInputError("Factory getAddress returned too little data")
        return WordReader(returned).address(0)

    def get_endpoint_stats(self) -> List[Dict[str, Any]]:
        return [endpoint.stats() for endpoint in self._endpoints]

    async def close(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None
        self._connected = False

    async def __aenter__(self) -> "ChainRPCClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
