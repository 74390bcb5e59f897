"""Typed JSON-RPC envelope shared by the bundler and paymaster clients."""

from __future__ import annotations

import itertools
import logging
from typing import Annotated, Any, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, BeforeValidator, ConfigDict, ValidationError

from ..exceptions import MalformedInputError, RelayRejectedError
from ..logging_utils import mask_url
from ..retry import RetryConfig, retry_async
from ..units import parse_quantity

logger = logging.getLogger(__name__)

M = TypeVar("M", bound="RelayModel")


def _quantity(value: Any) -> int:
    try:
        return parse_quantity(value)
    except MalformedInputError as e:
        raise ValueError(e.message) from None


Quantity = Annotated[int, BeforeValidator(_quantity)]


class RelayModel(BaseModel):
    """Base model for relay payloads."""

    model_config = ConfigDict(
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )

    @classmethod
    def parse(cls: Type[M], payload: Any, method: str) -> M:
        try:
            return cls.model_validate(payload)
        except ValidationError as e:
            raise MalformedInputError(
                f"Relay returned an invalid {cls.__name__} for {method}: {e.errors()[0]['msg']}",
                details={"method": method},
            ) from e


class JSONRPCRequest(RelayModel):
    jsonrpc: str = "2.0"
    id: int
    method: str
    params: list[Any]


class JSONRPCError(RelayModel):
    code: int = -1
    message: str = "Unknown"
    data: Any = None

    def to_exception(self, method: str) -> RelayRejectedError:
        return RelayRejectedError(self.message, code=self.code, data=self.data, method=method)


class JSONRPCResponse(RelayModel):
    jsonrpc: str = "2.0"
    id: Optional[int | str] = None
    result: Any = None
    error: Optional[JSONRPCError] = None

    @property
    def has_result(self) -> bool:
        return "result" in self.model_fields_set


class JSONRPCClient:
    """Minimal JSON-RPC over HTTP with transport-level retries."""

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 30.0,
        retry: Optional[RetryConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._url = url
        self._retry = retry or RetryConfig()
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout_seconds)
        self._ids = itertools.count(1)

    @property
    def url(self) -> str:
        return self._url

    async def _post(self, request: JSONRPCRequest) -> httpx.Response:
        response = await self._client.post(
            self._url,
            json=request.model_dump(),
            headers={"Content-Type": "application/json"},
        )
        if response.status_code >= 500:
            response.raise_for_status()
        return response

    async def _call(self, method: str, params: list[Any]) -> JSONRPCResponse:
        request = JSONRPCRequest(id=next(self._ids), method=method, params=params)
        response = await retry_async(self._post, request, config=self._retry)

        try:
            body = response.json()
        except ValueError:
            raise RelayRejectedError(
                f"HTTP {response.status_code} from {mask_url(self._url)} with non-JSON body",
                code=response.status_code,
                method=method,
            ) from None

        parsed = JSONRPCResponse.parse(body, method)
        if parsed.error is None and response.status_code >= 400:
            raise RelayRejectedError(
                f"HTTP {response.status_code} from {mask_url(self._url)}",
                code=response.status_code,
                method=method,
            )
        return parsed

    async def _rpc(self, method: str, params: list[Any]) -> Any:
        response = await self._call(method, params)
        if response.error is not None:
            logger.error("%s error from %s: %s", method, mask_url(self._url), response.error.message)
            raise response.error.to_exception(method)
        if not response.has_result:
            raise MalformedInputError(
                f"Relay response for {method} has neither result nor error",
                details={"method": method},
            )
        return response.result

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
