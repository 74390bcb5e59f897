"""ERC-4337 paymaster client (pm_sponsorUserOperation).

A declined sponsorship is not an error: the operation proceeds unsponsored.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

import httpx
from pydantic import Field

from ..abi import hex_to_bytes
from ..config import ENTRY_POINT_V07, RelayConfig
from ..exceptions import MalformedInputError, RelayRejectedError
from ..retry import RetryConfig
from .jsonrpc import JSONRPCClient, Quantity, RelayModel
from .user_operation import PaymasterFields, UserOperation

logger = logging.getLogger(__name__)


class SponsorshipResult(RelayModel):
    """Sponsor response; gas quantities, when present, override the bundler estimate."""
    paymaster: Optional[str] = None
    paymaster_data: Optional[str] = Field(default=None, alias="paymasterData")
    paymaster_verification_gas_limit: Optional[Quantity] = Field(
        default=None, alias="paymasterVerificationGasLimit"
    )
    paymaster_post_op_gas_limit: Optional[Quantity] = Field(
        default=None, alias="paymasterPostOpGasLimit"
    )
    paymaster_and_data: Optional[str] = Field(default=None, alias="paymasterAndData")
    pre_verification_gas: Optional[Quantity] = Field(default=None, alias="preVerificationGas")
    verification_gas_limit: Optional[Quantity] = Field(default=None, alias="verificationGasLimit")
    call_gas_limit: Optional[Quantity] = Field(default=None, alias="callGasLimit")

    def paymaster_fields(self) -> PaymasterFields:
        if self.paymaster:
            return PaymasterFields(
                paymaster=self.paymaster,
                verification_gas_limit=self.paymaster_verification_gas_limit or 0,
                post_op_gas_limit=self.paymaster_post_op_gas_limit or 0,
                data=hex_to_bytes(self.paymaster_data or "0x", field="paymasterData"),
            )
        if self.paymaster_and_data:
            return PaymasterFields.unpack(
                hex_to_bytes(self.paymaster_and_data, field="paymasterAndData")
            )
        raise MalformedInputError("Sponsorship response carries no paymaster", field="paymaster")

    def apply(self, user_op: UserOperation) -> UserOperation:
        """Attach the paymaster and adopt any gas quantities the sponsor fixed."""
        sponsored = user_op.with_paymaster(self.paymaster_fields())
        return sponsored.with_gas(
            verification_gas_limit=self.verification_gas_limit,
            call_gas_limit=self.call_gas_limit,
            pre_verification_gas=self.pre_verification_gas,
        )


@dataclass
class PaymasterConfig:
    url: str
    entry_point: str = ENTRY_POINT_V07
    timeout_seconds: float = 30.0
    sponsorship_policy_id: Optional[str] = None
    retry: RetryConfig = field(default_factory=RetryConfig)

    @classmethod
    def from_relay_config(cls, url: str, entry_point: str, relay: RelayConfig) -> "PaymasterConfig":
        return cls(
            url=url,
            entry_point=entry_point,
            timeout_seconds=relay.timeout_seconds,
            sponsorship_policy_id=relay.sponsorship_policy_id,
            retry=RetryConfig(
                max_retries=relay.max_transport_retries,
                base_delay=relay.retry_base_delay_seconds,
            ),
        )


class PaymasterClient(JSONRPCClient):
    """Pimlico-compatible paymaster client (sponsor model)."""

    def __init__(self, config: PaymasterConfig, http_client: Optional[httpx.AsyncClient] = None):
        super().__init__(
            config.url,
            timeout_seconds=config.timeout_seconds,
            retry=config.retry,
            http_client=http_client,
        )
        self._config = config

    async def sponsor_user_operation(self, user_op: UserOperation) -> Optional[SponsorshipResult]:
        """Ask for sponsorship; returns None when the paymaster declines."""
        params: list = [user_op.to_rpc(), self._config.entry_point]
        if self._config.sponsorship_policy_id:
            params.append({"sponsorshipPolicyId": self._config.sponsorship_policy_id})

        try:
            result = await self._rpc("pm_sponsorUserOperation", params)
        except RelayRejectedError as e:
            logger.info("Paymaster declined: %s", e.message)
            return None

        sponsorship = SponsorshipResult.parse(result, "pm_sponsorUserOperation")
        if not (sponsorship.paymaster or sponsorship.paymaster_and_data):
            logger.warning("Paymaster response carried no paymaster, proceeding unsponsored")
            return None
        logger.info(
            "Paymaster sponsored UserOperation for %s via %s",
            user_op.sender, sponsorship.paymaster or sponsorship.paymaster_and_data[:42],
        )
        return sponsorship
