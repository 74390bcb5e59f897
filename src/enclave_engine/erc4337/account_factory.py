"""Counterfactual (CREATE2) addresses and deployment payloads for P-256 accounts.

The factory deploys ``creationCode || abi.encode(entryPoint, x, y)`` with
``salt = uint256(index)``, so an account's address is known before it exists:

    address = keccak(0xff || factory || salt || keccak(initCode))[12:]
"""

from __future__ import annotations

import logging

from web3 import Web3

from ..abi import encode_address, encode_uint, hex_to_bytes, normalize_address
from ..accounts import AccountIdentity, P256KeyMaterial
from ..config import FactoryConfig
from .user_operation import DeploymentPayload

logger = logging.getLogger(__name__)

# createAccount(uint256 x, uint256 y, uint256 salt); returns the existing account if deployed
CREATE_ACCOUNT_SELECTOR = bytes.fromhex("4c1ed7f5")
# getAddress(uint256 x, uint256 y, uint256 salt) view
GET_ADDRESS_SELECTOR = bytes.fromhex("e81b22ea")


def salt_for_index(index: int) -> bytes:
    """32-byte big-endian salt for an account ordinal."""
    return encode_uint(index, field="index")


def account_init_code_hash(creation_code: bytes, entry_point: str, x: int, y: int) -> bytes:
    init_code = creation_code + encode_address(entry_point) + encode_uint(x, field="x") + encode_uint(y, field="y")
    return bytes(Web3.keccak(init_code))


def compute_counterfactual_address(
    factory: str,
    creation_code: bytes,
    entry_point: str,
    x: int,
    y: int,
    index: int,
) -> str:
    """Checksummed address the factory will deploy for (x, y, index)."""
    factory_bytes = hex_to_bytes(normalize_address(factory, field="factory"))
    preimage = (
        b"\xff"
        + factory_bytes
        + salt_for_index(index)
        + account_init_code_hash(creation_code, entry_point, x, y)
    )
    return Web3.to_checksum_address(Web3.keccak(preimage)[12:])


def build_factory_data(x: int, y: int, index: int) -> bytes:
    """Calldata of the create-or-return call."""
    return CREATE_ACCOUNT_SELECTOR + encode_uint(x, field="x") + encode_uint(y, field="y") + salt_for_index(index)


def build_deployment_payload(factory: str, x: int, y: int, index: int) -> DeploymentPayload:
    return DeploymentPayload(factory=factory, factory_data=build_factory_data(x, y, index))


def encode_get_address_call(x: int, y: int, index: int) -> bytes:
    """Calldata of the factory's address-prediction view."""
    return GET_ADDRESS_SELECTOR + encode_uint(x, field="x") + encode_uint(y, field="y") + salt_for_index(index)


class AddressDeriver:
    """Derives account identities for one factory deployment."""

    def __init__(self, factory: FactoryConfig, entry_point: str):
        self._factory = factory
        self._entry_point = entry_point

    @property
    def factory_address(self) -> str:
        return normalize_address(self._factory.require_address(), field="factory")

    def address_for(self, key: P256KeyMaterial, index: int) -> str:
        return compute_counterfactual_address(
            self.factory_address,
            self._factory.require_creation_code(),
            self._entry_point,
            key.x,
            key.y,
            index,
        )

    def identity_for(self, key: P256KeyMaterial, index: int) -> AccountIdentity:
        address = self.address_for(key, index)
        logger.debug("Derived account %d at %s", index, address)
        return AccountIdentity(index=index, address=address, key_material=key)

    def deployment_for(self, key: P256KeyMaterial, index: int) -> DeploymentPayload:
        return build_deployment_payload(self.factory_address, key.x, key.y, index)
