"""Account identity, per-account and per-signer serialization."""
from __future__ import annotations

import asyncio
import weakref
from dataclasses import dataclass, replace
from typing import Dict, Union

from .abi import normalize_address
from .signing import KeyType, Signer


@dataclass(frozen=True)
class P256KeyMaterial:
    """Public key coordinates of a primary (P-256) account key."""
    x: int
    y: int

    key_type = KeyType.P256


@dataclass(frozen=True)
class Secp256k1KeyMaterial:
    """Legacy key, identified by the address its scalar controls.

    The scalar itself stays inside the signer.
    """
    address: str

    key_type = KeyType.SECP256K1


KeyMaterial = Union[P256KeyMaterial, Secp256k1KeyMaterial]


@dataclass(frozen=True)
class AccountIdentity:
    """A local account: ordinal, derived address, key material and deployment flag.

    ``deployed`` is a cached view of chain state and is refreshed before every
    submission.
    """
    index: int
    address: str
    key_material: KeyMaterial
    deployed: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "address", normalize_address(self.address, field="address"))

    @property
    def key_type(self) -> KeyType:
        return self.key_material.key_type

    def with_deployed(self, deployed: bool) -> "AccountIdentity":
        return replace(self, deployed=deployed)


class AccountLocks:
    """One asyncio.Lock per account address.

    Operations against the same account run one at a time; independent
    accounts proceed concurrently.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}

    def get(self, address: str) -> asyncio.Lock:
        key = address.lower()
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    def is_locked(self, address: str) -> bool:
        lock = self._locks.get(address.lower())
        return lock is not None and lock.locked()


class SignerLocks:
    """One asyncio.Lock per signer instance.

    A signer may front a single hardware key that cannot service two
    prompts at once, so operation, message and typed-data signatures for
    the same signer are issued one at a time.
    """

    def __init__(self) -> None:
        self._locks: "weakref.WeakKeyDictionary[Signer, asyncio.Lock]" = weakref.WeakKeyDictionary()

    def get(self, signer: Signer) -> asyncio.Lock:
        lock = self._locks.get(signer)
        if lock is None:
            lock = self._locks[signer] = asyncio.Lock()
        return lock
