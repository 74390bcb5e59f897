"""Software key storage for development and the CLI.

One JSON file per account index under ``keys_dir``, written with mode
0o600 inside a 0o700 directory. Hardware-backed keys never touch this
module; they implement :class:`~enclave_engine.signing.Signer` directly.
"""
from __future__ import annotations

import json
import logging
import os
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import List, Union

from .accounts import KeyMaterial, P256KeyMaterial, Secp256k1KeyMaterial
from .exceptions import ConfigurationError, MalformedInputError
from .signing import KeyType, Secp256k1Signer, SoftwareP256Signer

logger = logging.getLogger(__name__)

SECURE_FILE_MODE = 0o600
SECURE_DIR_MODE = 0o700

SoftwareSigner = Union[SoftwareP256Signer, Secp256k1Signer]


@dataclass(frozen=True)
class StoredKey:
    index: int
    key_type: KeyType
    signer: SoftwareSigner

    @property
    def key_material(self) -> KeyMaterial:
        if isinstance(self.signer, SoftwareP256Signer):
            x, y = self.signer.public_key_coordinates
            return P256KeyMaterial(x=x, y=y)
        return Secp256k1KeyMaterial(address=self.signer.address)


class KeyStore:
    """Directory of software keys addressed by account index."""

    def __init__(self, keys_dir: Union[str, Path]):
        self.keys_dir = Path(keys_dir).expanduser()

    def _path(self, index: int) -> Path:
        return self.keys_dir / f"{index}.json"

    def _ensure_dir(self) -> None:
        self.keys_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(self.keys_dir, SECURE_DIR_MODE)

    def indices(self) -> List[int]:
        if not self.keys_dir.is_dir():
            return []
        found = []
        for path in self.keys_dir.glob("*.json"):
            if path.stem.isdigit():
                found.append(int(path.stem))
        return sorted(found)

    def next_index(self) -> int:
        existing = self.indices()
        return existing[-1] + 1 if existing else 0

    def create(self, key_type: KeyType = KeyType.P256) -> StoredKey:
        """Generate a key at the next free index and persist it."""
        self._ensure_dir()
        index = self.next_index()
        signer: SoftwareSigner
        if key_type is KeyType.P256:
            signer = SoftwareP256Signer.generate()
        else:
            signer = Secp256k1Signer(secrets.token_bytes(32))

        payload = json.dumps({"curve": key_type.value, "secret": hex(signer.secret)})
        fd = os.open(self._path(index), os.O_WRONLY | os.O_CREAT | os.O_EXCL, SECURE_FILE_MODE)
        os.fchmod(fd, SECURE_FILE_MODE)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload)

        logger.info("Created %s key at index %d", key_type.value, index)
        return StoredKey(index=index, key_type=key_type, signer=signer)

    def load(self, index: int) -> StoredKey:
        path = self._path(index)
        if not path.exists():
            raise ConfigurationError(f"No key stored for wallet {index}", setting="keys_dir")
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            key_type = KeyType(data["curve"])
            secret = int(data["secret"], 16)
        except (ValueError, KeyError, TypeError) as e:
            raise MalformedInputError(f"Corrupt key file {path.name}: {e}", field="keystore") from e

        signer: SoftwareSigner
        if key_type is KeyType.P256:
            signer = SoftwareP256Signer.from_secret(secret)
        else:
            signer = Secp256k1Signer(secret.to_bytes(32, "big"))
        return StoredKey(index=index, key_type=key_type, signer=signer)

    def load_all(self) -> List[StoredKey]:
        return [self.load(index) for index in self.indices()]
