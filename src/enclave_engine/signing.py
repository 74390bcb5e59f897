"""
Signing capability and signature canonicalization.

Two key types are supported:

- ``p256``: the primary account key. The signer hashes its input with
  SHA-256 before signing, so for an operation hash ``h`` the signature is
  over ``sha256(h)``; the account contract applies the same transform before
  calling the P-256 verifier. The device may return ``s`` in either half of
  the curve order and the verifier only accepts the low half, so every
  signature is normalized with :func:`normalize_low_s`.
- ``secp256k1``: legacy software keys and secondary signers. Signatures are
  recoverable and packed as ``r || s || v`` with ``v = recovery_id + 27``.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import (
    Prehashed,
    decode_dss_signature,
    encode_dss_signature,
)
from eth_keys import keys
from eth_keys.exceptions import BadSignature, ValidationError

from .exceptions import MalformedInputError, SignerUnavailableError

logger = logging.getLogger(__name__)

P256_ORDER = 0xFFFFFFFF00000000FFFFFFFFFFFFFFFFBCE6FAADA7179E84F3B9CAC2FC632551
P256_HALF_ORDER = P256_ORDER // 2

SECP256K1_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141


class KeyType(str, Enum):
    """Curve of an account's signing key."""
    P256 = "p256"
    SECP256K1 = "secp256k1"

    @property
    def signature_length(self) -> int:
        return 64 if self is KeyType.P256 else 65


@dataclass(frozen=True)
class RawSignature:
    """Signature exactly as the signer produced it."""
    r: int
    s: int
    recovery_id: Optional[int] = None


def placeholder_signature(key_type: KeyType) -> bytes:
    """Zero-filled signature of the real length, used for gas estimation."""
    return bytes(key_type.signature_length)


def normalize_low_s(s: int) -> int:
    """Map ``s`` into the lower half of the P-256 order."""
    if s > P256_HALF_ORDER:
        return P256_ORDER - s
    return s


def _require_p256_scalars(r: int, s: int) -> None:
    for name, value in (("r", r), ("s", s)):
        if not 0 < value < P256_ORDER:
            raise MalformedInputError(f"P-256 signature {name} out of range", field="signature")


def normalize_p256_signature(signature: bytes) -> bytes:
    """Return the 64-byte ``r || s`` signature with ``s`` in the low half."""
    if len(signature) != 64:
        raise MalformedInputError(
            f"P-256 signature must be 64 bytes, got {len(signature)}", field="signature"
        )
    r = int.from_bytes(signature[:32], "big")
    s = int.from_bytes(signature[32:], "big")
    _require_p256_scalars(r, s)
    return r.to_bytes(32, "big") + normalize_low_s(s).to_bytes(32, "big")


def pack_recoverable_signature(r: int, s: int, recovery_id: int) -> bytes:
    """Pack a secp256k1 signature as ``r || s || v`` with ``v = recovery_id + 27``."""
    if recovery_id not in (0, 1):
        raise MalformedInputError(
            f"Recovery id must be 0 or 1, got {recovery_id}", field="recovery_id"
        )
    return r.to_bytes(32, "big") + s.to_bytes(32, "big") + bytes([recovery_id + 27])


def canonicalize(raw: RawSignature, key_type: KeyType) -> bytes:
    """Turn a raw signer output into the bytes the account contract verifies."""
    for name, value in (("r", raw.r), ("s", raw.s)):
        if value <= 0 or value >= 2**256:
            raise MalformedInputError(f"Signature {name} out of range", field="signature")

    if key_type is KeyType.P256:
        _require_p256_scalars(raw.r, raw.s)
        return raw.r.to_bytes(32, "big") + normalize_low_s(raw.s).to_bytes(32, "big")

    if raw.recovery_id is None:
        raise MalformedInputError(
            "secp256k1 signature is missing its recovery id", field="signature"
        )
    return pack_recoverable_signature(raw.r, raw.s, raw.recovery_id)


class Signer(ABC):
    """Capability that signs 32-byte digests.

    Implementations may be slow, may prompt a human and may refuse; a
    refusal or failure is reported with SignerUnavailableError.
    """

    key_type: KeyType

    @abstractmethod
    async def sign(self, digest: bytes) -> RawSignature:
        """Sign ``digest`` and return the raw signature."""


class SoftwareP256Signer(Signer):
    """P-256 signer backed by an in-memory key (cryptography)."""

    key_type = KeyType.P256

    def __init__(self, private_key: ec.EllipticCurvePrivateKey):
        if not isinstance(private_key.curve, ec.SECP256R1):
            raise MalformedInputError("Private key is not on the P-256 curve")
        self._key = private_key

    @classmethod
    def generate(cls) -> "SoftwareP256Signer":
        return cls(ec.generate_private_key(ec.SECP256R1()))

    @classmethod
    def from_secret(cls, secret: int) -> "SoftwareP256Signer":
        if not 0 < secret < P256_ORDER:
            raise MalformedInputError("P-256 secret out of range", field="secret")
        return cls(ec.derive_private_key(secret, ec.SECP256R1()))

    @property
    def secret(self) -> int:
        return self._key.private_numbers().private_value

    @property
    def public_key_coordinates(self) -> tuple[int, int]:
        numbers = self._key.public_key().public_numbers()
        return numbers.x, numbers.y

    async def sign(self, digest: bytes) -> RawSignature:
        if len(digest) != 32:
            raise MalformedInputError(f"Digest must be 32 bytes, got {len(digest)}", field="digest")
        der = self._key.sign(digest, ec.ECDSA(hashes.SHA256()))
        r, s = decode_dss_signature(der)
        return RawSignature(r=r, s=s)


class Secp256k1Signer(Signer):
    """secp256k1 signer for legacy accounts and secondary signers (eth_keys)."""

    key_type = KeyType.SECP256K1

    def __init__(self, private_key: bytes):
        try:
            self._key = keys.PrivateKey(private_key)
        except ValidationError as e:
            raise MalformedInputError(f"Invalid secp256k1 private key: {e}") from e

    @property
    def secret(self) -> int:
        return int.from_bytes(self._key.to_bytes(), "big")

    @property
    def address(self) -> str:
        return self._key.public_key.to_checksum_address()

    async def sign(self, digest: bytes) -> RawSignature:
        if len(digest) != 32:
            raise MalformedInputError(f"Digest must be 32 bytes, got {len(digest)}", field="digest")
        signature = self._key.sign_msg_hash(digest)
        return RawSignature(r=signature.r, s=signature.s, recovery_id=signature.v)


async def sign_digest(signer: Signer, digest: bytes) -> bytes:
    """Sign through the capability and canonicalize the result.

    Any failure inside the signer surfaces as SignerUnavailableError.
    """
    try:
        raw = await signer.sign(digest)
    except SignerUnavailableError:
        raise
    except MalformedInputError:
        raise
    except Exception as e:
        logger.warning("Signer %s failed: %s", type(signer).__name__, e)
        raise SignerUnavailableError(str(e) or type(e).__name__) from e
    return canonicalize(raw, signer.key_type)


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------

def verify_p256(message_hash: bytes, r: int, s: int, x: int, y: int) -> bool:
    """Verify a P-256 signature over an already-hashed 32-byte message."""
    if len(message_hash) != 32:
        return False
    if not (0 < r < P256_ORDER and 0 < s < P256_ORDER):
        return False
    try:
        public_key = ec.EllipticCurvePublicNumbers(x, y, ec.SECP256R1()).public_key()
    except ValueError:
        return False
    try:
        public_key.verify(
            encode_dss_signature(r, s),
            message_hash,
            ec.ECDSA(Prehashed(hashes.SHA256())),
        )
    except InvalidSignature:
        return False
    return True


def recover_secp256k1_address(digest: bytes, signature: bytes) -> Optional[str]:
    """Recover the signer of a 65-byte ``r || s || v`` signature, or None."""
    if len(digest) != 32 or len(signature) != 65:
        return None
    v = signature[64]
    if v >= 27:
        v -= 27
    r = int.from_bytes(signature[:32], "big")
    s = int.from_bytes(signature[32:64], "big")
    try:
        recovered = keys.Signature(vrs=(v, r, s)).recover_public_key_from_msg_hash(digest)
    except (BadSignature, ValidationError):
        return None
    return recovered.to_checksum_address()
