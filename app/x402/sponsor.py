# app/x402/sponsor.py
"""
Gas sponsor keypair.

The sponsor co-signs requester transactions so the requester does not
need SUI for gas. Signatures follow the Sui scheme:

    digest    = blake2b-256(intent || tx_bytes), intent = [0, 0, 0]
    signature = flag || ed25519(digest) || public_key     (base64)
    address   = 0x || hex(blake2b-256(flag || public_key))

Configuration (app/core/config.py):
- SPONSOR_PRIVATE_KEY: 32-byte Ed25519 seed as hex (optionally 0x-prefixed),
  or the base64 keystore form (flag byte followed by the seed).
  When unset, sponsorship is disabled and requesters pay their own gas.
"""
import base64
import binascii
import hashlib
import logging
import threading
from typing import Optional, Tuple

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from app.core.config import settings
from app.x402.errors import Unavailable

logger = logging.getLogger(__name__)

ED25519_FLAG = 0x00
ED25519_SIGNATURE_LENGTH = 64
ED25519_PUBLIC_KEY_LENGTH = 32
SEED_LENGTH = 32

# IntentScope::TransactionData, IntentVersion::V0, AppId::Sui
TRANSACTION_INTENT = bytes([0, 0, 0])


def blake2b_256(data: bytes) -> bytes:
    return hashlib.blake2b(data, digest_size=32).digest()


def transaction_intent_digest(transaction_bytes: bytes) -> bytes:
    """Digest a requester and sponsor both sign for the same transaction."""
    return blake2b_256(TRANSACTION_INTENT + transaction_bytes)


def derive_sui_address(public_key: bytes, flag: int = ED25519_FLAG) -> str:
    """Derive the Sui address owning a public key."""
    return "0x" + blake2b_256(bytes([flag]) + public_key).hex()


def parse_serialized_signature(signature_b64: str) -> Tuple[int, bytes, bytes]:
    """
    Split a base64 Sui signature into (flag, signature, public key).

    Only the Ed25519 layout is split exactly; for other schemes the
    remainder after the 64-byte signature is returned as the public key.

    Raises:
        ValueError: If the value is not base64 or too short
    """
    try:
        raw = base64.b64decode(signature_b64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Signature is not valid base64: {e}") from e

    if len(raw) < 1 + ED25519_SIGNATURE_LENGTH + 1:
        raise ValueError(f"Signature too short: {len(raw)} bytes")

    flag = raw[0]
    signature = raw[1:1 + ED25519_SIGNATURE_LENGTH]
    public_key = raw[1 + ED25519_SIGNATURE_LENGTH:]
    return flag, signature, public_key


def decode_secret_key(secret: str) -> bytes:
    """
    Decode SPONSOR_PRIVATE_KEY into a 32-byte Ed25519 seed.

    Raises:
        ValueError: If the value matches none of the accepted encodings
    """
    value = secret.strip()
    hex_value = value[2:] if value.lower().startswith("0x") else value

    try:
        raw = bytes.fromhex(hex_value)
    except ValueError:
        try:
            raw = base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError("Sponsor key is neither hex nor base64") from e
        # Keystore form carries the scheme flag in front of the seed
        if len(raw) == SEED_LENGTH + 1:
            if raw[0] != ED25519_FLAG:
                raise ValueError(f"Unsupported key scheme flag: {raw[0]}")
            raw = raw[1:]

    # Legacy 64-byte secret keys are seed || public key
    if len(raw) == SEED_LENGTH * 2:
        raw = raw[:SEED_LENGTH]

    if len(raw) != SEED_LENGTH:
        raise ValueError(f"Sponsor key must be {SEED_LENGTH} bytes, got {len(raw)}")

    return raw


class SponsorSigner:
    """Ed25519 keypair of the gas sponsor."""

    def __init__(self, private_key: ed25519.Ed25519PrivateKey):
        self._private_key = private_key
        self._public_key = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        self._address = derive_sui_address(self._public_key)

    @classmethod
    def from_secret(cls, secret: str) -> "SponsorSigner":
        seed = decode_secret_key(secret)
        return cls(ed25519.Ed25519PrivateKey.from_private_bytes(seed))

    @property
    def public_key(self) -> bytes:
        return self._public_key

    @property
    def address(self) -> str:
        return self._address

    def sign_transaction(self, transaction_bytes_b64: str) -> str:
        """
        Produce the sponsor's serialized signature over transaction bytes.

        The bytes are only read, never re-encoded.

        Raises:
            ValueError: If the transaction bytes are not valid base64
        """
        try:
            tx_bytes = base64.b64decode(transaction_bytes_b64, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"Transaction bytes are not valid base64: {e}") from e

        signature = self._private_key.sign(transaction_intent_digest(tx_bytes))
        serialized = bytes([ED25519_FLAG]) + signature + self._public_key
        return base64.b64encode(serialized).decode("ascii")


_signer: Optional[SponsorSigner] = None
_signer_key: Optional[str] = None
_signer_lock = threading.Lock()


def get_sponsor_signer() -> Optional[SponsorSigner]:
    """
    Get the configured sponsor signer.

    Returns:
        The SponsorSigner, or None when sponsorship is disabled

    Raises:
        Unavailable: If SPONSOR_PRIVATE_KEY is set but cannot be decoded
    """
    global _signer, _signer_key

    secret = settings.SPONSOR_PRIVATE_KEY
    if not secret:
        return None

    with _signer_lock:
        if _signer is None or _signer_key != secret:
            try:
                _signer = SponsorSigner.from_secret(secret)
            except ValueError as e:
                logger.error(f"x402: SPONSOR_PRIVATE_KEY is invalid: {e}")
                raise Unavailable("Sponsor key is misconfigured") from e
            _signer_key = secret
            logger.info(f"x402: Sponsor enabled: {_signer.address}")
        return _signer


def reset_sponsor_signer() -> None:
    """Forget the cached signer (useful for testing)."""
    global _signer, _signer_key
    with _signer_lock:
        _signer = None
        _signer_key = None
