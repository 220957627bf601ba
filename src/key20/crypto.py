"""
Cryptographic primitives for the Key20 protocols.

Provides Curve25519 Diffie-Hellman, HMAC-SHA512-256 and the SHA-512 based
checksum users compare to verify a freshly exchanged key.
"""

from typing import Callable

from cryptography.hazmat.primitives import constant_time, hashes, hmac
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

# Constants
KEY_SIZE = 32  # Curve25519 scalars, points and shared secrets
HMAC_SIZE = 32  # HMAC-SHA512 truncated to 256 bits
NONCE_SIZE = 16
CHECKSUM_SIZE = 8

# Source of cryptographically secure random bytes, e.g. os.urandom
RandomSource = Callable[[int], bytes]


def _random_bytes(random_source: RandomSource, size: int) -> bytes:
    data = random_source(size)
    if len(data) != size:
        raise ValueError(f"Random source returned {len(data)} bytes (expected {size})")
    return bytes(data)


def generate_nonce(random_source: RandomSource) -> bytes:
    """Generate a random 16-byte nonce."""
    return _random_bytes(random_source, NONCE_SIZE)


def generate_key_pair(random_source: RandomSource) -> tuple[bytes, bytes]:
    """
    Generate a Curve25519 key pair.

    The random source is supplied by the caller and never seeded here, so
    tests can pass a deterministic one.

    Args:
        random_source: Callable returning n random bytes

    Returns:
        Tuple of (private_key, public_key), 32 bytes each, little endian
    """
    private_key = bytearray(_random_bytes(random_source, KEY_SIZE))

    # Clear bits 0-2 and bit 255, set bit 254
    private_key[0] &= 248
    private_key[KEY_SIZE - 1] &= 127
    private_key[KEY_SIZE - 1] |= 64

    public_key = X25519PrivateKey.from_private_bytes(bytes(private_key)).public_key()
    return bytes(private_key), public_key.public_bytes(Encoding.Raw, PublicFormat.Raw)


def derive_shared_secret(private_key: bytes, peer_public_key: bytes) -> bytes:
    """
    Derive the 32-byte Curve25519 shared secret.

    Raises:
        ValueError: On wrong key sizes or a low-order peer key
    """
    if len(private_key) != KEY_SIZE:
        raise ValueError(f"Private key must be {KEY_SIZE} bytes")
    if len(peer_public_key) != KEY_SIZE:
        raise ValueError(f"Public key must be {KEY_SIZE} bytes")

    own = X25519PrivateKey.from_private_bytes(bytes(private_key))
    peer = X25519PublicKey.from_public_bytes(bytes(peer_public_key))
    return own.exchange(peer)


def hmac_sha512_256(key: bytes, message: bytes) -> bytes:
    """
    Compute HMAC-SHA512 and keep the first 32 bytes of the 64-byte result.

    Args:
        key: HMAC key (the shared secret)
        message: Authenticated data (the nonce)

    Returns:
        32-byte truncated HMAC
    """
    mac = hmac.HMAC(bytes(key), hashes.SHA512())
    mac.update(bytes(message))
    return mac.finalize()[:HMAC_SIZE]


def verify_hmac_sha512_256(key: bytes, message: bytes, tag: bytes) -> bool:
    """Check a truncated HMAC in constant time."""
    return constant_time.bytes_eq(hmac_sha512_256(key, message), bytes(tag))


def sha512(data: bytes) -> bytes:
    """Compute the 64-byte SHA-512 digest."""
    digest = hashes.Hash(hashes.SHA512())
    digest.update(bytes(data))
    return digest.finalize()


def secret_checksum(shared_secret: bytes) -> bytes:
    """Checksum of a shared secret: the first 8 bytes of its SHA-512 hash."""
    return sha512(shared_secret)[:CHECKSUM_SIZE]


def checksum_to_hex(checksum: bytes) -> str:
    """
    Render a checksum as 16 hex digits.

    Byte 0 is printed leftmost, and within each byte the high nibble comes
    first. The lock display uses the same order.
    """
    return bytes(checksum).hex()
