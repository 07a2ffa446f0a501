"""
X25519 ECDH helpers.
Implements:
- dh_generate_private()
- dh_compute_public()
- dh_load_public()
- dh_compute_shared()

The 32-byte shared secret is used directly as the ChaCha20-Poly1305 key that
unwraps the session key; the enclave does the same on its side.
"""

from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)

from enclave_client.common.errors import KeyExchangeError

X25519_KEY_SIZE = 32


def dh_generate_private() -> X25519PrivateKey:
    """
    Generate a fresh X25519 private key (one per handshake).
    """
    return X25519PrivateKey.generate()


def dh_compute_public(private_key: X25519PrivateKey) -> bytes:
    """
    Raw 32-byte public key, as sent to the key exchange endpoint.
    """
    return private_key.public_key().public_bytes_raw()


def dh_load_public(public_bytes: bytes) -> X25519PublicKey:
    if len(public_bytes) != X25519_KEY_SIZE:
        raise KeyExchangeError(
            f"exchange public key must be {X25519_KEY_SIZE} bytes, got {len(public_bytes)}"
        )
    return X25519PublicKey.from_public_bytes(public_bytes)


def dh_compute_shared(private_key: X25519PrivateKey, peer_public: bytes) -> bytes:
    """
    Compute shared secret: s = X25519(private_key, peer_public).
    Low-order peer points are rejected.
    """
    try:
        return private_key.exchange(dh_load_public(peer_public))
    except ValueError as e:
        raise KeyExchangeError(f"ECDH failed: {e}") from e
