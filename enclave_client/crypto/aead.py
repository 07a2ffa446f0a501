# enclave_client/crypto/aead.py
"""
ChaCha20-Poly1305 envelope codec.
Wraps the session key under the ECDH secret, and every encrypted
request/response body under the session key.

Wire format: nonce (12) || ciphertext || tag (16)

Functions:
- seal(key, plaintext)
- open_sealed(key, sealed)
- encrypt_json(key, obj) / decrypt_json(key, b64)
- decrypt_session_key(shared_secret, b64)
"""

import json
from typing import Any, Final

from Crypto.Cipher import ChaCha20_Poly1305
from Crypto.Random import get_random_bytes

from enclave_client.common.errors import DecodeError, DecryptionError, SessionKeyError
from enclave_client.common.utils import b64d, b64e

KEY_SIZE: Final[int] = 32
NONCE_SIZE: Final[int] = 12
TAG_SIZE: Final[int] = 16
SESSION_KEY_SIZE: Final[int] = 32


def seal(key: bytes, plaintext: bytes) -> bytes:
    """
    Encrypt with a fresh random nonce.
    - key must be 32 bytes.
    """
    if len(key) != KEY_SIZE:
        raise ValueError("ChaCha20-Poly1305 key must be exactly 32 bytes.")

    nonce = get_random_bytes(NONCE_SIZE)
    cipher = ChaCha20_Poly1305.new(key=key, nonce=nonce)
    ciphertext, tag = cipher.encrypt_and_digest(plaintext)
    return nonce + ciphertext + tag


def open_sealed(key: bytes, sealed: bytes) -> bytes:
    """
    Split nonce / ciphertext / tag and decrypt.
    Any failure raises DecryptionError; no partial plaintext is returned.
    """
    if len(key) != KEY_SIZE:
        raise DecryptionError("decryption failed")

    if len(sealed) < NONCE_SIZE:
        raise DecryptionError("sealed data too short")

    if len(sealed) < NONCE_SIZE + TAG_SIZE:
        raise DecryptionError("decryption failed")

    nonce = sealed[:NONCE_SIZE]
    ciphertext = sealed[NONCE_SIZE:-TAG_SIZE]
    tag = sealed[-TAG_SIZE:]

    cipher = ChaCha20_Poly1305.new(key=key, nonce=nonce)
    try:
        return cipher.decrypt_and_verify(ciphertext, tag)
    except ValueError:
        raise DecryptionError("decryption failed") from None


# ---------------------------------------------------------
# JSON bodies (transport layer)
# ---------------------------------------------------------

def encrypt_json(key: bytes, data: Any) -> str:
    return b64e(seal(key, json.dumps(data).encode()))


def decrypt_json(key: bytes, encrypted_b64: str) -> Any:
    try:
        sealed = b64d(encrypted_b64)
    except DecodeError as e:
        raise DecryptionError(str(e)) from e
    plain = open_sealed(key, sealed)
    try:
        return json.loads(plain.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise DecryptionError(f"decrypted body is not JSON: {e}") from e


# ---------------------------------------------------------
# Session key unwrap (handshake step 7)
# ---------------------------------------------------------

def decrypt_session_key(shared_secret: bytes, encrypted_b64: str) -> bytes:
    """
    Unwrap the session key delivered by the enclave.
    Anything other than exactly 32 bytes of plaintext is rejected.
    """
    try:
        session_key = open_sealed(shared_secret, b64d(encrypted_b64))
    except (DecodeError, DecryptionError) as e:
        raise SessionKeyError(f"failed to decrypt session key: {e}") from e

    if len(session_key) != SESSION_KEY_SIZE:
        raise SessionKeyError(
            f"session key must be {SESSION_KEY_SIZE} bytes, got {len(session_key)}"
        )
    return session_key
