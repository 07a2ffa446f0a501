"""
Helper signatures: now_ms, b64e, b64d, sha256_hex, is_loopback_url.
"""

import base64
import binascii
import hashlib
import time
from urllib.parse import urlparse

from enclave_client.common.errors import DecodeError

LOOPBACK_HOSTS = {"localhost", "127.0.0.1", "0.0.0.0", "::1"}


def now_ms() -> int:
    """Return current UNIX time in milliseconds."""
    return int(time.time() * 1000)


def b64e(b: bytes) -> str:
    """Base64 encode bytes → UTF-8 string."""
    return base64.b64encode(b).decode()


def b64d(s: str) -> bytes:
    """
    Strict base64 decode string → raw bytes.
    Raises DecodeError on anything that is not canonical base64.
    """
    try:
        return base64.b64decode(s.encode(), validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecodeError(f"invalid base64: {e}") from e


def sha256_hex(data: bytes) -> str:
    """Return SHA-256 digest as hex string."""
    return hashlib.sha256(data).hexdigest()


def is_loopback_url(url: str) -> bool:
    """True when the URL points at a local development backend."""
    host = urlparse(url).hostname or ""
    return host in LOOPBACK_HOSTS
