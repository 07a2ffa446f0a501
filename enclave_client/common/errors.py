"""
Exception taxonomy for the attestation + secure-channel core.

Every stage aborts the whole operation on its first error. Nothing here is
retried internally; a caller that retries must start a fresh handshake with
a fresh nonce.
"""

from typing import Optional


class EnclaveClientError(Exception):
    """Base class for everything raised by enclave_client."""


# ---------------------------------------------------------
# Parsing
# ---------------------------------------------------------

class DecodeError(EnclaveClientError):
    """Malformed envelope, CBOR, or document shape."""


# ---------------------------------------------------------
# Attestation
# ---------------------------------------------------------

class AttestationVerificationFailed(EnclaveClientError):
    """
    The attestation document was decoded but is not trusted.

    `stage` names the verifier stage that rejected it ("nonce", "chain",
    "signature", "measurement").
    """

    def __init__(self, reason: str, stage: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.stage = stage


class NonceMismatchError(AttestationVerificationFailed):
    def __init__(self, reason: str):
        super().__init__(reason, stage="nonce")


class CertificateChainError(AttestationVerificationFailed):
    """A chain link failed. `index` is the bundle position (len(cabundle) means the leaf)."""

    def __init__(self, reason: str, index: Optional[int] = None):
        if index is not None:
            reason = f"certificate {index}: {reason}"
        super().__init__(reason, stage="chain")
        self.index = index


class SignatureVerificationError(AttestationVerificationFailed):
    """Always carries the same message, whatever part of the check failed."""

    def __init__(self):
        super().__init__("signature verification failed", stage="signature")


class MeasurementError(AttestationVerificationFailed):
    def __init__(self, reason: str, index: int):
        super().__init__(reason, stage="measurement")
        self.index = index


class PcrMissingError(MeasurementError):
    def __init__(self, index: int):
        super().__init__(f"PCR{index} missing", index)


class PcrMismatchError(MeasurementError):
    def __init__(self, index: int):
        super().__init__(f"PCR{index} mismatch", index)


class AttestationFetchError(EnclaveClientError):
    """Could not obtain an attestation document from the remote party."""


# ---------------------------------------------------------
# Key exchange / session
# ---------------------------------------------------------

class KeyExchangeError(EnclaveClientError):
    """The handshake failed after attestation. Safe to retry from scratch."""


class KeyExchangeTransportError(KeyExchangeError):
    pass


class SessionKeyError(KeyExchangeError):
    """The delivered session key could not be decrypted or is not 32 bytes."""


class HandshakeInProgressError(EnclaveClientError):
    pass


class DecryptionError(EnclaveClientError):
    """Authenticated decryption failed. No plaintext is ever returned."""


class SessionError(EnclaveClientError):
    pass


# ---------------------------------------------------------
# Transport
# ---------------------------------------------------------

class ApiError(EnclaveClientError):
    def __init__(self, status: int, message: str):
        super().__init__(f"{status}: {message}")
        self.status = status
        self.message = message
