"""
Pydantic models for the wire messages exchanged with the enclave backend.

The core only needs the attestation + key exchange messages; the encrypted
envelope is what every later request/response body looks like.

Models include:
- ATTESTATION (Server → Client)
- KEY_EXCHANGE request / response
- ENCRYPTED body (both directions)
- PCR history entry (signed measurement record)
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------
# 1. ATTESTATION (Server → Client)
# ---------------------------------------------------------

class AttestationResponse(BaseModel):
    attestation_document: str   # base64 COSE_Sign1


# ---------------------------------------------------------
# 2. KEY_EXCHANGE (Client → Server)
# ---------------------------------------------------------

class KeyExchangeRequest(BaseModel):
    client_public_key: str      # base64 X25519 public key
    nonce: str


# ---------------------------------------------------------
# 3. KEY_EXCHANGE reply (Server → Client)
# ---------------------------------------------------------

class KeyExchangeResponse(BaseModel):
    encrypted_session_key: str  # base64(nonce || ciphertext || tag)
    session_id: str             # UUID


# ---------------------------------------------------------
# 4. ENCRYPTED body (every call after the handshake)
# ---------------------------------------------------------

class EncryptedBody(BaseModel):
    encrypted: str


# ---------------------------------------------------------
# 5. PCR history entry
# ---------------------------------------------------------

class PcrHistoryEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    hash_algorithm: str = Field(alias="HashAlgorithm")
    pcr0: str = Field(alias="PCR0")
    pcr1: str = Field(alias="PCR1")
    pcr2: str = Field(alias="PCR2")
    timestamp: int
    signature: Optional[str] = None   # base64 raw r||s
