# enclave_client/crypto/sign.py
"""
ECDSA P-384 + SHA-384 with fixed-length (r || s) signatures.
Used for the COSE_Sign1 attestation signature and for signed PCR history entries.
"""

import base64

from Crypto.Hash import SHA384
from Crypto.PublicKey import ECC
from Crypto.Signature import DSS

from enclave_client.common.errors import SignatureVerificationError
from enclave_client.crypto.cose import sig_structure
from enclave_client.crypto.pki import extract_ec_point

P384_COORD_SIZE = 48


def ecc_key_from_point(point: bytes) -> ECC.EccKey:
    """Build a P-384 public key from an uncompressed 97-byte point."""
    if len(point) != 1 + 2 * P384_COORD_SIZE or point[0] != 0x04:
        raise ValueError("not an uncompressed P-384 point")
    x = int.from_bytes(point[1:1 + P384_COORD_SIZE], "big")
    y = int.from_bytes(point[1 + P384_COORD_SIZE:], "big")
    return ECC.construct(curve="P-384", point_x=x, point_y=y)


def ecdsa_p384_sign(private_key: ECC.EccKey, message_bytes: bytes) -> bytes:
    """Returns the raw 96-byte r || s signature."""
    h = SHA384.new(message_bytes)
    return DSS.new(private_key, "fips-186-3", encoding="binary").sign(h)


def ecdsa_p384_verify(public_key: ECC.EccKey, message_bytes: bytes, signature: bytes) -> bool:
    """
    Verify raw r || s signature. Returns True/False.
    """
    try:
        h = SHA384.new(message_bytes)
        DSS.new(public_key, "fips-186-3", encoding="binary").verify(h, signature)
        return True
    except (ValueError, TypeError):
        return False


def ecdsa_p384_verify_b64(public_key: ECC.EccKey, message_bytes: bytes, signature_b64: str) -> bool:
    try:
        sig = base64.b64decode(signature_b64, validate=True)
    except ValueError:
        return False
    return ecdsa_p384_verify(public_key, message_bytes, sig)


def sign_document(private_key: ECC.EccKey, protected: bytes, payload: bytes) -> bytes:
    return ecdsa_p384_sign(private_key, sig_structure(protected, payload))


def verify_document_signature(protected: bytes, payload: bytes, signature: bytes,
                              leaf_der: bytes) -> None:
    """
    Verify the COSE_Sign1 signature against the leaf certificate's key.

    Every failure (unparseable leaf, point off the curve, bad length,
    wrong signature) raises the same SignatureVerificationError.
    """
    try:
        key = ecc_key_from_point(extract_ec_point(leaf_der))
    except ValueError:
        raise SignatureVerificationError() from None

    if not ecdsa_p384_verify(key, sig_structure(protected, payload), signature):
        raise SignatureVerificationError()
