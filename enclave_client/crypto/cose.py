"""
COSE_Sign1 envelope + attestation document decoding (CBOR).

Pure parsing, no trust decisions:
- decode_envelope(document_b64)  -> Sign1Envelope
- decode_document(payload)       -> AttestationDocument
- sig_structure(protected, payload)
- encode_envelope(...)           (used by the local dev enclave)

COSE_Sign1 = [protected: bstr, unprotected: map, payload: bstr, signature: bstr]
"""

from collections.abc import Mapping
from dataclasses import dataclass
from io import BytesIO
from typing import Dict, List, Optional

import cbor2

from enclave_client.common.errors import DecodeError
from enclave_client.common.utils import b64d, b64e

COSE_SIGN1_TAG = 18
SIGNATURE1_CONTEXT = "Signature1"


@dataclass(frozen=True)
class Sign1Envelope:
    protected: bytes
    payload: bytes
    signature: bytes


@dataclass(frozen=True)
class AttestationDocument:
    module_id: str
    timestamp: int
    digest: str
    pcrs: Dict[int, bytes]
    certificate: bytes
    cabundle: List[bytes]
    public_key: Optional[bytes] = None
    user_data: Optional[bytes] = None
    nonce: Optional[bytes] = None


# ---------------------------------------------------------
# CBOR primitives
# ---------------------------------------------------------

def _loads(data: bytes, what: str):
    """Decode exactly one CBOR item; trailing bytes are an error."""
    fp = BytesIO(data)
    try:
        value = cbor2.CBORDecoder(fp).decode()
    except (cbor2.CBORDecodeError, ValueError, TypeError) as e:
        raise DecodeError(f"invalid CBOR in {what}: {e}") from e
    if fp.tell() != len(data):
        raise DecodeError(f"{len(data) - fp.tell()} trailing bytes after CBOR {what}")
    return value


def _expect_bytes(value, what: str) -> bytes:
    if not isinstance(value, bytes):
        raise DecodeError(f"{what} must be a byte string, got {type(value).__name__}")
    return value


def _expect_text(value, what: str) -> str:
    if not isinstance(value, str):
        raise DecodeError(f"{what} must be a text string, got {type(value).__name__}")
    return value


def _expect_uint(value, what: str) -> int:
    # bool is an int subclass; CBOR true/false is never an integer here
    if isinstance(value, bool) or not isinstance(value, int):
        raise DecodeError(f"{what} must be an unsigned integer, got {type(value).__name__}")
    if value < 0:
        raise DecodeError(f"{what} must be non-negative, got {value}")
    return value


# ---------------------------------------------------------
# Envelope
# ---------------------------------------------------------

def decode_envelope(document_b64: str) -> Sign1Envelope:
    """
    Base64 → CBOR → 4-element COSE_Sign1.
    The unprotected header map is read for shape only and then dropped.
    """
    if not document_b64:
        raise DecodeError("attestation document is empty")

    value = _loads(b64d(document_b64), "envelope")

    # tag 18 = COSE_Sign1, some producers send it bare
    if isinstance(value, cbor2.CBORTag):
        if value.tag != COSE_SIGN1_TAG:
            raise DecodeError(f"unexpected CBOR tag {value.tag}")
        value = value.value

    # arrays inside a tag may decode as tuples
    if not isinstance(value, (list, tuple)):
        raise DecodeError(f"COSE_Sign1 must be an array, got {type(value).__name__}")
    if len(value) != 4:
        raise DecodeError(f"COSE_Sign1 must have 4 elements, got {len(value)}")

    protected, unprotected, payload, signature = value

    if not isinstance(unprotected, Mapping):
        raise DecodeError("unprotected header must be a map")

    return Sign1Envelope(
        protected=_expect_bytes(protected, "protected header"),
        payload=_expect_bytes(payload, "payload"),
        signature=_expect_bytes(signature, "signature"),
    )


# ---------------------------------------------------------
# Attestation document
# ---------------------------------------------------------

def _decode_pcrs(value) -> Dict[int, bytes]:
    if not isinstance(value, dict):
        raise DecodeError("pcrs must be a map")
    pcrs: Dict[int, bytes] = {}
    for index, measurement in value.items():
        index = _expect_uint(index, "PCR index")
        pcrs[index] = _expect_bytes(measurement, f"PCR{index}")
    return pcrs


def _decode_cabundle(value) -> List[bytes]:
    if not isinstance(value, (list, tuple)):
        raise DecodeError("cabundle must be an array")
    return [_expect_bytes(cert, f"cabundle[{i}]") for i, cert in enumerate(value)]


_REQUIRED = ("module_id", "timestamp", "digest", "pcrs", "certificate", "cabundle")


def decode_document(payload: bytes) -> AttestationDocument:
    """
    Decode the payload map. Unknown keys are ignored; a present optional key
    with the wrong type is an error, not "absent".
    """
    value = _loads(payload, "payload")
    if not isinstance(value, dict):
        raise DecodeError("attestation document must be a map")

    fields = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise DecodeError(f"attestation document key must be text, got {type(key).__name__}")

        if key in ("module_id", "digest"):
            fields[key] = _expect_text(item, key)
        elif key == "timestamp":
            fields[key] = _expect_uint(item, key)
        elif key == "pcrs":
            fields[key] = _decode_pcrs(item)
        elif key == "certificate":
            fields[key] = _expect_bytes(item, key)
        elif key == "cabundle":
            fields[key] = _decode_cabundle(item)
        elif key in ("public_key", "user_data", "nonce"):
            # null is how the platform writes "not present"
            fields[key] = None if item is None else _expect_bytes(item, key)

    missing = [k for k in _REQUIRED if k not in fields]
    if missing:
        raise DecodeError(f"attestation document missing {', '.join(missing)}")

    return AttestationDocument(**fields)


# ---------------------------------------------------------
# Canonical encodings
# ---------------------------------------------------------

def sig_structure(protected: bytes, payload: bytes) -> bytes:
    """["Signature1", protected, external_aad = b"", payload] as CBOR."""
    return cbor2.dumps([SIGNATURE1_CONTEXT, protected, b"", payload])


def encode_document(doc: AttestationDocument) -> bytes:
    body = {
        "module_id": doc.module_id,
        "timestamp": doc.timestamp,
        "digest": doc.digest,
        "pcrs": dict(doc.pcrs),
        "certificate": doc.certificate,
        "cabundle": list(doc.cabundle),
        "public_key": doc.public_key,
        "user_data": doc.user_data,
        "nonce": doc.nonce,
    }
    return cbor2.dumps(body)


def encode_envelope(protected: bytes, payload: bytes, signature: bytes,
                    tagged: bool = False) -> str:
    """Inverse of decode_envelope, returns base64."""
    sign1 = [protected, {}, payload, signature]
    if tagged:
        sign1 = cbor2.CBORTag(COSE_SIGN1_TAG, sign1)
    return b64e(cbor2.dumps(sign1))
