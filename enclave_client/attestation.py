"""
Attestation document verification.

VERIFICATION ORDER (one shot per nonce, no retries):
1. Decode COSE_Sign1 + document payload
2. Nonce must be present and equal the nonce we generated
3. Certificate chain to the pinned root
4. COSE signature under the leaf certificate's key
5. Expected PCRs, when configured

Any failing stage raises; there is no partial result.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from cryptography import x509

from enclave_client.common.errors import (
    NonceMismatchError,
    PcrMismatchError,
    PcrMissingError,
)
from enclave_client.common.utils import sha256_hex
from enclave_client.crypto.cose import AttestationDocument, decode_document, decode_envelope
from enclave_client.crypto.pki import NITRO_ROOT_CERT_DER, validate_certificate_chain
from enclave_client.crypto.sign import verify_document_signature
from enclave_client.pcr import PcrConfig, validate_document_pcrs

logger = logging.getLogger(__name__)

MOCK_MODULE_PREFIX = "mock-"


class AttestationVerifier:
    """
    `mock` is a client-side decision (e.g. a loopback backend). It only skips
    the chain and signature stages, and only for documents whose module id
    carries the dev prefix; the prefix on its own never skips anything.
    """

    def __init__(
        self,
        expected_pcrs: Optional[Mapping[int, bytes]] = None,
        mock: bool = False,
        root_cert_der: bytes = NITRO_ROOT_CERT_DER,
    ):
        self.expected_pcrs = dict(expected_pcrs) if expected_pcrs else None
        self.mock = mock
        self._root_cert_der = root_cert_der

    def _skip_crypto(self, doc: AttestationDocument) -> bool:
        return self.mock and doc.module_id.startswith(MOCK_MODULE_PREFIX)

    def verify(self, document_b64: str, expected_nonce: str,
               now: Optional[datetime] = None) -> AttestationDocument:
        envelope = decode_envelope(document_b64)
        doc = decode_document(envelope.payload)
        logger.debug("[ATTEST] decoded document from module %s", doc.module_id)

        verify_nonce(doc, expected_nonce)

        if self._skip_crypto(doc):
            logger.warning("[ATTEST] mock attestation: chain and signature NOT verified")
        else:
            validate_certificate_chain(doc.certificate, doc.cabundle, self._root_cert_der, now)
            verify_document_signature(
                envelope.protected, envelope.payload, envelope.signature, doc.certificate
            )

        if self.expected_pcrs:
            verify_pcrs(doc, self.expected_pcrs)

        logger.info("[ATTEST] attestation verified for module %s", doc.module_id)
        return doc


def verify_nonce(doc: AttestationDocument, expected_nonce: str) -> None:
    if doc.nonce is None:
        raise NonceMismatchError("missing nonce in attestation document")
    try:
        nonce = doc.nonce.decode("utf-8")
    except UnicodeDecodeError:
        raise NonceMismatchError("nonce is not valid UTF-8") from None
    if nonce != expected_nonce:
        raise NonceMismatchError("nonce mismatch")


def verify_pcrs(doc: AttestationDocument, expected: Mapping[int, bytes]) -> None:
    for index in sorted(expected):
        actual = doc.pcrs.get(index)
        if actual is None:
            raise PcrMissingError(index)
        if actual != expected[index]:
            raise PcrMismatchError(index)


# ---------------------------------------------------------
# Human-readable view
# ---------------------------------------------------------

def _utf8_or_none(value: Optional[bytes]) -> Optional[str]:
    if value is None:
        return None
    return value.decode("utf-8", errors="replace")


def summarize_document(doc: AttestationDocument,
                       pcr_config: Optional[PcrConfig] = None) -> Dict[str, Any]:
    """
    JSON-friendly summary of an already verified document.
    All-zero PCRs (unused registers) are dropped. `validated_pcr0` is the
    allowlist / signed-history verdict for PCR0.
    """
    pcr0_result = validate_document_pcrs(doc, pcr_config)

    certificates = []
    for i, der in enumerate(list(doc.cabundle) + [doc.certificate]):
        cert = x509.load_der_x509_certificate(der)
        certificates.append({
            "subject": cert.subject.rfc4514_string(),
            "not_before": cert.not_valid_before_utc.isoformat(),
            "not_after": cert.not_valid_after_utc.isoformat(),
            "is_root": i == 0,
        })

    return {
        "module_id": doc.module_id,
        "timestamp": doc.timestamp,
        "digest": doc.digest,
        "pcrs": {
            index: value.hex()
            for index, value in sorted(doc.pcrs.items())
            if any(value)
        },
        "public_key": doc.public_key.hex() if doc.public_key else None,
        "certificates": certificates,
        "root_cert_sha256": sha256_hex(doc.cabundle[0]) if doc.cabundle else None,
        "user_data": _utf8_or_none(doc.user_data),
        "nonce": _utf8_or_none(doc.nonce),
        "validated_pcr0": {"is_match": pcr0_result.is_match, "text": pcr0_result.text},
    }
