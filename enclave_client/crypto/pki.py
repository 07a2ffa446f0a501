"""
X.509 validation: pinned root, issuer/subject linkage, per-link ECDSA, validity window.

This module is responsible for:
- The pinned AWS Nitro Enclaves root certificate (DER)
- Loading certificates from the attestation document (DER)
- Pulling the raw EC point out of a certificate's SubjectPublicKeyInfo
  by walking the DER structure (never by guessing offsets)
- Verifying that every certificate is signed by the one before it
- Checking the validity window (not before / not after)
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Tuple

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import SignatureAlgorithmOID

from enclave_client.common.errors import CertificateChainError
from enclave_client.common.utils import sha256_hex

logger = logging.getLogger(__name__)


# ---------------------------------------------------------
# Pinned root
# ---------------------------------------------------------

# AWS_NitroEnclaves_Root-G1, valid 2019-10-28 to 2049-10-28.
# Pinned at build time. Tests pass an alternate root to AttestationVerifier.
NITRO_ROOT_CERT_DER: bytes = bytes.fromhex(
    "3082021130820196a003020102021100f93175681b90afe11d46ccb4e4e7f856"
    "300a06082a8648ce3d0403033049310b3009060355040613025553310f300d06"
    "0355040a0c06416d617a6f6e310c300a060355040b0c03415753311b30190603"
    "5504030c126177732e6e6974726f2d656e636c61766573301e170d3139313032"
    "383133323830355a170d3439313032383134323830355a3049310b3009060355"
    "040613025553310f300d060355040a0c06416d617a6f6e310c300a060355040b"
    "0c03415753311b301906035504030c126177732e6e6974726f2d656e636c6176"
    "65733076301006072a8648ce3d020106052b8104002203620004fc0254eba608"
    "c1f36870e29ada90be46383292736e894bfff672d989444b5051e534a4b1f6db"
    "e3c0bc581a32b7b176070ede12d69a3fea211b66e752cf7dd1dd095f6f1370f4"
    "170843d9dc100121e4cf63012809664487c9796284304dc53ff4a3423040300f"
    "0603551d130101ff040530030101ff301d0603551d0e041604149025b50dd905"
    "47e796c396fa729dcf99a9df4b96300e0603551d0f0101ff040403020186300a"
    "06082a8648ce3d0403030369003066023100a37f2f91a1c9bd5ee7b8627c1698"
    "d255038e1f0343f95b63a9628c3d39809545a11ebcbf2e3b55d8aeee71b4c3d6"
    "adf3023100a2f39b1605b27028a5dd4ba069b5016e65b4fbde8fe0061d6a5319"
    "7f9cdaf5d943bc61fc2beb03cb6fee8d2302f3dff6"
)

NITRO_ROOT_CERT_SHA256 = "641a0321a3e244efe456463195d606317ed7cdcc3c1756e09893f3c68f79bb5b"


def root_fingerprint(root_der: bytes = NITRO_ROOT_CERT_DER) -> str:
    return sha256_hex(root_der)


# ---------------------------------------------------------
# Minimal DER walk
# ---------------------------------------------------------

TAG_SEQUENCE = 0x30
TAG_BIT_STRING = 0x03
TAG_EXPLICIT_0 = 0xA0

# uncompressed point length -> curve
EC_POINT_CURVES = {
    65: ec.SECP256R1,
    97: ec.SECP384R1,
}


class _DerError(ValueError):
    pass


def _read_tlv(data: bytes, offset: int, end: int) -> Tuple[int, int, int]:
    """
    Read one definite-length TLV at `offset`.
    Returns (tag, value_start, value_end).
    """
    if offset + 2 > end:
        raise _DerError("truncated TLV header")

    tag = data[offset]
    first = data[offset + 1]
    pos = offset + 2

    if first < 0x80:
        length = first
    else:
        n = first & 0x7F
        if n == 0 or n > 4:
            raise _DerError("indefinite or oversized length")
        if pos + n > end:
            raise _DerError("truncated length")
        length = int.from_bytes(data[pos:pos + n], "big")
        if length < 0x80 or (n > 1 and length < 1 << (8 * (n - 1))):
            raise _DerError("non-minimal length encoding")
        pos += n

    if pos + length > end:
        raise _DerError("value runs past enclosing structure")

    return tag, pos, pos + length


def _children(data: bytes, start: int, end: int) -> List[Tuple[int, int, int]]:
    items = []
    offset = start
    while offset < end:
        tag, vstart, vend = _read_tlv(data, offset, end)
        items.append((tag, vstart, vend))
        offset = vend
    return items


def _expect(item: Tuple[int, int, int], tag: int, what: str) -> Tuple[int, int]:
    if item[0] != tag:
        raise _DerError(f"{what}: expected tag 0x{tag:02x}, got 0x{item[0]:02x}")
    return item[1], item[2]


def extract_ec_point(cert_der: bytes) -> bytes:
    """
    Return the uncompressed EC point (0x04 || X || Y) from the certificate's
    SubjectPublicKeyInfo.

    Certificate  ::= SEQUENCE { tbsCertificate, signatureAlgorithm, signature }
    TBSCertificate ::= SEQUENCE { [0] version OPTIONAL, serialNumber, signature,
                                  issuer, validity, subject, subjectPublicKeyInfo, ... }
    SubjectPublicKeyInfo ::= SEQUENCE { algorithm, subjectPublicKey BIT STRING }

    Raises ValueError on anything unexpected.
    """
    tag, start, end = _read_tlv(cert_der, 0, len(cert_der))
    if tag != TAG_SEQUENCE or end != len(cert_der):
        raise _DerError("certificate is not a single SEQUENCE")

    cert_items = _children(cert_der, start, end)
    if len(cert_items) != 3:
        raise _DerError("certificate must have 3 elements")
    tbs_start, tbs_end = _expect(cert_items[0], TAG_SEQUENCE, "tbsCertificate")

    tbs_items = _children(cert_der, tbs_start, tbs_end)
    if tbs_items and tbs_items[0][0] == TAG_EXPLICIT_0:
        tbs_items = tbs_items[1:]
    # serial, signature, issuer, validity, subject, spki
    if len(tbs_items) < 6:
        raise _DerError("tbsCertificate too short")
    spki_start, spki_end = _expect(tbs_items[5], TAG_SEQUENCE, "subjectPublicKeyInfo")

    spki_items = _children(cert_der, spki_start, spki_end)
    if len(spki_items) != 2:
        raise _DerError("subjectPublicKeyInfo must have 2 elements")
    _expect(spki_items[0], TAG_SEQUENCE, "algorithm")
    bits_start, bits_end = _expect(spki_items[1], TAG_BIT_STRING, "subjectPublicKey")

    if bits_end - bits_start < 1 or cert_der[bits_start] != 0:
        raise _DerError("subjectPublicKey has unused bits")
    point = cert_der[bits_start + 1:bits_end]

    if len(point) not in EC_POINT_CURVES or point[0] != 0x04:
        raise _DerError(f"not an uncompressed P-256/P-384 point ({len(point)} bytes)")
    return point


def ec_public_key_from_point(point: bytes) -> ec.EllipticCurvePublicKey:
    curve = EC_POINT_CURVES.get(len(point))
    if curve is None:
        raise ValueError(f"unsupported EC point length {len(point)}")
    return ec.EllipticCurvePublicKey.from_encoded_point(curve(), point)


# ---------------------------------------------------------
# Certificate Loading
# ---------------------------------------------------------

def load_der_certificate(der: bytes, index: int) -> x509.Certificate:
    try:
        return x509.load_der_x509_certificate(der)
    except ValueError as e:
        raise CertificateChainError(f"failed to parse: {e}", index) from e


# ---------------------------------------------------------
# Validity Window (timezone-aware)
# ---------------------------------------------------------

def verify_validity_window(cert: x509.Certificate, now: Optional[datetime] = None) -> bool:
    """Check that the certificate is valid at `now` (UTC)."""
    if now is None:
        now = datetime.now(timezone.utc)
    return cert.not_valid_before_utc <= now <= cert.not_valid_after_utc


# ---------------------------------------------------------
# Issuer Signature Verification
# ---------------------------------------------------------

# signature algorithms the platform uses for its CA chain
SIGNATURE_HASHES = {
    SignatureAlgorithmOID.ECDSA_WITH_SHA256: hashes.SHA256,
    SignatureAlgorithmOID.ECDSA_WITH_SHA384: hashes.SHA384,
}


def verify_signed_by(cert: x509.Certificate, issuer: x509.Certificate,
                     issuer_der: bytes, index: int) -> None:
    """
    Check that `cert` names `issuer` as its issuer and carries a signature
    that verifies under the issuer's EC point.
    The name check runs first; a valid signature does not excuse a broken link.
    """
    if cert.issuer != issuer.subject:
        raise CertificateChainError(
            f"issuer {cert.issuer.rfc4514_string()!r} does not match "
            f"subject {issuer.subject.rfc4514_string()!r}",
            index,
        )

    hash_cls = SIGNATURE_HASHES.get(cert.signature_algorithm_oid)
    if hash_cls is None:
        raise CertificateChainError(
            f"unsupported signature algorithm {cert.signature_algorithm_oid.dotted_string}",
            index,
        )

    try:
        issuer_key = ec_public_key_from_point(extract_ec_point(issuer_der))
    except ValueError as e:
        raise CertificateChainError(f"issuer public key unusable: {e}", index) from e

    try:
        issuer_key.verify(cert.signature, cert.tbs_certificate_bytes, ec.ECDSA(hash_cls()))
    except InvalidSignature as e:
        raise CertificateChainError("signature does not verify under issuer key", index) from e


# ---------------------------------------------------------
# Main Validation Entry Point
# ---------------------------------------------------------

def validate_certificate_chain(
    certificate: bytes,
    cabundle: Sequence[bytes],
    root_der: bytes = NITRO_ROOT_CERT_DER,
    now: Optional[datetime] = None,
) -> List[x509.Certificate]:
    """
    Validate leaf + bundle against the pinned root:
    - cabundle[0] must be byte-identical to the pinned root
    - every certificate must parse and be inside its validity window
    - cabundle[i] is issued and signed by cabundle[i-1]
    - the leaf is issued and signed by cabundle[-1]

    Returns the parsed chain [root, ..., leaf]. Errors carry the failing index;
    the leaf is index len(cabundle).
    """
    if not cabundle:
        raise CertificateChainError("certificate bundle is empty")

    if cabundle[0] != root_der:
        raise CertificateChainError("bundle root does not match pinned root certificate", 0)

    ders = list(cabundle) + [certificate]
    if now is None:
        now = datetime.now(timezone.utc)

    chain = []
    for i, der in enumerate(ders):
        cert = load_der_certificate(der, i)
        if not verify_validity_window(cert, now):
            raise CertificateChainError(
                f"outside validity window ({cert.not_valid_before_utc} - {cert.not_valid_after_utc})",
                i,
            )
        chain.append(cert)

    for i in range(1, len(chain)):
        verify_signed_by(chain[i], chain[i - 1], ders[i - 1], i)

    logger.debug("[PKI] chain of %d certificates verified to pinned root", len(chain))
    return chain
