"""
Build EC certificate chains shaped like the platform's attestation chain
(root → intermediates → enclave leaf), using cryptography.

Used by the local dev enclave and the tests. Nothing here is trusted by the
verifier unless its root is passed in explicitly.
"""

import datetime
from dataclasses import dataclass
from typing import List, Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID


@dataclass
class IssuedCert:
    key: ec.EllipticCurvePrivateKey
    cert: x509.Certificate

    @property
    def der(self) -> bytes:
        return self.cert.public_bytes(serialization.Encoding.DER)

    def private_der(self) -> bytes:
        return self.key.private_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )


def make_name(cn: str, org: str = "Amazon") -> x509.Name:
    return x509.Name(
        [
            x509.NameAttribute(NameOID.COUNTRY_NAME, "US"),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, org),
            x509.NameAttribute(NameOID.ORGANIZATIONAL_UNIT_NAME, "AWS"),
            x509.NameAttribute(NameOID.COMMON_NAME, cn),
        ]
    )


def generate_root_ca(
    cn: str = "dev.nitro-enclaves",
    curve: Optional[ec.EllipticCurve] = None,
    days: int = 3650,
) -> IssuedCert:
    """
    Generate a self-signed root CA (P-384 / SHA-384 by default).
    """
    key = ec.generate_private_key(curve or ec.SECP384R1())
    subject = issuer = make_name(cn)
    now = datetime.datetime.now(datetime.timezone.utc)

    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=days))
        .add_extension(
            x509.BasicConstraints(ca=True, path_length=None),
            critical=True,
        )
        .sign(key, hashes.SHA384())
    )
    return IssuedCert(key, cert)


def issue_certificate(
    issuer: IssuedCert,
    cn: str,
    ca: bool = True,
    curve: Optional[ec.EllipticCurve] = None,
    hash_algorithm: Optional[hashes.HashAlgorithm] = None,
    not_before: Optional[datetime.datetime] = None,
    not_after: Optional[datetime.datetime] = None,
    issuer_name: Optional[x509.Name] = None,
) -> IssuedCert:
    """
    Issue a certificate signed by `issuer`.
    `issuer_name` overrides the issuer field without changing the signing key,
    which is how a broken issuer/subject link is produced in tests.
    """
    key = ec.generate_private_key(curve or ec.SECP384R1())
    now = datetime.datetime.now(datetime.timezone.utc)

    cert = (
        x509.CertificateBuilder()
        .subject_name(make_name(cn))
        .issuer_name(issuer_name or issuer.cert.subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before or now - datetime.timedelta(days=1))
        .not_valid_after(not_after or now + datetime.timedelta(days=30))
        .add_extension(
            x509.BasicConstraints(ca=ca, path_length=None),
            critical=True,
        )
        .sign(issuer.key, hash_algorithm or hashes.SHA384())
    )
    return IssuedCert(key, cert)


@dataclass
class DevChain:
    root: IssuedCert
    intermediates: List[IssuedCert]
    leaf: IssuedCert

    @property
    def cabundle(self) -> List[bytes]:
        return [self.root.der] + [c.der for c in self.intermediates]


def build_chain(depth: int = 2) -> DevChain:
    """
    root → `depth` intermediates (regional, zonal, ...) → leaf, all P-384.
    """
    root = generate_root_ca()
    intermediates = []
    issuer = root
    for i in range(depth):
        issuer = issue_certificate(issuer, f"ca-{i}.dev.nitro-enclaves")
        intermediates.append(issuer)
    leaf = issue_certificate(issuer, "i-0000000000000000-enc0000000000000000", ca=False)
    return DevChain(root, intermediates, leaf)
