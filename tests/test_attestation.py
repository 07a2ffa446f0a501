import dataclasses

import pytest

from enclave_client.attestation import (
    AttestationVerifier,
    summarize_document,
    verify_pcrs,
)
from enclave_client.common.errors import (
    AttestationVerificationFailed,
    CertificateChainError,
    DecodeError,
    NonceMismatchError,
    PcrMismatchError,
    PcrMissingError,
    SignatureVerificationError,
)
from enclave_client.crypto.certs import build_chain
from enclave_client.crypto.cose import decode_envelope, encode_document, encode_envelope
from enclave_client.crypto.pki import NITRO_ROOT_CERT_SHA256
from enclave_client.pcr import PcrConfig
from enclave_client.server import MockEnclave, default_pcrs


def _verifier(enclave, **kwargs):
    return AttestationVerifier(root_cert_der=enclave.root_der, **kwargs)


class TestVerify:

    def test_fields_match_what_was_attested(self, enclave, fixed_nonce):
        document = enclave.fetch_attestation(fixed_nonce)
        doc = _verifier(enclave).verify(document, fixed_nonce)

        assert doc.module_id == enclave.module_id
        assert doc.digest == "SHA384"
        assert doc.pcrs == default_pcrs()
        assert doc.public_key == enclave.exchange_public_key
        assert doc.nonce == fixed_nonce.encode()
        assert doc.cabundle == enclave.chain.cabundle
        assert doc.certificate == enclave.chain.leaf.der

    def test_tagged_envelope(self, dev_chain, fixed_nonce):
        enclave = MockEnclave(chain=dev_chain, tagged=True)
        doc = _verifier(enclave).verify(enclave.fetch_attestation(fixed_nonce), fixed_nonce)
        assert doc.nonce == fixed_nonce.encode()

    def test_pinned_root_rejects_dev_chain(self, enclave, fixed_nonce):
        with pytest.raises(CertificateChainError) as exc:
            AttestationVerifier().verify(enclave.fetch_attestation(fixed_nonce), fixed_nonce)
        assert exc.value.index == 0

    def test_nonce_mismatch(self, dev_chain, fixed_nonce):
        enclave = MockEnclave(chain=dev_chain, nonce_override="someone-elses-nonce")
        with pytest.raises(NonceMismatchError) as exc:
            _verifier(enclave).verify(enclave.fetch_attestation(fixed_nonce), fixed_nonce)
        assert exc.value.stage == "nonce"

    def test_nonce_absent(self, enclave, fixed_nonce):
        document = enclave.attest(enclave.build_document(None))
        with pytest.raises(NonceMismatchError, match="missing"):
            _verifier(enclave).verify(document, fixed_nonce)

    def test_nonce_not_utf8(self, enclave, fixed_nonce):
        doc = dataclasses.replace(enclave.build_document(fixed_nonce), nonce=b"\xff\xfe")
        with pytest.raises(NonceMismatchError):
            _verifier(enclave).verify(enclave.attest(doc), fixed_nonce)

    def test_tampered_payload(self, enclave, fixed_nonce):
        other = MockEnclave(chain=enclave.chain, user_data=b"injected")
        good = enclave.fetch_attestation(fixed_nonce)
        forged_doc = other.build_document(fixed_nonce)

        env = decode_envelope(good)
        forged = encode_envelope(env.protected, encode_document(forged_doc), env.signature)
        with pytest.raises(SignatureVerificationError):
            _verifier(enclave).verify(forged, fixed_nonce)

    def test_garbage_is_decode_error(self, enclave, fixed_nonce):
        with pytest.raises(DecodeError):
            _verifier(enclave).verify("AAAA", fixed_nonce)


class TestMockAttestation:

    def test_mock_prefix_with_mock_mode_skips_crypto(self, fixed_nonce):
        enclave = MockEnclave(chain=build_chain(depth=1), module_id="mock-enclave")
        doc = AttestationVerifier(mock=True).verify(
            enclave.fetch_attestation(fixed_nonce), fixed_nonce
        )
        assert doc.module_id == "mock-enclave"

    def test_mock_prefix_alone_skips_nothing(self, dev_chain, fixed_nonce):
        enclave = MockEnclave(chain=dev_chain, module_id="mock-enclave")
        with pytest.raises(CertificateChainError):
            AttestationVerifier(mock=False).verify(
                enclave.fetch_attestation(fixed_nonce), fixed_nonce
            )

    def test_mock_mode_without_prefix_skips_nothing(self, enclave, fixed_nonce):
        with pytest.raises(CertificateChainError):
            AttestationVerifier(mock=True).verify(
                enclave.fetch_attestation(fixed_nonce), fixed_nonce
            )

    def test_mock_still_checks_nonce(self, dev_chain, fixed_nonce):
        enclave = MockEnclave(chain=dev_chain, module_id="mock-enclave", nonce_override="stale")
        with pytest.raises(NonceMismatchError):
            AttestationVerifier(mock=True).verify(
                enclave.fetch_attestation(fixed_nonce), fixed_nonce
            )


class TestPcrs:

    def test_expected_pcrs_match(self, enclave, fixed_nonce):
        expected = {0: default_pcrs()[0], 2: default_pcrs()[2]}
        doc = _verifier(enclave, expected_pcrs=expected).verify(
            enclave.fetch_attestation(fixed_nonce), fixed_nonce
        )
        assert doc.pcrs[0] == expected[0]

    def test_mismatch(self, enclave, fixed_nonce):
        expected = {0: default_pcrs()[0], 1: b"\x00" * 48}
        with pytest.raises(PcrMismatchError, match="PCR1 mismatch") as exc:
            _verifier(enclave, expected_pcrs=expected).verify(
                enclave.fetch_attestation(fixed_nonce), fixed_nonce
            )
        assert exc.value.index == 1
        assert exc.value.stage == "measurement"

    def test_missing(self, enclave, fixed_nonce):
        with pytest.raises(PcrMissingError, match="PCR8 missing"):
            _verifier(enclave, expected_pcrs={8: b"\x00" * 48}).verify(
                enclave.fetch_attestation(fixed_nonce), fixed_nonce
            )

    def test_lowest_index_reported_first(self, enclave, fixed_nonce):
        doc = enclave.build_document(fixed_nonce)
        with pytest.raises(AttestationVerificationFailed) as exc:
            verify_pcrs(doc, {9: b"\x00", 1: b"\x00"})
        assert isinstance(exc.value, PcrMismatchError)
        assert exc.value.index == 1


def test_summarize_document(enclave, fixed_nonce):
    enclave.user_data = b"hello"
    doc = _verifier(enclave).verify(enclave.fetch_attestation(fixed_nonce), fixed_nonce)
    summary = summarize_document(doc)

    assert summary["module_id"] == enclave.module_id
    assert set(summary["pcrs"]) == {0, 1, 2}
    assert summary["pcrs"][0] == "ab" * 48
    assert summary["public_key"] == enclave.exchange_public_key.hex()
    assert summary["user_data"] == "hello"
    assert summary["nonce"] == fixed_nonce
    assert [c["is_root"] for c in summary["certificates"]] == [True, False, False, False]
    assert summary["root_cert_sha256"] != NITRO_ROOT_CERT_SHA256
    assert summary["validated_pcr0"] == {
        "is_match": False,
        "text": "PCR0 does not match a known good value",
    }


def test_summarize_document_allowlisted_pcr0(enclave, fixed_nonce):
    doc = _verifier(enclave).verify(enclave.fetch_attestation(fixed_nonce), fixed_nonce)
    config = PcrConfig(pcr0_values=[default_pcrs()[0].hex()])

    summary = summarize_document(doc, pcr_config=config)

    assert summary["validated_pcr0"] == {
        "is_match": True,
        "text": "PCR0 matches a known good value",
    }
