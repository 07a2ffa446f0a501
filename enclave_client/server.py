"""
LOCAL DEV ENCLAVE: in-process stand-in for the attested backend.

Serves the same two calls as HttpTransport (fetch_attestation, key_exchange),
with a real certificate chain, a real COSE_Sign1 signature and a real X25519
exchange key, so the client runs every verification stage against it.
Fault switches let tests break one thing at a time.
"""

import logging
import uuid
from typing import Dict, Mapping, Optional

import cbor2
from Crypto.PublicKey import ECC
from Crypto.Random import get_random_bytes

from enclave_client.common.errors import ApiError
from enclave_client.common.protocol import KeyExchangeResponse
from enclave_client.common.utils import b64d, b64e, now_ms
from enclave_client.crypto.aead import seal
from enclave_client.crypto.certs import DevChain, build_chain
from enclave_client.crypto.cose import AttestationDocument, encode_document, encode_envelope
from enclave_client.crypto.dh import dh_compute_public, dh_compute_shared, dh_generate_private
from enclave_client.crypto.sign import sign_document

logger = logging.getLogger(__name__)

COSE_ALG_ES384 = -35
PCR_SIZE = 48


def default_pcrs() -> Dict[int, bytes]:
    return {
        0: bytes.fromhex("ab" * PCR_SIZE),
        1: bytes.fromhex("cd" * PCR_SIZE),
        2: bytes.fromhex("ef" * PCR_SIZE),
        3: bytes(PCR_SIZE),
    }


class MockEnclave:

    def __init__(
        self,
        chain: Optional[DevChain] = None,
        module_id: str = "i-0000000000000000-enc0000000000000000",
        pcrs: Optional[Mapping[int, bytes]] = None,
        user_data: Optional[bytes] = None,
        include_public_key: bool = True,
        nonce_override: Optional[str] = None,
        session_key_size: int = 32,
        tagged: bool = False,
    ):
        self.chain = chain or build_chain()
        self.module_id = module_id
        self.pcrs = dict(pcrs) if pcrs is not None else default_pcrs()
        self.user_data = user_data
        self.include_public_key = include_public_key
        self.nonce_override = nonce_override
        self.session_key_size = session_key_size
        self.tagged = tagged

        self.fail_fetch: Optional[ApiError] = None
        self.fail_key_exchange: Optional[ApiError] = None

        self._exchange_key = dh_generate_private()
        self._signing_key = ECC.import_key(self.chain.leaf.private_der())
        self._issued_nonces = set()
        self.sessions: Dict[str, bytes] = {}
        self.last_access_token: Optional[str] = None

    @property
    def root_der(self) -> bytes:
        return self.chain.root.der

    @property
    def exchange_public_key(self) -> bytes:
        return dh_compute_public(self._exchange_key)

    # ------------------------------------------------------
    # Attestation
    # ------------------------------------------------------

    def build_document(self, nonce: Optional[str]) -> AttestationDocument:
        return AttestationDocument(
            module_id=self.module_id,
            timestamp=now_ms(),
            digest="SHA384",
            pcrs=self.pcrs,
            certificate=self.chain.leaf.der,
            cabundle=self.chain.cabundle,
            public_key=self.exchange_public_key if self.include_public_key else None,
            user_data=self.user_data,
            nonce=nonce.encode() if nonce is not None else None,
        )

    def attest(self, doc: AttestationDocument) -> str:
        protected = cbor2.dumps({1: COSE_ALG_ES384})
        payload = encode_document(doc)
        signature = sign_document(self._signing_key, protected, payload)
        return encode_envelope(protected, payload, signature, tagged=self.tagged)

    def fetch_attestation(self, nonce: str) -> str:
        if self.fail_fetch is not None:
            raise self.fail_fetch
        self._issued_nonces.add(nonce)
        doc_nonce = self.nonce_override if self.nonce_override is not None else nonce
        logger.debug("[ENCLAVE] attesting for nonce %s", nonce)
        return self.attest(self.build_document(doc_nonce))

    # ------------------------------------------------------
    # Key exchange
    # ------------------------------------------------------

    def key_exchange(self, client_public_key: str, nonce: str,
                     access_token: Optional[str] = None) -> KeyExchangeResponse:
        if self.fail_key_exchange is not None:
            raise self.fail_key_exchange
        if nonce not in self._issued_nonces:
            raise ApiError(400, "unknown nonce")
        self._issued_nonces.discard(nonce)
        self.last_access_token = access_token

        shared = dh_compute_shared(self._exchange_key, b64d(client_public_key))
        session_key = get_random_bytes(self.session_key_size)
        session_id = str(uuid.uuid4())
        self.sessions[session_id] = session_key

        return KeyExchangeResponse(
            encrypted_session_key=b64e(seal(shared, session_key)),
            session_id=session_id,
        )
