"""
ENCLAVE CLIENT: attested handshake + session bootstrap.

establish():
  nonce → attestation → verify → ECDH with the attested key →
  unwrap session key → store {session_id, session_key}

Nothing is written to the session store until every step has succeeded.
"""

import argparse
import logging
import os
import threading
import uuid
from typing import Callable, Mapping, Optional, Protocol

from dotenv import load_dotenv

from enclave_client.attestation import AttestationVerifier
from enclave_client.common.errors import (
    ApiError,
    AttestationFetchError,
    EnclaveClientError,
    HandshakeInProgressError,
    KeyExchangeError,
    KeyExchangeTransportError,
)
from enclave_client.common.protocol import KeyExchangeResponse
from enclave_client.common.utils import b64e, is_loopback_url
from enclave_client.crypto.aead import decrypt_session_key
from enclave_client.crypto.dh import (
    dh_compute_public,
    dh_compute_shared,
    dh_generate_private,
    dh_load_public,
)
from enclave_client.crypto.pki import NITRO_ROOT_CERT_DER
from enclave_client.storage.session import SessionState, SessionStore
from enclave_client.transport import HttpTransport

load_dotenv()

ENCLAVE_API_URL = os.getenv("ENCLAVE_API_URL", "http://127.0.0.1:3000")
ENCLAVE_MOCK_ATTESTATION = os.getenv("ENCLAVE_MOCK_ATTESTATION", "auto").lower()

logger = logging.getLogger(__name__)


class EnclaveTransport(Protocol):
    def fetch_attestation(self, nonce: str) -> str: ...

    def key_exchange(self, client_public_key: str, nonce: str,
                     access_token: Optional[str] = None) -> KeyExchangeResponse: ...


def resolve_mock_mode(base_url: str, setting: str = ENCLAVE_MOCK_ATTESTATION) -> bool:
    """
    Mock attestation is only ever enabled for loopback backends; '0' turns it
    off there too. Other hosts need an explicit mock_attestation=True.
    """
    if setting in ("0", "false", "no"):
        return False
    return is_loopback_url(base_url)


def new_nonce() -> str:
    return str(uuid.uuid4())


class EnclaveClient:

    def __init__(
        self,
        base_url: str = ENCLAVE_API_URL,
        transport: Optional[EnclaveTransport] = None,
        store: Optional[SessionStore] = None,
        mock_attestation: Optional[bool] = None,
        expected_pcrs: Optional[Mapping[int, bytes]] = None,
        root_cert_der: bytes = NITRO_ROOT_CERT_DER,
        nonce_factory: Callable[[], str] = new_nonce,
    ):
        self.base_url = base_url.rstrip("/")
        self.transport = transport or HttpTransport(self.base_url)
        self.store = store or SessionStore()
        if mock_attestation is None:
            mock_attestation = resolve_mock_mode(self.base_url)
        self.verifier = AttestationVerifier(
            expected_pcrs=expected_pcrs,
            mock=mock_attestation,
            root_cert_der=root_cert_der,
        )
        self._nonce_factory = nonce_factory
        self._handshake_lock = threading.Lock()

    @property
    def mock_attestation(self) -> bool:
        return self.verifier.mock

    def establish(self) -> SessionState:
        """
        Run the full attested handshake. A second call while one is in
        flight on this client raises HandshakeInProgressError.
        """
        if not self._handshake_lock.acquire(blocking=False):
            raise HandshakeInProgressError("a handshake is already running on this client")
        try:
            return self._establish()
        finally:
            self._handshake_lock.release()

    def _establish(self) -> SessionState:
        # 1. fresh nonce
        nonce = self._nonce_factory()

        # 2. attestation
        try:
            document_b64 = self.transport.fetch_attestation(nonce)
        except ApiError as e:
            raise AttestationFetchError(f"could not fetch attestation: {e}") from e

        # 3. verify (raises DecodeError / AttestationVerificationFailed)
        doc = self.verifier.verify(document_b64, nonce)

        # 4. attested exchange key
        if doc.public_key is None:
            raise KeyExchangeError("attestation document carries no exchange public key")
        dh_load_public(doc.public_key)

        # 5. local key pair + key exchange call
        private_key = dh_generate_private()
        client_public_b64 = b64e(dh_compute_public(private_key))
        try:
            reply = self.transport.key_exchange(
                client_public_b64, nonce, self.store.get_access_token()
            )
        except ApiError as e:
            raise KeyExchangeTransportError(f"key exchange failed: {e}") from e

        # 6. shared secret against the attested key, never a key from the reply
        shared_secret = dh_compute_shared(private_key, doc.public_key)

        # 7. unwrap exactly 32 bytes
        session_key = decrypt_session_key(shared_secret, reply.encrypted_session_key)
        del shared_secret

        # 8. store atomically
        try:
            session_id = uuid.UUID(reply.session_id)
        except ValueError as e:
            raise KeyExchangeError(f"invalid session id format: {e}") from e

        state = self.store.set_session(session_id, session_key)
        logger.info("[HANDSHAKE] session %s established with module %s", session_id, doc.module_id)
        return state

    def get_session_id(self) -> Optional[uuid.UUID]:
        state = self.store.get_session()
        return state.session_id if state else None

    def logout(self) -> None:
        self.store.clear_all()


def main(argv=None):
    parser = argparse.ArgumentParser(description="Attest an enclave backend and open a session")
    parser.add_argument("--url", default=ENCLAVE_API_URL)
    parser.add_argument("--dev", action="store_true", help="use the in-process dev enclave")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s %(message)s")

    if args.dev:
        from enclave_client.server import MockEnclave

        enclave = MockEnclave()
        client = EnclaveClient(args.url, transport=enclave, mock_attestation=False,
                               root_cert_der=enclave.root_der)
    else:
        client = EnclaveClient(args.url)
    print(f"[CLIENT] Attesting {client.base_url} (mock attestation: {client.mock_attestation})...")

    try:
        state = client.establish()
    except EnclaveClientError as e:
        print(f"[CLIENT] Handshake failed: {e}")
        raise SystemExit(1)

    print(f"[CLIENT] Session established: {state.session_id}")


if __name__ == "__main__":
    main()
