"""
HTTP collaborator for the enclave backend (requests).

- fetch_attestation(nonce)        GET  {base}/attestation/{nonce}
- key_exchange(pub_b64, nonce)    POST {base}/key_exchange
- health_check()                  GET  {base}/health-check
- encrypted_request(...)          any encrypted JSON call after the handshake
"""

import logging
import os
from typing import Any, Dict, Optional

import requests
from pydantic import ValidationError

from enclave_client.common.errors import ApiError, SessionError
from enclave_client.common.protocol import (
    AttestationResponse,
    EncryptedBody,
    KeyExchangeRequest,
    KeyExchangeResponse,
)
from enclave_client.crypto.aead import decrypt_json, encrypt_json
from enclave_client.storage.session import SessionStore

logger = logging.getLogger(__name__)

HTTP_TIMEOUT = float(os.getenv("ENCLAVE_HTTP_TIMEOUT", 30))

SESSION_HEADER = "x-session-id"


class HttpTransport:

    def __init__(self, base_url: str, timeout: Optional[float] = None,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = HTTP_TIMEOUT if timeout is None else timeout
        self.http = session or requests.Session()

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            response = self.http.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise ApiError(0, f"request to {url} failed: {e}") from e

        if not response.ok:
            message = response.text or "Unknown error"
            raise ApiError(response.status_code, message)
        return response

    def _json(self, response: requests.Response, model):
        try:
            return model.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise ApiError(response.status_code, f"invalid response body: {e}") from e

    # ------------------------------------------------------
    # Handshake calls
    # ------------------------------------------------------

    def fetch_attestation(self, nonce: str) -> str:
        response = self._request("GET", f"/attestation/{nonce}")
        return self._json(response, AttestationResponse).attestation_document

    def key_exchange(self, client_public_key: str, nonce: str,
                     access_token: Optional[str] = None) -> KeyExchangeResponse:
        headers = {"Content-Type": "application/json"}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"

        body = KeyExchangeRequest(client_public_key=client_public_key, nonce=nonce)
        response = self._request("POST", "/key_exchange", json=body.model_dump(), headers=headers)
        return self._json(response, KeyExchangeResponse)

    def health_check(self) -> str:
        return self._request("GET", "/health-check").text

    # ------------------------------------------------------
    # Encrypted calls
    # ------------------------------------------------------

    def encrypted_request(self, method: str, path: str, payload: Any,
                          store: SessionStore) -> Any:
        """
        Seal `payload` under the current session key, send it with the
        session id (and bearer token, if held), and open the reply.
        """
        state = store.get_session()
        if state is None:
            raise SessionError("no session established")

        headers: Dict[str, str] = {
            "Content-Type": "application/json",
            SESSION_HEADER: str(state.session_id),
        }
        token = store.get_access_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"

        body = None
        if payload is not None:
            body = EncryptedBody(encrypted=encrypt_json(state.session_key, payload)).model_dump()

        response = self._request(method, path, json=body, headers=headers)
        reply = self._json(response, EncryptedBody)
        return decrypt_json(state.session_key, reply.encrypted)
