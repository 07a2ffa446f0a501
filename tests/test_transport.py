import json
import uuid

import pytest
import requests

from enclave_client.common.errors import ApiError, SessionError
from enclave_client.crypto.aead import decrypt_json, encrypt_json
from enclave_client.storage.session import SessionStore
from enclave_client.transport import SESSION_HEADER, HttpTransport


class FakeResponse:

    def __init__(self, status_code=200, body=None, text=None):
        self.status_code = status_code
        self._body = body
        self.text = text if text is not None else json.dumps(body)

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._body is None:
            raise ValueError("no JSON body")
        return self._body


class FakeSession:

    def __init__(self, *responses, error=None):
        self.responses = list(responses)
        self.error = error
        self.calls = []

    def request(self, method, url, timeout=None, **kwargs):
        self.calls.append({"method": method, "url": url, "timeout": timeout, **kwargs})
        if self.error is not None:
            raise self.error
        return self.responses.pop(0)


def _transport(*responses, **kwargs):
    http = FakeSession(*responses, **kwargs)
    return HttpTransport("https://enclave.example.com/", timeout=5, session=http), http


class TestHandshakeCalls:

    def test_fetch_attestation(self):
        transport, http = _transport(FakeResponse(body={"attestation_document": "b64doc"}))
        assert transport.fetch_attestation("n-1") == "b64doc"
        assert http.calls[0]["method"] == "GET"
        assert http.calls[0]["url"] == "https://enclave.example.com/attestation/n-1"
        assert http.calls[0]["timeout"] == 5

    def test_key_exchange_with_token(self):
        sid = str(uuid.uuid4())
        body = {"encrypted_session_key": "sealed", "session_id": sid}
        transport, http = _transport(FakeResponse(body=body))

        reply = transport.key_exchange("pub", "n-1", access_token="tok")

        assert reply.session_id == sid
        call = http.calls[0]
        assert call["url"].endswith("/key_exchange")
        assert call["json"] == {"client_public_key": "pub", "nonce": "n-1"}
        assert call["headers"]["Authorization"] == "Bearer tok"

    def test_key_exchange_without_token(self):
        body = {"encrypted_session_key": "sealed", "session_id": str(uuid.uuid4())}
        transport, http = _transport(FakeResponse(body=body))
        transport.key_exchange("pub", "n-1")
        assert "Authorization" not in http.calls[0]["headers"]

    def test_http_error(self):
        transport, _ = _transport(FakeResponse(status_code=502, text="bad gateway"))
        with pytest.raises(ApiError) as exc:
            transport.fetch_attestation("n-1")
        assert exc.value.status == 502
        assert exc.value.message == "bad gateway"

    def test_network_error(self):
        transport, _ = _transport(error=requests.ConnectionError("refused"))
        with pytest.raises(ApiError) as exc:
            transport.fetch_attestation("n-1")
        assert exc.value.status == 0

    def test_invalid_body(self):
        transport, _ = _transport(FakeResponse(body={"unexpected": True}))
        with pytest.raises(ApiError, match="invalid response body"):
            transport.fetch_attestation("n-1")

    def test_health_check(self):
        transport, _ = _transport(FakeResponse(text="OK"))
        assert transport.health_check() == "OK"


class TestEncryptedRequest:

    def test_roundtrip(self):
        store = SessionStore()
        key = bytes(range(32))
        state = store.set_session(uuid.uuid4(), key)
        store.set_tokens("tok")

        transport, http = _transport(FakeResponse(body={"encrypted": encrypt_json(key, {"ok": True})}))
        result = transport.encrypted_request("POST", "/v1/chat", {"q": "hi"}, store)

        assert result == {"ok": True}
        call = http.calls[0]
        assert call["headers"][SESSION_HEADER] == str(state.session_id)
        assert call["headers"]["Authorization"] == "Bearer tok"
        assert decrypt_json(key, call["json"]["encrypted"]) == {"q": "hi"}

    def test_no_body(self):
        store = SessionStore()
        key = bytes(32)
        store.set_session(uuid.uuid4(), key)
        transport, http = _transport(FakeResponse(body={"encrypted": encrypt_json(key, [])}))
        assert transport.encrypted_request("GET", "/v1/items", None, store) == []
        assert http.calls[0]["json"] is None

    def test_requires_session(self):
        transport, http = _transport()
        with pytest.raises(SessionError):
            transport.encrypted_request("GET", "/v1/items", None, SessionStore())
        assert http.calls == []
