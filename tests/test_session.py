import threading
import uuid

import pytest

from enclave_client.common.errors import SessionError
from enclave_client.storage.session import SessionStore


class TestSession:

    def test_set_and_get(self):
        store = SessionStore()
        sid = uuid.uuid4()
        state = store.set_session(sid, b"\x01" * 32)
        assert store.get_session() is state
        assert state.session_id == sid
        assert state.generation == 1

    def test_string_id(self):
        store = SessionStore()
        sid = uuid.uuid4()
        assert store.set_session(str(sid), b"\x01" * 32).session_id == sid

    def test_invalid_id(self):
        with pytest.raises(SessionError):
            SessionStore().set_session("not-a-uuid", b"\x01" * 32)

    def test_invalid_key_leaves_previous_session(self):
        store = SessionStore()
        first = store.set_session(uuid.uuid4(), b"\x01" * 32)
        with pytest.raises(SessionError):
            store.set_session(uuid.uuid4(), b"\x01" * 16)
        assert store.get_session() is first

    def test_repr_hides_key(self):
        state = SessionStore().set_session(uuid.uuid4(), b"\xaa" * 32)
        assert "aa" * 4 not in repr(state)
        assert "session_key" not in repr(state)

    def test_clear(self):
        store = SessionStore()
        store.set_session(uuid.uuid4(), b"\x01" * 32)
        store.clear_session()
        assert store.get_session() is None

    def test_readers_never_see_a_mix(self):
        store = SessionStore()
        expected = {}
        for i in range(8):
            sid = uuid.uuid4()
            expected[sid] = bytes([i]) * 32
        pairs = list(expected.items())
        store.set_session(*pairs[0])
        stop = threading.Event()
        torn = []

        def reader():
            while not stop.is_set():
                state = store.get_session()
                if expected[state.session_id] != state.session_key:
                    torn.append(state)

        def writer():
            for n in range(2000):
                store.set_session(*pairs[n % len(pairs)])

        readers = [threading.Thread(target=reader) for _ in range(4)]
        writers = [threading.Thread(target=writer) for _ in range(2)]
        for t in readers + writers:
            t.start()
        for t in writers:
            t.join()
        stop.set()
        for t in readers:
            t.join()

        assert torn == []
        assert store.generation == 1 + 2 * 2000


class TestTokens:

    def test_tokens(self):
        store = SessionStore()
        store.set_tokens("access", "refresh")
        assert store.get_access_token() == "access"
        assert store.get_refresh_token() == "refresh"

    def test_update_access_token_keeps_refresh(self):
        store = SessionStore()
        store.set_tokens("access", "refresh")
        store.update_access_token("access-2")
        assert store.get_tokens().access_token == "access-2"
        assert store.get_refresh_token() == "refresh"

    def test_update_without_tokens(self):
        with pytest.raises(SessionError):
            SessionStore().update_access_token("access")

    def test_repr_redacts(self):
        store = SessionStore()
        store.set_tokens("secret-access", "secret-refresh")
        assert "secret" not in repr(store.get_tokens())

    def test_clear_all(self):
        store = SessionStore()
        store.set_tokens("access")
        store.set_session(uuid.uuid4(), b"\x01" * 32)
        store.clear_all()
        assert store.get_session() is None
        assert store.get_tokens() is None
