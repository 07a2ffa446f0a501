"""
Session state + bearer tokens for the encrypted transport.

Implements:
- set_session() / get_session() / clear_session()
- set_tokens() / get_tokens() / update_access_token() / clear_tokens()
- clear_all()

Snapshots are immutable and swapped in whole under a writer lock, so a
reader sees either the old or the new session, never a mix. Readers take
no lock at all.
"""

import logging
import threading
import uuid
from dataclasses import dataclass
from typing import Optional, Union

from enclave_client.common.errors import SessionError

logger = logging.getLogger(__name__)

SESSION_KEY_SIZE = 32


@dataclass(frozen=True)
class SessionState:
    session_id: uuid.UUID
    session_key: bytes
    generation: int

    def __repr__(self) -> str:
        return f"SessionState(session_id={self.session_id}, generation={self.generation})"


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: Optional[str] = None

    def __repr__(self) -> str:
        refresh = "<redacted>" if self.refresh_token else None
        return f"TokenPair(access_token=<redacted>, refresh_token={refresh})"


class SessionStore:

    def __init__(self):
        self._write_lock = threading.Lock()
        self._session: Optional[SessionState] = None
        self._tokens: Optional[TokenPair] = None
        self._generation = 0

    # ------------ SESSION ------------

    def set_session(self, session_id: Union[uuid.UUID, str], session_key: bytes) -> SessionState:
        """Atomically replace the session. Returns the stored snapshot."""
        if not isinstance(session_id, uuid.UUID):
            try:
                session_id = uuid.UUID(str(session_id))
            except ValueError as e:
                raise SessionError(f"invalid session id: {e}") from e
        if len(session_key) != SESSION_KEY_SIZE:
            raise SessionError(f"session key must be {SESSION_KEY_SIZE} bytes")

        with self._write_lock:
            self._generation += 1
            state = SessionState(session_id, bytes(session_key), self._generation)
            self._session = state

        logger.info("[SESSION] session %s stored (generation %d)", session_id, state.generation)
        return state

    def get_session(self) -> Optional[SessionState]:
        return self._session

    def clear_session(self) -> None:
        with self._write_lock:
            self._session = None
        logger.info("[SESSION] session cleared")

    @property
    def generation(self) -> int:
        return self._generation

    # ------------ TOKENS ------------

    def set_tokens(self, access_token: str, refresh_token: Optional[str] = None) -> None:
        with self._write_lock:
            self._tokens = TokenPair(access_token, refresh_token)

    def get_tokens(self) -> Optional[TokenPair]:
        return self._tokens

    def get_access_token(self) -> Optional[str]:
        tokens = self._tokens
        return tokens.access_token if tokens else None

    def get_refresh_token(self) -> Optional[str]:
        tokens = self._tokens
        return tokens.refresh_token if tokens else None

    def update_access_token(self, access_token: str) -> None:
        with self._write_lock:
            if self._tokens is None:
                raise SessionError("no tokens to update")
            self._tokens = TokenPair(access_token, self._tokens.refresh_token)

    def clear_tokens(self) -> None:
        with self._write_lock:
            self._tokens = None

    def clear_all(self) -> None:
        """Logout: drop both the session and the tokens."""
        with self._write_lock:
            self._session = None
            self._tokens = None
        logger.info("[SESSION] session and tokens cleared")
