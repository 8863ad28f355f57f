"""Who is calling.

Handlers receive an ``Identity`` explicitly; nothing reads a global session.
``SessionIdentityProvider`` keeps opaque bearer tokens in the ``sessions``
table and publishes auth events to subscribers.
"""

from __future__ import annotations

import logging
import secrets
import threading
from contextlib import closing, contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator, Optional, Protocol

from .db import connect_sqlite
from .errors import Unauthorized
from .repositories import SessionRepository, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    user_id: str
    email: str


class AuthEvent(str, Enum):
    INITIAL_SESSION = "INITIAL_SESSION"
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"


AuthListener = Callable[[AuthEvent, Optional[Identity]], None]


class IdentityProvider(Protocol):
    def get_identity(self, token: Optional[str]) -> Optional[Identity]:
        ...

    def subscribe(self, listener: AuthListener, token: Optional[str] = None) -> Callable[[], None]:
        ...


class SessionIdentityProvider:
    def __init__(
        self,
        database_path: str | Path,
        ttl_seconds: int = 3600,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.database_path = database_path
        self.ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        self._listeners: list[AuthListener] = []
        self._lock = threading.Lock()

    def sign_in(self, user_id: str, email: str) -> str:
        token = secrets.token_urlsafe(32)
        with self._sessions() as sessions:
            sessions.insert(token, user_id, email, self._clock() + self.ttl)
        identity = Identity(user_id=user_id, email=email)
        logger.info("User signed in", extra={"user_id": user_id})
        self._emit(AuthEvent.SIGNED_IN, identity)
        return token

    def get_identity(self, token: Optional[str]) -> Optional[Identity]:
        if not token:
            return None
        with self._sessions() as sessions:
            row = sessions.get(token)
            if row is None:
                return None
            if datetime.fromisoformat(row["expires_at"]) <= self._clock():
                sessions.delete(token)
                logger.info("Session expired", extra={"user_id": row["user_id"]})
                return None
            return Identity(user_id=row["user_id"], email=row["email"])

    def refresh(self, token: str) -> str:
        identity = self.get_identity(token)
        if identity is None:
            raise Unauthorized("Session expired")
        new_token = secrets.token_urlsafe(32)
        with self._sessions() as sessions:
            sessions.delete(token)
            sessions.insert(new_token, identity.user_id, identity.email, self._clock() + self.ttl)
        self._emit(AuthEvent.TOKEN_REFRESHED, identity)
        return new_token

    def sign_out(self, token: str) -> None:
        identity = self.get_identity(token)
        with self._sessions() as sessions:
            sessions.delete(token)
        if identity is not None:
            logger.info("User signed out", extra={"user_id": identity.user_id})
            self._emit(AuthEvent.SIGNED_OUT, None)

    def purge_expired(self) -> int:
        with self._sessions() as sessions:
            removed = sessions.delete_expired(self._clock())
        if removed:
            logger.info("Purged expired sessions", extra={"count": removed})
        return removed

    def subscribe(self, listener: AuthListener, token: Optional[str] = None) -> Callable[[], None]:
        """Register ``listener``; it is called at once with ``INITIAL_SESSION``."""
        with self._lock:
            self._listeners.append(listener)
        self._notify(listener, AuthEvent.INITIAL_SESSION, self.get_identity(token))

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: AuthEvent, identity: Optional[Identity]) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            self._notify(listener, event, identity)

    @staticmethod
    def _notify(listener: AuthListener, event: AuthEvent, identity: Optional[Identity]) -> None:
        try:
            listener(event, identity)
        except Exception:
            logger.exception("Auth listener failed", extra={"event": event.value})

    @contextmanager
    def _sessions(self) -> Iterator[SessionRepository]:
        with closing(connect_sqlite(self.database_path)) as conn, conn:
            yield SessionRepository(conn)
