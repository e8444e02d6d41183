"""
Session provider: "current session or None" plus sign-in/out events.

The store client asks the provider for a session before every request, so
an expired or signed-out session surfaces as ``NotAuthenticated`` instead of
a generic store failure.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from pydantic import BaseModel

from config import SUPABASE_ACCESS_TOKEN, SUPABASE_USER_ID

logger = logging.getLogger(__name__)

SIGNED_IN = "SIGNED_IN"
SIGNED_OUT = "SIGNED_OUT"

SessionListener = Callable[[str, Optional["Session"]], None]


class Session(BaseModel):
    access_token: str
    user_id: str
    expires_at: Optional[datetime] = None

    @property
    def expired(self) -> bool:
        if self.expires_at is None:
            return False
        expires = self.expires_at
        if expires.tzinfo is None:
            expires = expires.replace(tzinfo=timezone.utc)
        return expires <= datetime.now(timezone.utc)


class SessionProvider:
    def __init__(self, session: Optional[Session] = None):
        self._session = session
        self._listeners: list[SessionListener] = []

    @classmethod
    def from_config(cls) -> "SessionProvider":
        """Seed a session from SUPABASE_ACCESS_TOKEN / SUPABASE_USER_ID."""
        if SUPABASE_ACCESS_TOKEN:
            return cls(Session(
                access_token=SUPABASE_ACCESS_TOKEN,
                user_id=SUPABASE_USER_ID,
            ))
        return cls()

    def current(self) -> Optional[Session]:
        if self._session is not None and self._session.expired:
            logger.info("Session expired")
            self.sign_out()
        return self._session

    def sign_in(self, session: Session) -> None:
        self._session = session
        self._emit(SIGNED_IN, session)

    def sign_out(self) -> None:
        if self._session is None:
            return
        self._session = None
        self._emit(SIGNED_OUT, None)

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: str, session: Optional[Session]) -> None:
        for listener in list(self._listeners):
            listener(event, session)
