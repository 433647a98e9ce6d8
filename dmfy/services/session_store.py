# /dmfy/services/session_store.py

from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple, Union

import structlog

from dmfy.config.settings import settings
from dmfy.models.flow import Channel, Session, session_key, utcnow

# Per-user conversation state, keyed by (tenant, sender, channel). The flow
# engine is the only writer. An expired session is dropped when its sender
# writes again, and `save` sweeps out all expired sessions at most once per
# sweep interval.

log = structlog.get_logger(__name__)


class SessionStore:
    def __init__(
        self,
        ttl: timedelta,
        clock: Callable[[], datetime] = utcnow,
        sweep_interval: timedelta = timedelta(minutes=10),
    ):
        self.ttl = ttl
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._sessions: Dict[Tuple[str, str, str], Session] = {}
        self._last_sweep = clock()

    def _is_expired(self, session: Session, now: datetime) -> bool:
        return now - session.last_activity_at > self.ttl

    def purge_expired(self) -> int:
        """Drop every expired session. Returns how many were removed."""
        now = self._clock()
        expired = [key for key, session in self._sessions.items() if self._is_expired(session, now)]
        for key in expired:
            del self._sessions[key]
        self._last_sweep = now
        if expired:
            log.info("expired_sessions_purged", count=len(expired), remaining=len(self._sessions))
        return len(expired)

    async def get_or_create(
        self,
        tenant_key: str,
        sender_id: str,
        channel: Union[Channel, str],
        entry_node_id: str,
    ) -> Session:
        """
        Return a working copy of the sender's session.

        A new session positioned at `entry_node_id` is created when none is
        stored or the stored one has been idle for longer than the ttl.
        Changes are only visible to other callers after `save`.
        """
        key = session_key(tenant_key, sender_id, channel)
        now = self._clock()
        session = self._sessions.get(key)

        if session is not None and self._is_expired(session, now):
            log.info("session_expired", tenant_key=tenant_key, sender_id=sender_id, channel=key[2])
            del self._sessions[key]
            session = None

        if session is None:
            session = Session(
                tenant_key=tenant_key,
                sender_id=sender_id,
                channel=Channel(channel),
                current_node_id=entry_node_id,
                history=[entry_node_id],
                created_at=now,
                last_activity_at=now,
            )
            self._sessions[key] = session
            log.debug("session_created", tenant_key=tenant_key, sender_id=sender_id, channel=key[2])

        return session.model_copy(deep=True)

    async def get(self, tenant_key: str, sender_id: str, channel: Union[Channel, str]) -> Optional[Session]:
        session = self._sessions.get(session_key(tenant_key, sender_id, channel))
        return session.model_copy(deep=True) if session else None

    async def save(self, session: Session) -> None:
        self._sessions[session.key] = session.model_copy(deep=True)
        if self._clock() - self._last_sweep >= self.sweep_interval:
            self.purge_expired()

    def now(self) -> datetime:
        return self._clock()

    def __len__(self) -> int:
        return len(self._sessions)


# Globally accessible instance
session_store = SessionStore(ttl=timedelta(hours=settings.session_ttl_hours))
