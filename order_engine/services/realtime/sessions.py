"""
Session Tracker

Owns the table of connected terminals. Registration, eviction and room
membership changes all happen under one asyncio lock, so the periodic
sweep can never race a session that is being created.

Lifecycle:
    connect     verify identity, register, join all_users + role room,
                send connection_confirmed, publish users_online
    heartbeat   refresh last_activity, reply heartbeat_ack
    sweep       every session_sweep_interval_seconds, evict sessions idle
                longer than session_timeout_seconds, publish users_online
    disconnect  remove, publish users_online and user_disconnected
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional
from uuid import uuid4

from order_engine.core.permissions import Role
from order_engine.services.auth.base import BaseIdentityProvider, Identity
from order_engine.services.orders.entities import utcnow
from order_engine.services.realtime.broadcaster import (
    ALL_USERS,
    BaseBroadcaster,
    Connection,
    role_room,
)

logger = logging.getLogger(__name__)


@dataclass
class Session:
    """One connected terminal. Ephemeral; never persisted."""
    user_id: str
    role: Role
    name: str
    id: str = field(default_factory=lambda: f"sess-{uuid4().hex[:12]}")
    connected_at: datetime = field(default_factory=utcnow)
    last_activity: datetime = field(default_factory=utcnow)

    @property
    def identity(self) -> Identity:
        return Identity(user_id=self.user_id, role=self.role, name=self.name)

    def to_dict(self) -> dict:
        return {
            "sessionId": self.id,
            "userId": self.user_id,
            "role": self.role.value,
            "name": self.name,
            "connectedAt": self.connected_at.isoformat(),
            "lastActivity": self.last_activity.isoformat(),
        }


class SessionTracker:
    """
    Args:
        broadcaster: Room registry that sessions are joined to
        identity_provider: Verifies the credential presented on connect
        timeout_seconds: Inactivity after which a session is stale
        sweep_interval_seconds: Period of the background sweep
        clock: Source of "now" (overridable in tests)
    """

    def __init__(
        self,
        broadcaster: BaseBroadcaster,
        identity_provider: BaseIdentityProvider,
        timeout_seconds: int = 300,
        sweep_interval_seconds: int = 300,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.broadcaster = broadcaster
        self.identity_provider = identity_provider
        self.timeout = timedelta(seconds=timeout_seconds)
        self.sweep_interval_seconds = sweep_interval_seconds
        self.clock = clock
        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()
        self._sweeper: Optional[asyncio.Task] = None

        # A failed send means the socket is gone; treat it as a disconnect.
        broadcaster.on_connection_lost = self._on_connection_lost

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    def online_users(self) -> list[dict]:
        """One entry per user, however many terminals they have open."""
        users: dict[str, dict] = {}
        for session in sorted(self._sessions.values(), key=lambda s: s.connected_at):
            entry = users.get(session.user_id)
            if entry is None:
                users[session.user_id] = {
                    "id": session.user_id,
                    "name": session.name,
                    "role": session.role.value,
                    "connectedAt": session.connected_at.isoformat(),
                    "sessions": 1,
                }
            else:
                entry["sessions"] += 1
        return list(users.values())

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self, connection: Connection, credential: str) -> Session:
        """
        Register a new terminal.

        Raises:
            PermissionDenied: If the credential does not verify
        """
        identity = await self.identity_provider.verify(credential)
        now = self.clock()

        async with self._lock:
            session = Session(
                user_id=identity.user_id,
                role=identity.role,
                name=identity.name,
                connected_at=now,
                last_activity=now,
            )
            self._sessions[session.id] = session
            self.broadcaster.register(session.id, connection)
            self.broadcaster.join(session.id, ALL_USERS)
            self.broadcaster.join(session.id, role_room(session.role))

        logger.info(f"✅ Session connected: {session.name} ({session.role.value}) - {session.id}")

        await self.broadcaster.send_to_session(
            session.id,
            "connection_confirmed",
            {
                "user": identity.to_dict(),
                "sessionId": session.id,
                "timestamp": now.isoformat(),
            },
        )
        await self.broadcaster.publish("users_online", self.online_users())
        return session

    async def heartbeat(self, session_id: str) -> bool:
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            session.last_activity = self.clock()

        await self.broadcaster.send_to_session(
            session_id, "heartbeat_ack", {"timestamp": session.last_activity.isoformat()}
        )
        return True

    def touch(self, session_id: str) -> None:
        """Any inbound traffic counts as activity."""
        session = self._sessions.get(session_id)
        if session is not None:
            session.last_activity = self.clock()

    async def disconnect(self, session_id: str, reason: str = "client disconnected") -> Optional[Session]:
        async with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is None:
                return None
            self.broadcaster.unregister(session_id)

        logger.info(f"❌ Session disconnected: {session.name} - {reason}")

        await self.broadcaster.publish("users_online", self.online_users())
        await self.broadcaster.publish(
            "user_disconnected",
            {
                "user": session.identity.to_dict(),
                "reason": reason,
                "timestamp": self.clock().isoformat(),
            },
        )
        return session

    async def _on_connection_lost(self, session_id: str) -> None:
        await self.disconnect(session_id, reason="connection lost")

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    async def sweep(self) -> list[Session]:
        """Evict sessions idle longer than the timeout; returns the evicted ones."""
        threshold = self.clock() - self.timeout
        evicted: list[tuple[Session, Optional[Connection]]] = []

        async with self._lock:
            for session in list(self._sessions.values()):
                if session.last_activity < threshold:
                    del self._sessions[session.id]
                    evicted.append((session, self.broadcaster.unregister(session.id)))

        if not evicted:
            return []

        for session, connection in evicted:
            logger.warning(f"Evicting stale session {session.id} ({session.name})")
            if connection is not None:
                try:
                    await connection.close(code=1001, reason="Heartbeat timeout")
                except Exception as e:
                    logger.debug(f"Closing stale session {session.id} failed: {e}")

        await self.broadcaster.publish("users_online", self.online_users())
        return [session for session, _ in evicted]

    async def run_sweeper(self) -> None:
        """Background loop; one failed sweep never stops the next."""
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                await self.sweep()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error sweeping sessions: {e}")

    def start(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self.run_sweeper())

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
