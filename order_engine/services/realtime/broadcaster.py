"""
Realtime Broadcaster

Room-based fan-out of events to connected terminals.

Rooms:
    all_users        every connected session
    role_admin       sessions of admin users
    role_personal    sessions of staff users

publish() only enqueues; a dispatcher task does the sending, so the
mutation that produced an event returns to its caller without waiting for
other clients. Delivery is at-most-once: there is no event log, and a
reconnecting client re-fetches state with get_orders.

Members of a room are sent to concurrently and every send is bounded by
send_timeout_seconds. A connection whose send fails or times out is
dropped and reported through on_connection_lost, so a terminal that stops
reading never holds up the others.

Two backends:
    LocalBroadcaster   in-process only (development)
    RedisBroadcaster   also mirrors every event on a Redis pub/sub channel
                       for other processes (kitchen displays, reporting),
                       and delivers envelopes they publish to local sockets
                       (staging/production)

Either way, the order store lives in a single API process.

Outbound frame shape:
    {"event": "order_updated", "data": {...}}
"""

import asyncio
import json
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol

import redis.asyncio as redis

from order_engine.core.permissions import Role

logger = logging.getLogger(__name__)


ALL_USERS = "all_users"


def role_room(role: Role) -> str:
    return f"role_{role.value}"


ROLE_ROOMS = tuple(role_room(role) for role in Role)


class Connection(Protocol):
    """What the broadcaster needs from a socket (FastAPI's WebSocket fits)."""

    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None: ...


@dataclass
class Envelope:
    room: str
    message: dict


class BaseBroadcaster(ABC):
    """
    Room registry plus queued fan-out.

    Room membership is shared state; callers that change it (SessionTracker)
    serialize those changes under their own session lock. Delivery iterates
    over a copy of the member list.
    """

    def __init__(self, send_timeout_seconds: float = 5.0):
        self.send_timeout_seconds = send_timeout_seconds
        self._connections: dict[str, Connection] = {}
        self._rooms: dict[str, set[str]] = {}
        self._queue: asyncio.Queue[Envelope] = asyncio.Queue()
        self._dispatcher: Optional[asyncio.Task] = None
        self.on_connection_lost: Optional[Callable[[str], Awaitable[None]]] = None

    @property
    @abstractmethod
    def backend_name(self) -> str:
        pass

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def register(self, session_id: str, connection: Connection) -> None:
        self._connections[session_id] = connection

    def unregister(self, session_id: str) -> Optional[Connection]:
        for members in self._rooms.values():
            members.discard(session_id)
        return self._connections.pop(session_id, None)

    def join(self, session_id: str, room: str) -> None:
        if session_id not in self._connections:
            raise KeyError(f"unknown session {session_id}")
        self._rooms.setdefault(room, set()).add(session_id)

    def members(self, room: str) -> set[str]:
        return set(self._rooms.get(room, ()))

    def rooms_of(self, session_id: str) -> set[str]:
        return {room for room, members in self._rooms.items() if session_id in members}

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    async def publish(self, event: str, data: Any, room: str = ALL_USERS) -> None:
        """Queue an event for every session in room; returns immediately."""
        self._ensure_dispatcher()
        self._queue.put_nowait(Envelope(room=room, message={"event": event, "data": data}))

    async def publish_to_roles(self, event: str, data: Any, roles: Optional[list[Role]] = None) -> None:
        """Administrative events go to role rooms only, never to all_users."""
        for role in roles or list(Role):
            await self.publish(event, data, room=role_room(role))

    async def send_to_session(self, session_id: str, event: str, data: Any = None) -> bool:
        """Direct reply to one session, bypassing the queue."""
        connection = self._connections.get(session_id)
        if connection is None:
            return False
        return await self._send(session_id, connection, {"event": event, "data": data})

    async def drain(self) -> None:
        """Wait until every queued event has been dispatched."""
        await self._queue.join()

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self._ensure_dispatcher()

    async def stop(self) -> None:
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
            self._dispatcher = None

    def _ensure_dispatcher(self) -> None:
        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = asyncio.create_task(self._dispatch_loop())

    async def _dispatch_loop(self) -> None:
        while True:
            envelope = await self._queue.get()
            try:
                await self._dispatch(envelope)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error dispatching '{envelope.message.get('event')}' to {envelope.room}: {e}")
            finally:
                self._queue.task_done()

    @abstractmethod
    async def _dispatch(self, envelope: Envelope) -> None:
        pass

    async def _deliver_local(self, room: str, message: dict) -> int:
        """Send to this process's members of room; returns the number reached."""
        targets = [
            (session_id, self._connections[session_id])
            for session_id in list(self._rooms.get(room, ()))
            if session_id in self._connections
        ]
        results = await asyncio.gather(
            *(self._send(session_id, connection, message) for session_id, connection in targets)
        )
        return sum(results)

    async def _send(self, session_id: str, connection: Connection, message: dict) -> bool:
        try:
            await asyncio.wait_for(connection.send_json(message), self.send_timeout_seconds)
            return True
        except asyncio.TimeoutError:
            logger.warning(
                f"Dropping session {session_id}: send stalled for {self.send_timeout_seconds}s"
            )
            await self._drop(session_id)
            return False
        except Exception as e:
            logger.warning(f"Dropping session {session_id}: send failed ({e})")
            await self._drop(session_id)
            return False

    async def _drop(self, session_id: str) -> None:
        if self.on_connection_lost is not None:
            await self.on_connection_lost(session_id)
        else:
            self.unregister(session_id)


class LocalBroadcaster(BaseBroadcaster):
    """In-process fan-out. Only sockets held by this process are reachable."""

    @property
    def backend_name(self) -> str:
        return "local"

    async def _dispatch(self, envelope: Envelope) -> None:
        await self._deliver_local(envelope.room, envelope.message)


class RedisBroadcaster(BaseBroadcaster):
    """
    Local fan-out mirrored on a Redis pub/sub channel.

    Envelopes are delivered to this process's sockets first, then
    published. Envelopes published by other processes on the channel are
    delivered to local sockets; envelopes carrying our own server id are
    skipped.
    """

    def __init__(
        self,
        redis_url: str,
        channel: str = "order_engine:broadcast",
        send_timeout_seconds: float = 5.0,
    ):
        super().__init__(send_timeout_seconds)
        self.redis_url = redis_url
        self.channel = channel
        self.server_id = str(uuid.uuid4())
        self.redis_client: Optional[redis.Redis] = None
        self.pubsub = None
        self._subscription_task: Optional[asyncio.Task] = None

    @property
    def backend_name(self) -> str:
        return "redis"

    async def start(self) -> None:
        try:
            self.redis_client = redis.from_url(self.redis_url, decode_responses=True)
            await self.redis_client.ping()
            self.pubsub = self.redis_client.pubsub()
            await self.pubsub.subscribe(self.channel)
            self._subscription_task = asyncio.create_task(self._handle_subscriptions())
        except Exception as e:
            logger.error(f"Failed to initialize Redis broadcaster: {e}")
            raise

        await super().start()
        logger.info(f"Redis broadcaster initialized with server ID: {self.server_id}")

    async def stop(self) -> None:
        await super().stop()

        if self._subscription_task:
            self._subscription_task.cancel()
            try:
                await self._subscription_task
            except asyncio.CancelledError:
                pass
            self._subscription_task = None

        if self.pubsub:
            await self.pubsub.unsubscribe()
            await self.pubsub.aclose()

        if self.redis_client:
            await self.redis_client.aclose()

    async def _dispatch(self, envelope: Envelope) -> None:
        await self._deliver_local(envelope.room, envelope.message)
        if self.redis_client:
            await self.redis_client.publish(
                self.channel,
                json.dumps({
                    "server_id": self.server_id,
                    "room": envelope.room,
                    "message": envelope.message,
                }),
            )

    async def _handle_subscriptions(self) -> None:
        try:
            async for message in self.pubsub.listen():
                if message["type"] == "message":
                    await self._process_broadcast_message(message["data"])
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error in subscription handler: {e}")

    async def _process_broadcast_message(self, data: str) -> None:
        try:
            payload = json.loads(data)
        except (TypeError, ValueError) as e:
            logger.error(f"Ignoring malformed broadcast message: {e}")
            return

        # Skip messages from this server
        if payload.get("server_id") == self.server_id:
            return
        await self._deliver_local(payload["room"], payload["message"])
