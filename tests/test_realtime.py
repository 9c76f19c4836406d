import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest

from order_engine.core.exceptions import PermissionDenied
from order_engine.core.permissions import Role
from order_engine.services.realtime import LocalBroadcaster, RedisBroadcaster, SessionTracker
from order_engine.services.realtime.broadcaster import ALL_USERS, role_room

from .conftest import FakeConnection


class StalledConnection(FakeConnection):
    """A terminal that stopped reading: every send blocks."""

    async def send_json(self, data) -> None:
        await asyncio.sleep(3600)


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class TestBroadcaster:
    async def test_fan_out_to_room_members(self, broadcaster):
        a, b, outsider = FakeConnection(), FakeConnection(), FakeConnection()
        broadcaster.register("a", a)
        broadcaster.register("b", b)
        broadcaster.register("c", outsider)
        broadcaster.join("a", ALL_USERS)
        broadcaster.join("b", ALL_USERS)

        await broadcaster.publish("order_updated", {"id": "order-1"})
        await broadcaster.drain()

        assert a.sent == [{"event": "order_updated", "data": {"id": "order-1"}}]
        assert b.sent == a.sent
        assert outsider.sent == []

    async def test_events_arrive_in_publish_order(self, broadcaster):
        connection = FakeConnection()
        broadcaster.register("a", connection)
        broadcaster.join("a", ALL_USERS)

        for n in range(5):
            await broadcaster.publish("order_updated", {"version": n})
        await broadcaster.drain()

        assert [frame["data"]["version"] for frame in connection.sent] == [0, 1, 2, 3, 4]

    async def test_role_events_skip_all_users(self, broadcaster):
        admin, staff = FakeConnection(), FakeConnection()
        broadcaster.register("admin", admin)
        broadcaster.register("staff", staff)
        broadcaster.join("admin", role_room(Role.ADMIN))
        broadcaster.join("staff", ALL_USERS)

        await broadcaster.publish_to_roles("menu_item_updated", {"itemId": "agua"}, [Role.ADMIN])
        await broadcaster.drain()

        assert admin.events("menu_item_updated")
        assert staff.sent == []

    async def test_failed_send_drops_only_that_connection(self, broadcaster):
        healthy, broken = FakeConnection(), FakeConnection(fail=True)
        broadcaster.register("ok", healthy)
        broadcaster.register("broken", broken)
        broadcaster.join("ok", ALL_USERS)
        broadcaster.join("broken", ALL_USERS)

        await broadcaster.publish("order_updated", {})
        await broadcaster.drain()

        assert len(healthy.sent) == 1
        assert broadcaster.members(ALL_USERS) == {"ok"}
        assert broadcaster.connection_count == 1

    async def test_stalled_connection_does_not_block_others(self):
        broadcaster = LocalBroadcaster(send_timeout_seconds=0.05)
        healthy, stalled = FakeConnection(), StalledConnection()
        broadcaster.register("ok", healthy)
        broadcaster.register("stalled", stalled)
        broadcaster.join("ok", ALL_USERS)
        broadcaster.join("stalled", ALL_USERS)

        try:
            await broadcaster.publish("order_created", {"id": "order-1"})
            await broadcaster.publish("order_updated", {"id": "order-1"})
            await asyncio.wait_for(broadcaster.drain(), 1.0)
        finally:
            await broadcaster.stop()

        assert [frame["event"] for frame in healthy.sent] == ["order_created", "order_updated"]
        assert broadcaster.members(ALL_USERS) == {"ok"}

    async def test_stalled_connection_reported_as_lost(self):
        broadcaster = LocalBroadcaster(send_timeout_seconds=0.05)
        lost = []

        async def on_lost(session_id):
            lost.append(session_id)
            broadcaster.unregister(session_id)

        broadcaster.on_connection_lost = on_lost
        broadcaster.register("stalled", StalledConnection())
        broadcaster.join("stalled", ALL_USERS)

        try:
            await broadcaster.publish("order_updated", {})
            await asyncio.wait_for(broadcaster.drain(), 1.0)
        finally:
            await broadcaster.stop()

        assert lost == ["stalled"]

    def test_join_requires_registration(self, broadcaster):
        with pytest.raises(KeyError):
            broadcaster.join("ghost", ALL_USERS)

    async def test_send_to_unknown_session(self, broadcaster):
        assert await broadcaster.send_to_session("ghost", "heartbeat_ack") is False


class TestRedisBroadcaster:
    async def test_skips_its_own_messages(self):
        broadcaster = RedisBroadcaster("redis://localhost:6379/0")
        connection = FakeConnection()
        broadcaster.register("a", connection)
        broadcaster.join("a", ALL_USERS)

        own = {"server_id": broadcaster.server_id, "room": ALL_USERS, "message": {"event": "x", "data": 1}}
        other = {"server_id": "another-worker", "room": ALL_USERS, "message": {"event": "y", "data": 2}}
        await broadcaster._process_broadcast_message(json.dumps(own))
        await broadcaster._process_broadcast_message(json.dumps(other))
        await broadcaster._process_broadcast_message("not json")

        assert connection.sent == [{"event": "y", "data": 2}]


class TestSessionTracker:
    async def test_connect_joins_rooms_and_confirms(self, tracker, broadcaster, connection):
        session = await tracker.connect(connection, "dev-staff")
        await broadcaster.drain()

        assert session.role == Role.PERSONAL
        assert broadcaster.rooms_of(session.id) == {ALL_USERS, role_room(Role.PERSONAL)}
        [confirmed] = connection.events("connection_confirmed")
        assert confirmed["data"]["sessionId"] == session.id
        assert confirmed["data"]["user"] == {"id": "personal-001", "role": "personal", "name": "Personal de Caja"}
        [online] = connection.events("users_online")
        assert online["data"][0]["id"] == "personal-001"

    async def test_bad_token_is_rejected(self, tracker, connection):
        with pytest.raises(PermissionDenied):
            await tracker.connect(connection, "not-a-token")
        assert tracker.session_count == 0

    async def test_online_users_are_deduplicated(self, tracker):
        await tracker.connect(FakeConnection(), "dev-admin")
        await tracker.connect(FakeConnection(), "dev-admin")
        await tracker.connect(FakeConnection(), "dev-staff")

        users = {user["id"]: user for user in tracker.online_users()}
        assert users["admin-001"]["sessions"] == 2
        assert users["personal-001"]["sessions"] == 1

    async def test_heartbeat_acknowledged(self, tracker, connection):
        session = await tracker.connect(connection, "dev-staff")
        assert await tracker.heartbeat(session.id)
        assert connection.events("heartbeat_ack")
        assert not await tracker.heartbeat("sess-gone")

    async def test_disconnect_announces(self, tracker, broadcaster):
        watcher = FakeConnection()
        await tracker.connect(watcher, "dev-admin")
        session = await tracker.connect(FakeConnection(), "dev-staff")

        await tracker.disconnect(session.id)
        await broadcaster.drain()

        assert tracker.get(session.id) is None
        [gone] = watcher.events("user_disconnected")
        assert gone["data"]["user"]["id"] == "personal-001"
        assert await tracker.disconnect(session.id) is None

    async def test_sweep_evicts_idle_sessions(self, broadcaster, identity_provider):
        clock = Clock(datetime(2026, 3, 14, 20, 0, tzinfo=timezone.utc))
        tracker = SessionTracker(broadcaster, identity_provider, timeout_seconds=300, clock=clock)
        idle, active = FakeConnection(), FakeConnection()
        idle_session = await tracker.connect(idle, "dev-staff")
        active_session = await tracker.connect(active, "dev-admin")

        clock.now += timedelta(seconds=200)
        await tracker.heartbeat(active_session.id)
        clock.now += timedelta(seconds=200)
        evicted = await tracker.sweep()
        await broadcaster.drain()

        assert [s.id for s in evicted] == [idle_session.id]
        assert idle.closed == (1001, "Heartbeat timeout")
        assert tracker.get(active_session.id) is not None
        assert idle_session.id not in broadcaster.members(ALL_USERS)
        assert [u["id"] for u in active.events("users_online")[-1]["data"]] == ["admin-001"]

    async def test_lost_connection_becomes_disconnect(self, tracker, broadcaster):
        broken = FakeConnection()
        session = await tracker.connect(broken, "dev-staff")
        broken.fail = True

        await broadcaster.publish("order_updated", {})
        await broadcaster.drain()

        assert tracker.get(session.id) is None

    async def test_sweeper_task_runs(self, broadcaster, identity_provider):
        tracker = SessionTracker(broadcaster, identity_provider, timeout_seconds=0, sweep_interval_seconds=0)
        connection = FakeConnection()
        await tracker.connect(connection, "dev-staff")

        tracker.start()
        for _ in range(20):
            if tracker.session_count == 0:
                break
            await asyncio.sleep(0.01)
        await tracker.stop()

        assert tracker.session_count == 0
        assert connection.closed is not None
