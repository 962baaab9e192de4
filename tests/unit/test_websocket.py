"""Unit tests for the WebSocket connection manager and the event broadcaster.

Tests connection lifecycle, broadcasting, and store-driven job events.
"""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import WebSocket

from tests.fixtures.fake_encoder import settle
from vidopt.api.websocket import ConnectionManager
from vidopt.models.job import JobStatus
from vidopt.services.event_broadcaster import EventBroadcaster
from vidopt.services.job_store import StoreEvent


@pytest.fixture
def connection_manager():
    """Create a fresh ConnectionManager instance."""
    return ConnectionManager()


@pytest.fixture
def mock_websocket():
    """Create a mock WebSocket connection."""
    ws = AsyncMock(spec=WebSocket)
    ws.accept = AsyncMock()
    ws.send_text = AsyncMock()
    return ws


def _sent(ws) -> list[dict]:
    return [json.loads(call.args[0]) for call in ws.send_text.call_args_list]


class TestConnectionLifecycle:
    async def test_connect_adds_client(self, connection_manager, mock_websocket):
        await connection_manager.connect(mock_websocket)

        assert connection_manager.active_connections == [mock_websocket]
        mock_websocket.accept.assert_called_once()

    async def test_disconnect_is_idempotent(self, connection_manager, mock_websocket):
        await connection_manager.connect(mock_websocket)
        await connection_manager.disconnect(mock_websocket)
        await connection_manager.disconnect(mock_websocket)

        assert connection_manager.active_connections == []


class TestBroadcasting:
    async def test_broadcast_reaches_every_client(self, connection_manager):
        ws1, ws2 = AsyncMock(spec=WebSocket), AsyncMock(spec=WebSocket)
        await connection_manager.connect(ws1)
        await connection_manager.connect(ws2)

        await connection_manager.broadcast({"type": "ping"})

        assert _sent(ws1) == [{"type": "ping"}]
        assert _sent(ws2) == [{"type": "ping"}]

    async def test_failed_client_is_dropped(self, connection_manager, mock_websocket):
        broken = AsyncMock(spec=WebSocket)
        broken.send_text.side_effect = RuntimeError("socket closed")
        await connection_manager.connect(broken)
        await connection_manager.connect(mock_websocket)

        await connection_manager.broadcast({"type": "ping"})

        assert connection_manager.active_connections == [mock_websocket]
        assert _sent(mock_websocket) == [{"type": "ping"}]

    async def test_broadcast_without_clients_is_noop(self, connection_manager):
        await connection_manager.broadcast({"type": "ping"})

    async def test_job_update_envelope(self, connection_manager, mock_websocket):
        await connection_manager.connect(mock_websocket)
        await connection_manager.broadcast_job_update({"id": "abc", "status": "queued"})
        await connection_manager.broadcast_job_removed("abc")

        assert _sent(mock_websocket) == [
            {"type": "job_update", "job": {"id": "abc", "status": "queued"}},
            {"type": "job_removed", "job_id": "abc"},
        ]

    async def test_send_personal_failure_disconnects(self, connection_manager, mock_websocket):
        await connection_manager.connect(mock_websocket)
        mock_websocket.send_text.side_effect = RuntimeError("gone")

        assert await connection_manager.send_personal(mock_websocket, {"type": "x"}) is False
        assert connection_manager.active_connections == []


@pytest.fixture
def mock_ws_manager():
    ws = MagicMock(spec=ConnectionManager)
    ws.broadcast_job_update = AsyncMock()
    ws.broadcast_job_removed = AsyncMock()
    return ws


@pytest.fixture
async def broadcaster(mock_ws_manager, store):
    broadcaster = EventBroadcaster(mock_ws_manager)
    broadcaster.attach(store)
    yield broadcaster
    await broadcaster.detach()


class TestEventBroadcaster:
    async def test_added_job_is_broadcast(self, broadcaster, mock_ws_manager, make_job):
        job = make_job("heat.mkv")
        await settle()

        payload = mock_ws_manager.broadcast_job_update.call_args.args[0]
        assert payload["id"] == job.id
        assert payload["status"] == "idle"
        assert payload["source_path"] == "/videos/heat.mkv"

    async def test_updates_arrive_in_mutation_order(
        self, broadcaster, mock_ws_manager, store, make_job
    ):
        job = make_job()
        store.update_job(job.id, status=JobStatus.QUEUED)
        store.update_job(job.id, status=JobStatus.IDLE)
        await settle()

        statuses = [c.args[0]["status"] for c in mock_ws_manager.broadcast_job_update.call_args_list]
        assert statuses == ["idle", "queued", "idle"]

    async def test_removed_job(self, broadcaster, mock_ws_manager, store, make_job):
        job = make_job()
        store.remove_job(job.id)
        await settle()

        mock_ws_manager.broadcast_job_removed.assert_awaited_once_with(job.id)

    async def test_send_failure_does_not_stop_the_pump(
        self, broadcaster, mock_ws_manager, store, make_job
    ):
        mock_ws_manager.broadcast_job_update.side_effect = [RuntimeError("boom"), None]
        make_job("a.mkv")
        make_job("b.mkv")
        await settle()

        assert mock_ws_manager.broadcast_job_update.await_count == 2

    async def test_detach_stops_forwarding(self, mock_ws_manager, store, make_job):
        broadcaster = EventBroadcaster(mock_ws_manager)
        broadcaster.attach(store)
        await broadcaster.detach()

        make_job()
        await settle()

        mock_ws_manager.broadcast_job_update.assert_not_called()

    async def test_direct_broadcast_dispatch(self, mock_ws_manager, make_job):
        job = make_job()
        broadcaster = EventBroadcaster(mock_ws_manager)

        await broadcaster.broadcast(StoreEvent.REMOVED, job)

        mock_ws_manager.broadcast_job_removed.assert_awaited_once_with(job.id)
        mock_ws_manager.broadcast_job_update.assert_not_called()
