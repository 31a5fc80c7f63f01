"""
Notification fan-out tests.

- Registry: identity/company/admin channels, replacement, removal
- Targeting: accept fan-out reaches winner, creator and the other agents only
- Delivery failures never escape
- WebSocket join: inactive accounts get force-logout and no registration
"""
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from starlette.websockets import WebSocketDisconnect

from conftest import make_principal
from server import app
from services.connection_registry import Connection, ConnectionRegistry, FORCE_LOGOUT_CLOSE_CODE
from services.notification_service import NotificationService
from utils.errors import AuthenticationError


def fake_socket(fail=False):
    socket = MagicMock()
    socket.send_json = AsyncMock(side_effect=RuntimeError("socket closed") if fail else None)
    socket.close = AsyncMock()
    return socket


def events(socket):
    return [c.args[0]["event"] for c in socket.send_json.call_args_list]


def payloads(socket, event):
    return [c.args[0]["data"] for c in socket.send_json.call_args_list if c.args[0]["event"] == event]


async def connect(registry, principal_id, role="agent", company_id="company-1", fail=False):
    connection = Connection(
        websocket=fake_socket(fail), principal_id=principal_id, role=role, company_id=company_id
    )
    await registry.join_identity(connection)
    if company_id:
        await registry.join_company(principal_id, company_id)
    if role == "admin":
        await registry.join_admin_channel(principal_id)
    return connection


class TestConnectionRegistry:

    @pytest.mark.asyncio
    async def test_join_lookup_and_remove(self):
        registry = ConnectionRegistry()
        connection = await connect(registry, "agent-a")

        assert registry.lookup("agent-a") is connection
        assert registry.company_connections("company-1") == [connection]

        assert await registry.remove("agent-a") is True
        assert registry.lookup("agent-a") is None
        assert registry.company_connections("company-1") == []
        assert registry.get_stats()["total_connections"] == 0

    @pytest.mark.asyncio
    async def test_newer_socket_replaces_older(self):
        registry = ConnectionRegistry()
        old = await connect(registry, "agent-a")
        new = await connect(registry, "agent-a")

        old.websocket.close.assert_awaited_once()
        assert registry.lookup("agent-a") is new

        # The old socket's disconnect must not evict its successor
        assert await registry.remove("agent-a", old) is False
        assert registry.lookup("agent-a") is new

    @pytest.mark.asyncio
    async def test_company_filter_by_role_and_exclusion(self):
        registry = ConnectionRegistry()
        await connect(registry, "agent-a")
        agent_b = await connect(registry, "agent-b")
        await connect(registry, "cp-1", role="channel_partner")

        targets = registry.company_connections("company-1", role="agent", exclude={"agent-a"})
        assert targets == [agent_b]

    @pytest.mark.asyncio
    async def test_stop_closes_everything(self):
        registry = ConnectionRegistry()
        await registry.start()
        connection = await connect(registry, "agent-a")

        await registry.stop()

        connection.websocket.close.assert_awaited()
        assert registry.lookup("agent-a") is None
        assert registry.running is False


class TestNotificationService:

    @pytest.mark.asyncio
    async def test_accept_fan_out_targets(self):
        registry = ConnectionRegistry()
        notifier = NotificationService(registry)
        winner = await connect(registry, "agent-a")
        other_agent = await connect(registry, "agent-b")
        creator = await connect(registry, "cp-1", role="channel_partner")
        outsider = await connect(registry, "agent-x", company_id="company-2")

        customer = {"customer_id": "lead-1", "company_id": "company-1", "createdBy": {"id": "cp-1"}}
        notifier.lead_accepted(customer, "agent-a", "Asha")
        await notifier.drain()

        assert events(winner.websocket) == ["lead-accepted"]
        assert payloads(winner.websocket, "lead-accepted")[0]["agentId"] == "agent-a"
        assert events(creator.websocket) == ["lead-accepted"]
        assert events(other_agent.websocket) == ["lead-already-accepted"]
        assert payloads(other_agent.websocket, "lead-already-accepted")[0]["agentName"] == "Asha"
        assert events(outsider.websocket) == []

    @pytest.mark.asyncio
    async def test_frames_carry_event_data_and_timestamp(self):
        registry = ConnectionRegistry()
        notifier = NotificationService(registry)
        connection = await connect(registry, "cp-1", role="channel_partner")

        await notifier.emit_to_identity("cp-1", "lead-status-changed", {"leadId": "lead-1"})

        frame = connection.websocket.send_json.call_args.args[0]
        assert set(frame) == {"event", "data", "timestamp"}
        assert frame["data"] == {"leadId": "lead-1"}

    @pytest.mark.asyncio
    async def test_decline_reaches_admin_channel_and_creator(self):
        registry = ConnectionRegistry()
        notifier = NotificationService(registry)
        admin = await connect(registry, "admin-1", role="admin", company_id=None)
        creator = await connect(registry, "cp-1", role="channel_partner")
        decliner = await connect(registry, "agent-b")

        notifier.lead_declined({"customer_id": "lead-1", "company_id": "company-1", "createdBy": {"id": "cp-1"}}, "agent-b", "Bala")
        await notifier.drain()

        for connection in (admin, creator, decliner):
            assert events(connection.websocket) == ["lead-declined"]
        assert payloads(admin.websocket, "lead-declined")[0] == {"leadId": "lead-1", "agentId": "agent-b", "agentName": "Bala"}

    @pytest.mark.asyncio
    async def test_status_change_deduplicates_targets(self):
        registry = ConnectionRegistry()
        notifier = NotificationService(registry)
        agent = await connect(registry, "agent-a")

        customer = {"customer_id": "lead-1", "status": "Contacted", "createdBy": {"id": "agent-a"}, "acceptedBy": "agent-a"}
        notifier.lead_status_changed(customer, {"id": "agent-a", "name": "Asha", "role": "agent"})
        await notifier.drain()

        assert events(agent.websocket) == ["lead-status-changed"]
        assert payloads(agent.websocket, "lead-status-changed")[0]["newStatus"] == "Contacted"

    @pytest.mark.asyncio
    async def test_missing_and_broken_connections_are_not_errors(self):
        registry = ConnectionRegistry()
        notifier = NotificationService(registry)
        healthy = await connect(registry, "agent-a")
        await connect(registry, "agent-b", fail=True)

        assert await notifier.emit_to_identity("nobody", "lead-created", {}) is False
        delivered = await notifier.emit_to_company("company-1", "lead-created", {"leadId": "lead-1"})

        assert delivered == 1
        assert events(healthy.websocket) == ["lead-created"]

    @pytest.mark.asyncio
    async def test_failing_dispatch_is_logged_not_raised(self):
        notifier = NotificationService(ConnectionRegistry())

        async def explode():
            raise RuntimeError("boom")

        task = notifier.dispatch(explode(), "test")
        await notifier.drain()

        assert task.done()
        assert task.exception() is None

    @pytest.mark.asyncio
    async def test_force_logout_sends_event_then_disconnects(self):
        registry = ConnectionRegistry()
        notifier = NotificationService(registry)
        connection = await connect(registry, "agent-a")

        assert await notifier.force_logout("agent-a") is True

        frame = connection.websocket.send_json.call_args.args[0]
        assert frame["event"] == "force-logout"
        assert frame["data"]["title"] == "Account Inactive"
        assert frame["data"]["type"] == "warning"
        connection.websocket.close.assert_awaited_once()
        assert connection.websocket.close.call_args.kwargs["code"] == FORCE_LOGOUT_CLOSE_CODE
        assert registry.lookup("agent-a") is None


@pytest.fixture
def live_registry():
    registry = ConnectionRegistry()
    app.state.notifier = NotificationService(registry)
    yield registry
    del app.state.notifier


class TestWebSocketJoin:

    def test_inactive_account_is_forced_out_without_registration(self, client, live_registry):
        inactive = make_principal("agent", "agent-a", status="inactive")

        with patch("routes.realtime.resolve_token", new=AsyncMock(return_value=inactive)):
            with client.websocket_connect("/api/v1/ws?token=stale") as ws:
                frame = ws.receive_json()
                assert frame["event"] == "force-logout"
                assert frame["data"]["reason"]
                with pytest.raises(WebSocketDisconnect) as exc:
                    ws.receive_json()

        assert exc.value.code == FORCE_LOGOUT_CLOSE_CODE
        assert live_registry.lookup("agent-a") is None

    def test_active_account_joins_channels_until_disconnect(self, client, live_registry):
        agent = make_principal("agent", "agent-a")

        with patch("routes.realtime.resolve_token", new=AsyncMock(return_value=agent)):
            with client.websocket_connect("/api/v1/ws?token=ok") as ws:
                frame = ws.receive_json()
                assert frame["event"] == "connected"
                assert frame["data"]["principalId"] == "agent-a"
                assert live_registry.lookup("agent-a") is not None
                assert len(live_registry.company_connections("company-1")) == 1

                ws.send_json({"type": "heartbeat"})
                assert ws.receive_json()["event"] == "heartbeat"

        assert live_registry.lookup("agent-a") is None

    def test_admin_joins_admin_channel(self, client, live_registry):
        admin = make_principal("admin", "admin-1")

        with patch("routes.realtime.resolve_token", new=AsyncMock(return_value=admin)):
            with client.websocket_connect("/api/v1/ws?token=ok") as ws:
                ws.receive_json()
                assert [c.principal_id for c in live_registry.admin_connections()] == ["admin-1"]

    def test_invalid_token_is_rejected(self, client, live_registry):
        with patch("routes.realtime.resolve_token", new=AsyncMock(side_effect=AuthenticationError("Not authenticated"))):
            with pytest.raises(WebSocketDisconnect):
                with client.websocket_connect("/api/v1/ws?token=bad"):
                    pass

        assert live_registry.get_stats()["total_connections"] == 0
