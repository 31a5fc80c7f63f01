"""
Real-time notification fan-out.

Delivers lead lifecycle events over the live connections held by the
ConnectionRegistry. Targets are always one of:
- a single principal (identity channel)
- a company (company channel, optionally narrowed by role)
- the admin channel

Delivery is fire-and-forget: lifecycle methods schedule a background task and
return immediately. A missing connection or a failed send is logged and never
reaches the caller, whose database mutation has already committed.
"""
import asyncio
import logging
from typing import Any, Awaitable, Dict, Iterable, List, Optional, Set

from services.connection_registry import Connection, ConnectionRegistry

logger = logging.getLogger(__name__)

EVENT_CONNECTED = "connected"
EVENT_LEAD_CREATED = "lead-created"
EVENT_LEAD_BROADCASTED = "lead-broadcasted"
EVENT_LEAD_ACCEPTED = "lead-accepted"
EVENT_LEAD_ALREADY_ACCEPTED = "lead-already-accepted"
EVENT_LEAD_DECLINED = "lead-declined"
EVENT_LEAD_STATUS_CHANGED = "lead-status-changed"
EVENT_FORCE_LOGOUT = "force-logout"
EVENT_ERROR = "error"

FORCE_LOGOUT_TITLE = "Account Inactive"
FORCE_LOGOUT_MESSAGE = "Your account has been deactivated. Please contact your administrator."


def force_logout_payload(reason: str = FORCE_LOGOUT_MESSAGE) -> Dict[str, Any]:
    return {
        "reason": reason,
        "title": FORCE_LOGOUT_TITLE,
        "message": reason,
        "type": "warning",
    }


class NotificationService:
    """Publishes typed events to identity, company and admin channels."""

    def __init__(self, registry: ConnectionRegistry):
        self.registry = registry
        self._pending: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Transport primitives
    # ------------------------------------------------------------------

    async def emit_to_identity(self, principal_id: str, event: str, payload: Dict[str, Any]) -> bool:
        connection = self.registry.lookup(principal_id)
        if connection is None:
            logger.debug(f"[WS] No live connection for {principal_id}, dropping {event}")
            return False
        return await self._deliver(connection, event, payload)

    async def emit_to_company(
        self,
        company_id: str,
        event: str,
        payload: Dict[str, Any],
        role: Optional[str] = None,
        exclude: Optional[Iterable[str]] = None,
    ) -> int:
        connections = self.registry.company_connections(
            company_id, role=role, exclude=set(exclude or ())
        )
        return await self._deliver_many(connections, event, payload)

    async def emit_to_admins(self, event: str, payload: Dict[str, Any]) -> int:
        return await self._deliver_many(self.registry.admin_connections(), event, payload)

    async def force_logout(self, principal_id: str, reason: str = FORCE_LOGOUT_MESSAGE) -> bool:
        """Tell a live session its account is gone, then drop it."""
        connection = self.registry.lookup(principal_id)
        if connection is None:
            return False
        await self._deliver(connection, EVENT_FORCE_LOGOUT, force_logout_payload(reason))
        await self.registry.force_disconnect(connection, reason=FORCE_LOGOUT_TITLE)
        logger.info(f"[WS] Forced logout for {principal_id}")
        return True

    async def _deliver(self, connection: Connection, event: str, payload: Dict[str, Any]) -> bool:
        try:
            await connection.send_event(event, payload)
            return True
        except Exception as e:
            logger.warning(f"[WS] Failed to deliver {event} to {connection.principal_id}: {e}")
            return False

    async def _deliver_many(self, connections: List[Connection], event: str, payload: Dict[str, Any]) -> int:
        if not connections:
            return 0
        results = await asyncio.gather(*(self._deliver(c, event, payload) for c in connections))
        return sum(1 for delivered in results if delivered)

    # ------------------------------------------------------------------
    # Fire-and-forget dispatch
    # ------------------------------------------------------------------

    def dispatch(self, coro: Awaitable[Any], label: str) -> Optional[asyncio.Task]:
        """Run `coro` in the background; failures are logged, never raised."""
        try:
            task = asyncio.get_running_loop().create_task(self._guarded(coro, label))
        except RuntimeError:
            # No running loop (sync context); nothing can be delivered anyway
            coro.close()
            logger.warning(f"[WS] No event loop, dropped {label}")
            return None
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _guarded(self, coro: Awaitable[Any], label: str):
        try:
            await coro
        except Exception as e:
            logger.error(f"[WS] Notification {label} failed: {e}", exc_info=True)

    async def drain(self):
        """Wait for in-flight notifications (shutdown and tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ------------------------------------------------------------------
    # Lead lifecycle events
    # ------------------------------------------------------------------

    def lead_created(self, customer: Dict[str, Any]):
        payload = {
            "leadId": customer["customer_id"],
            "companyId": customer["company_id"],
            "createdBy": customer.get("createdBy"),
            "fullName": customer.get("full_name"),
        }
        return self.dispatch(
            self.emit_to_company(customer["company_id"], EVENT_LEAD_CREATED, payload),
            EVENT_LEAD_CREATED,
        )

    def lead_broadcasted(self, customer_id: str, agent_ids: Iterable[str], by_name: str):
        payload = {"leadId": customer_id, "by": by_name}

        async def _fan_out():
            for agent_id in agent_ids:
                await self.emit_to_identity(agent_id, EVENT_LEAD_BROADCASTED, payload)

        return self.dispatch(_fan_out(), EVENT_LEAD_BROADCASTED)

    def lead_accepted(self, customer: Dict[str, Any], agent_id: str, agent_name: str):
        """Winner hears success, the creator hears who took it, other agents hear it's gone."""
        customer_id = customer["customer_id"]
        creator_id = (customer.get("createdBy") or {}).get("id")
        accepted = {"leadId": customer_id, "agentId": agent_id, "agentName": agent_name}
        taken = {
            "leadId": customer_id,
            "agentName": agent_name,
            "message": f"Customer already accepted by {agent_name}",
        }

        async def _fan_out():
            await self.emit_to_identity(agent_id, EVENT_LEAD_ACCEPTED, accepted)
            if creator_id and creator_id != agent_id:
                await self.emit_to_identity(creator_id, EVENT_LEAD_ACCEPTED, accepted)
            await self.emit_to_company(
                customer["company_id"],
                EVENT_LEAD_ALREADY_ACCEPTED,
                taken,
                role="agent",
                exclude={agent_id},
            )

        return self.dispatch(_fan_out(), EVENT_LEAD_ACCEPTED)

    def lead_declined(self, customer: Dict[str, Any], agent_id: str, agent_name: str):
        customer_id = customer["customer_id"]
        creator_id = (customer.get("createdBy") or {}).get("id")
        payload = {"leadId": customer_id, "agentId": agent_id, "agentName": agent_name}

        async def _fan_out():
            await self.emit_to_identity(agent_id, EVENT_LEAD_DECLINED, payload)
            await self.emit_to_admins(EVENT_LEAD_DECLINED, payload)
            if creator_id and creator_id != agent_id:
                await self.emit_to_identity(creator_id, EVENT_LEAD_DECLINED, payload)

        return self.dispatch(_fan_out(), EVENT_LEAD_DECLINED)

    def lead_status_changed(self, customer: Dict[str, Any], updated_by: Dict[str, Any]):
        payload = {
            "leadId": customer["customer_id"],
            "newStatus": customer["status"],
            "updatedBy": updated_by,
        }
        targets = [
            (customer.get("createdBy") or {}).get("id"),
            customer.get("acceptedBy"),
        ]

        async def _fan_out():
            for principal_id in dict.fromkeys(t for t in targets if t):
                await self.emit_to_identity(principal_id, EVENT_LEAD_STATUS_CHANGED, payload)

        return self.dispatch(_fan_out(), EVENT_LEAD_STATUS_CHANGED)


def get_notifier(app) -> Optional[NotificationService]:
    """The process-wide notifier created in the application lifespan."""
    return getattr(app.state, "notifier", None)
