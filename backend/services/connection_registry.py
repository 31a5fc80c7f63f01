"""
Live connection registry.

Tracks which principal holds which WebSocket, which company channel each
principal joined, and which principals joined the admin channel. Owned by the
application lifespan (start/stop) and injected into the notification service.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set, Any

from fastapi import WebSocket

logger = logging.getLogger(__name__)

# Application-defined close code for forced logouts
FORCE_LOGOUT_CLOSE_CODE = 4003


@dataclass
class Connection:
    """One principal's live socket."""
    websocket: WebSocket
    principal_id: str
    role: str
    name: str = ""
    company_id: Optional[str] = None
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_activity: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    messages_sent: int = 0

    async def send_event(self, event: str, data: Dict[str, Any]):
        await self.websocket.send_json({
            "event": event,
            "data": data,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })
        self.messages_sent += 1
        self.last_activity = datetime.now(timezone.utc)


class ConnectionRegistry:
    """
    Register/lookup/remove live connections.

    - identity channel: principal_id -> Connection (latest socket wins)
    - company channel: company_id -> {principal_id}
    - admin channel: {principal_id}
    """

    def __init__(self):
        self._identities: Dict[str, Connection] = {}
        self._companies: Dict[str, Set[str]] = {}
        self._admins: Set[str] = set()
        self._lock = asyncio.Lock()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        self._running = True
        logger.info("Connection registry started")

    async def stop(self):
        """Close every live socket and forget all channels."""
        async with self._lock:
            connections = list(self._identities.values())
            self._identities.clear()
            self._companies.clear()
            self._admins.clear()
            self._running = False

        for connection in connections:
            await self._close(connection, code=1001, reason="Server shutting down")
        logger.info(f"Connection registry stopped ({len(connections)} connections closed)")

    async def join_identity(self, connection: Connection):
        """Register a connection under its principal id, replacing any older socket."""
        async with self._lock:
            previous = self._identities.get(connection.principal_id)
            self._identities[connection.principal_id] = connection

        if previous is not None and previous is not connection:
            await self._close(previous, code=1000, reason="Replaced by a newer connection")
        logger.info(f"[WS] {connection.role} {connection.principal_id} joined identity channel")

    async def join_company(self, principal_id: str, company_id: str):
        if not company_id:
            return
        async with self._lock:
            self._companies.setdefault(company_id, set()).add(principal_id)
            connection = self._identities.get(principal_id)
            if connection:
                connection.company_id = company_id

    async def join_admin_channel(self, principal_id: str):
        async with self._lock:
            self._admins.add(principal_id)

    def lookup(self, principal_id: str) -> Optional[Connection]:
        return self._identities.get(principal_id)

    async def remove(self, principal_id: str, connection: Optional[Connection] = None) -> bool:
        """
        Drop a principal's registrations.

        When `connection` is given, only remove if it is still the registered one,
        so a replaced socket's disconnect does not evict its successor.
        """
        async with self._lock:
            current = self._identities.get(principal_id)
            if current is None or (connection is not None and current is not connection):
                return False
            del self._identities[principal_id]
            self._admins.discard(principal_id)
            for company_id in list(self._companies):
                members = self._companies[company_id]
                members.discard(principal_id)
                if not members:
                    del self._companies[company_id]
        logger.info(f"[WS] {principal_id} left identity channel")
        return True

    def company_connections(
        self,
        company_id: str,
        role: Optional[str] = None,
        exclude: Optional[Set[str]] = None,
    ) -> List[Connection]:
        exclude = exclude or set()
        connections = []
        for principal_id in self._companies.get(company_id, set()):
            if principal_id in exclude:
                continue
            connection = self._identities.get(principal_id)
            if connection and (role is None or connection.role == role):
                connections.append(connection)
        return connections

    def admin_connections(self) -> List[Connection]:
        return [self._identities[pid] for pid in self._admins if pid in self._identities]

    async def force_disconnect(self, connection: Connection, reason: str = "Forced logout"):
        await self.remove(connection.principal_id, connection)
        await self._close(connection, code=FORCE_LOGOUT_CLOSE_CODE, reason=reason)

    async def _close(self, connection: Connection, code: int, reason: str):
        try:
            await connection.websocket.close(code=code, reason=reason)
        except Exception as e:
            # Socket already gone
            logger.debug(f"[WS] Close failed for {connection.principal_id}: {e}")

    def get_stats(self) -> Dict[str, Any]:
        return {
            "total_connections": len(self._identities),
            "admin_connections": len(self._admins),
            "connections_by_company": {
                company_id: len(members) for company_id, members in self._companies.items()
            },
        }
