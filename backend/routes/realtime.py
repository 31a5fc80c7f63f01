"""
WebSocket Routes

Live lead notifications. Connect with: ws://host/api/v1/ws?token=<jwt>

Incoming frames:
- {"type": "heartbeat"}
- {"type": "accept-customer", "customer_id": "..."}

Outgoing frames:
- {"event": "...", "data": {...}, "timestamp": "..."}
"""
import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, Query

from middleware import resolve_token
from services.connection_registry import Connection, FORCE_LOGOUT_CLOSE_CODE
from services.customer_service import CustomerService
from services.notification_service import (
    EVENT_CONNECTED,
    EVENT_ERROR,
    EVENT_FORCE_LOGOUT,
    EVENT_LEAD_ALREADY_ACCEPTED,
    FORCE_LOGOUT_TITLE,
    force_logout_payload,
    get_notifier,
)
from utils.errors import CRMError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["realtime"])

INVALID_TOKEN_CLOSE_CODE = 4001


async def _handle_message(connection: Connection, data: dict, service: CustomerService, principal):
    message_type = data.get("type") if isinstance(data, dict) else None

    if message_type == "heartbeat":
        await connection.send_event("heartbeat", {"status": "ok"})
        return

    if message_type == "accept-customer":
        customer_id = data.get("customer_id")
        if not customer_id:
            await connection.send_event(EVENT_ERROR, {"message": "customer_id is required"})
            return
        try:
            result = await service.accept(customer_id, principal)
        except CRMError as e:
            await connection.send_event(EVENT_ERROR, {"message": e.message, "error_code": e.error_code})
            return
        if not result.accepted:
            # Winner and creator were already notified when the lead was taken
            await connection.send_event(EVENT_LEAD_ALREADY_ACCEPTED, {
                "leadId": customer_id,
                "agentName": result.accepted_by_name,
                "message": result.message,
            })
        return

    await connection.send_event(EVENT_ERROR, {"message": f"Unknown message type: {message_type}"})


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: str = Query(..., description="Access token"),
):
    try:
        principal = await resolve_token(token)
    except CRMError as e:
        logger.info(f"[WS] Rejected connection: {e.message}")
        await websocket.close(code=INVALID_TOKEN_CLOSE_CODE, reason=e.message)
        return

    await websocket.accept()

    # The token can outlive the account; check status at join time
    if not principal.is_active:
        logger.info(f"[WS] Inactive {principal.role} {principal.id} tried to join, forcing logout")
        connection = Connection(websocket=websocket, principal_id=principal.id, role=principal.role)
        await connection.send_event(EVENT_FORCE_LOGOUT, force_logout_payload())
        await websocket.close(code=FORCE_LOGOUT_CLOSE_CODE, reason=FORCE_LOGOUT_TITLE)
        return

    notifier = get_notifier(websocket.app)
    if notifier is None:
        logger.error("[WS] Notifier not initialised, refusing connection")
        await websocket.close(code=1011, reason="Notifications unavailable")
        return
    registry = notifier.registry
    connection = Connection(
        websocket=websocket,
        principal_id=principal.id,
        role=principal.role,
        name=principal.name,
        company_id=principal.company_id,
    )
    await registry.join_identity(connection)
    if principal.company_id:
        await registry.join_company(principal.id, principal.company_id)
    if principal.is_admin:
        await registry.join_admin_channel(principal.id)

    await connection.send_event(EVENT_CONNECTED, {"principalId": principal.id, "role": principal.role})
    service = CustomerService(notifier)

    try:
        while True:
            try:
                data = await websocket.receive_json()
            except (json.JSONDecodeError, ValueError):
                # Ignore malformed frames
                continue
            await _handle_message(connection, data, service, principal)
    except WebSocketDisconnect:
        logger.info(f"[WS] {principal.id} disconnected")
    except Exception as e:
        logger.error(f"[WS] Connection error for {principal.id}: {e}")
    finally:
        await registry.remove(principal.id, connection)
