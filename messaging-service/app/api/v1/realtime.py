"""
Real-time socket endpoint.

Clients connect to /ws?token=<jwt>. Each inbound frame is a {type, data}
envelope; the type selects a handler from ACTION_HANDLERS. A handler may
return a reply for the sending socket only. Everything addressed to other
users goes through the dispatcher.
"""

import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from pydantic import ValidationError as PydanticValidationError

from app.middleware.auth import InvalidTokenError, decode_token
from app.middleware.error_handler import AppError
from app.models.realtime_events import (
    ClientAction,
    MessageIdPayload,
    PeerPayload,
    RealtimeEvent,
    SendMessagePayload,
    WsInbound,
    outbound,
)
from app.realtime.dispatcher import DeliveryDispatcher
from app.realtime.presence import ClientConnection

logger = logging.getLogger(__name__)

router = APIRouter()

WS_UNAUTHORIZED = 4401

Handler = Callable[[DeliveryDispatcher, ClientConnection, Dict[str, Any]], Awaitable[Optional[dict]]]


async def handle_send_message(dispatcher, connection, data):
    temp_id = data.get("clientTempId")
    try:
        payload = SendMessagePayload(**data)
    except PydanticValidationError as e:
        return outbound(
            RealtimeEvent.ACK,
            clientTempId=temp_id,
            success=False,
            error=e.errors()[0]["msg"],
        )

    try:
        message = await dispatcher.send_message(
            connection.user_id,
            payload.receiverId,
            payload.content,
            task_id=payload.taskId,
            background=True,
        )
    except AppError as e:
        return outbound(RealtimeEvent.ACK, clientTempId=temp_id, success=False, error=e.message)
    except Exception as e:
        logger.error(
            f"Failed to store message from {connection.user_id}: {e}",
            extra={"user_id": connection.user_id, "receiver_id": payload.receiverId},
            exc_info=True,
        )
        return outbound(
            RealtimeEvent.ACK,
            clientTempId=temp_id,
            success=False,
            error="Message could not be saved",
        )

    return outbound(
        RealtimeEvent.ACK,
        clientTempId=temp_id,
        success=True,
        messageId=message.id,
        status=message.status,
    )


async def handle_join_conversation(dispatcher, connection, data):
    payload = PeerPayload(**data)
    await dispatcher.join_conversation(connection, payload.peerId)
    return None


async def handle_leave_conversation(dispatcher, connection, data):
    payload = PeerPayload(**data)
    dispatcher.leave_conversation(connection, payload.peerId)
    return None


async def handle_mark_conversation_read(dispatcher, connection, data):
    payload = PeerPayload(**data)
    await dispatcher.mark_conversation_read(connection.user_id, payload.peerId)
    return None


async def handle_message_received(dispatcher, connection, data):
    payload = MessageIdPayload(**data)
    await dispatcher.acknowledge_delivery(connection.user_id, payload.messageId)
    return None


async def handle_message_read(dispatcher, connection, data):
    payload = MessageIdPayload(**data)
    await dispatcher.mark_message_read(connection.user_id, payload.messageId)
    return None


async def handle_ping(dispatcher, connection, data):
    return outbound(RealtimeEvent.PONG)


ACTION_HANDLERS: Dict[ClientAction, Handler] = {
    ClientAction.SEND_MESSAGE: handle_send_message,
    ClientAction.JOIN_CONVERSATION: handle_join_conversation,
    ClientAction.LEAVE_CONVERSATION: handle_leave_conversation,
    ClientAction.MARK_CONVERSATION_READ: handle_mark_conversation_read,
    ClientAction.MESSAGE_RECEIVED: handle_message_received,
    ClientAction.MESSAGE_READ: handle_message_read,
    ClientAction.PING: handle_ping,
}


async def handle_frame(dispatcher: DeliveryDispatcher, connection: ClientConnection, raw: str) -> Optional[dict]:
    """
    Run one inbound frame. Bad frames get an error reply; the socket
    stays open either way.
    """
    try:
        frame = WsInbound(**json.loads(raw))
    except (json.JSONDecodeError, TypeError, PydanticValidationError):
        logger.warning(f"Unrecognised frame from {connection.user_id}: {raw[:200]}")
        return outbound(RealtimeEvent.ERROR, message="Unknown or malformed event")

    handler = ACTION_HANDLERS[ClientAction(frame.type)]
    try:
        return await handler(dispatcher, connection, frame.data)
    except PydanticValidationError as e:
        return outbound(RealtimeEvent.ERROR, event=frame.type.value, message=e.errors()[0]["msg"])
    except AppError as e:
        return outbound(RealtimeEvent.ERROR, event=frame.type.value, message=e.message)
    except Exception as e:
        logger.error(f"{frame.type.value} from {connection.user_id} failed: {e}", exc_info=True)
        return outbound(RealtimeEvent.ERROR, event=frame.type.value, message="Internal error")


@router.websocket("/ws")
async def realtime_socket(websocket: WebSocket, token: Optional[str] = Query(None)):
    await websocket.accept()

    try:
        user = decode_token(token or "")
    except InvalidTokenError as e:
        logger.warning(f"Socket rejected: {e}")
        await websocket.close(code=WS_UNAUTHORIZED, reason="Authentication failed")
        return

    presence = websocket.app.state.presence
    dispatcher = websocket.app.state.dispatcher

    connection = ClientConnection(user.user_id, websocket)
    presence.register(user.user_id, connection)

    try:
        while True:
            raw = await websocket.receive_text()
            reply = await handle_frame(dispatcher, connection, raw)
            if reply is not None:
                await websocket.send_json(reply)
    except WebSocketDisconnect:
        logger.debug(f"Socket {connection.id} for {user.user_id} disconnected")
    except Exception as e:
        logger.error(f"Socket {connection.id} for {user.user_id} closed on error: {e}", exc_info=True)
    finally:
        presence.unregister(user.user_id, connection)
