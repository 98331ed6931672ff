"""
Chat WebSocket gateway.

Clients connect to /chats/ws with an access token (Authorization header,
?token= query parameter or a "bearer <token>" subprotocol) and exchange JSON
frames shaped {"event", "ackId", "data"}:

- chat:join {threadId} subscribes the socket to room thread:{threadId}
- chat:send {threadId, clientMessageId?, kind: "text", text} stores a message
  and broadcasts chat:message to the room

Every client frame is answered with an ack frame carrying the same ackId.
"""

import json
import logging
import uuid
from collections import defaultdict
from contextlib import contextmanager
from functools import partial
from typing import Any, Callable, ContextManager, Iterator, Optional

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect
from sqlalchemy.orm import sessionmaker

from ...auth import resolve_user_from_token
from ...clock import SystemClock, get_clock
from ...database import get_session_factory
from ...models import User
from ...request_context import set_trace_id
from .rate_limit import ChatRateLimiter, get_chat_rate_limiter
from .schemas import ChatMessageResponse
from .service import ChatService, message_to_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chats", tags=["Chats"])

ServiceOpener = Callable[[], ContextManager[ChatService]]

ERROR_CODES = {
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "INVALID_ARGUMENT",
}


def thread_room(thread_id: str) -> str:
    return f"thread:{thread_id}"


class ChatConnectionManager:
    """Track which sockets are subscribed to which thread rooms"""

    def __init__(self) -> None:
        self.rooms: dict[str, set[WebSocket]] = defaultdict(set)

    def join(self, room: str, websocket: WebSocket) -> None:
        self.rooms[room].add(websocket)

    def leave_all(self, websocket: WebSocket) -> None:
        for room in list(self.rooms):
            members = self.rooms[room]
            members.discard(websocket)
            if not members:
                del self.rooms[room]

    async def broadcast(self, room: str, payload: dict[str, Any]) -> None:
        for websocket in list(self.rooms.get(room, ())):
            try:
                await websocket.send_json(payload)
            except (RuntimeError, WebSocketDisconnect) as e:
                logger.warning(f"⚠️ Dropping dead socket from {room}: {e}")
                self.leave_all(websocket)

    async def broadcast_message(self, thread_id: str, message: ChatMessageResponse) -> None:
        await self.broadcast(
            thread_room(thread_id),
            {"event": "chat:message", "data": {"message": message.model_dump(mode="json")}},
        )


manager = ChatConnectionManager()


def _normalise_token(candidate: Optional[str]) -> Optional[str]:
    if not candidate:
        return None
    value = candidate.strip()
    if value.lower().startswith("bearer "):
        _, _, remainder = value.partition(" ")
        value = remainder.strip()
    return value or None


def extract_token(websocket: WebSocket) -> tuple[Optional[str], Optional[str]]:
    """Find the access token. Returns (token, subprotocol to echo on accept)."""
    auth_header = websocket.headers.get("Authorization")
    if auth_header and auth_header.lower().startswith("bearer "):
        token = _normalise_token(auth_header)
        if token:
            return token, None

    token = _normalise_token(websocket.query_params.get("token"))
    if token:
        return token, None

    for proto in websocket.scope.get("subprotocols") or []:
        if proto and proto.lower().startswith("bearer "):
            token = _normalise_token(proto)
            if token:
                return token, proto

    return None, None


def _ack_ok(ack_id: Any, data: Any) -> dict[str, Any]:
    return {"event": "ack", "ackId": ack_id, "ok": True, "data": data}


def _ack_error(ack_id: Any, status_code: int, message: str, code: Optional[str] = None) -> dict:
    return {
        "event": "ack",
        "ackId": ack_id,
        "ok": False,
        "error": {"code": code or ERROR_CODES.get(status_code, "INTERNAL_ERROR"), "message": message},
    }


def _ack_from_http_error(ack_id: Any, exc: HTTPException) -> dict[str, Any]:
    if isinstance(exc.detail, dict):
        return _ack_error(
            ack_id,
            exc.status_code,
            str(exc.detail.get("message", "Error")),
            code=exc.detail.get("code"),
        )
    return _ack_error(ack_id, exc.status_code, str(exc.detail))


@contextmanager
def _chat_service(
    session_factory: sessionmaker, rate_limiter: ChatRateLimiter, clock: SystemClock
) -> Iterator[ChatService]:
    """ChatService bound to a session that is closed when the frame is handled"""
    with session_factory() as db:
        yield ChatService(db, rate_limiter, clock)


async def _handle_join(
    websocket: WebSocket, open_service: ServiceOpener, user: User, data: dict[str, Any]
) -> dict[str, Any]:
    thread_id = data.get("threadId")
    if not isinstance(thread_id, str) or not thread_id:
        raise HTTPException(status_code=422, detail="Invalid argument: threadId required")

    with open_service() as service:
        service.ensure_participant(user, thread_id)
    manager.join(thread_room(thread_id), websocket)
    logger.info(f"🔗 User {user.id} joined {thread_room(thread_id)}")
    return {"threadId": thread_id}


async def _handle_send(open_service: ServiceOpener, user: User, data: dict[str, Any]) -> dict[str, Any]:
    thread_id = data.get("threadId")
    text = data.get("text")
    if not isinstance(thread_id, str) or not thread_id or not isinstance(text, str) or not text:
        raise HTTPException(
            status_code=422, detail="Invalid argument: threadId and text required"
        )
    if data.get("kind", "text") != "text":
        raise HTTPException(
            status_code=422, detail='Invalid argument: only kind="text" is supported'
        )

    client_message_id = data.get("clientMessageId")
    if client_message_id is not None and not isinstance(client_message_id, str):
        raise HTTPException(status_code=422, detail="Invalid argument: clientMessageId")

    with open_service() as service:
        message = service.create_message(user, thread_id, "text", text, client_message_id)
        response = message_to_response(message)
    # Retries are broadcast too so late joiners converge on the stored message
    await manager.broadcast_message(thread_id, response)
    return {"message": response.model_dump(mode="json")}


@router.websocket("/ws")
async def chat_socket(
    websocket: WebSocket,
    session_factory: sessionmaker = Depends(get_session_factory),
    rate_limiter: ChatRateLimiter = Depends(get_chat_rate_limiter),
    clock: SystemClock = Depends(get_clock),
):
    token, subprotocol = extract_token(websocket)
    user = None
    if token:
        with session_factory() as db:
            user = resolve_user_from_token(token, db)
    if not user:
        logger.warning("⚠️ Rejected chat socket without a valid token")
        await websocket.close(code=1008)
        return

    await websocket.accept(subprotocol=subprotocol)
    set_trace_id(str(uuid.uuid4()))
    logger.info(f"🔌 Chat socket connected for {user.role} {user.id}")

    # No session stays checked out between frames
    open_service = partial(_chat_service, session_factory, rate_limiter, clock)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except ValueError:
                await websocket.send_json(_ack_error(None, 422, "Invalid JSON frame"))
                continue
            if not isinstance(frame, dict):
                await websocket.send_json(_ack_error(None, 422, "Invalid frame"))
                continue

            event = frame.get("event")
            ack_id = frame.get("ackId")
            data = frame.get("data") or {}
            if not isinstance(data, dict):
                await websocket.send_json(_ack_error(ack_id, 422, "Invalid argument: data"))
                continue

            try:
                if event == "chat:join":
                    result = await _handle_join(websocket, open_service, user, data)
                elif event == "chat:send":
                    result = await _handle_send(open_service, user, data)
                else:
                    await websocket.send_json(_ack_error(ack_id, 422, f"Unknown event: {event}"))
                    continue
            except HTTPException as e:
                await websocket.send_json(_ack_from_http_error(ack_id, e))
                continue
            except Exception as e:
                logger.error(f"❌ Chat socket {event} failed for user {user.id}: {e}", exc_info=True)
                await websocket.send_json(_ack_error(ack_id, 500, "Internal server error"))
                continue

            await websocket.send_json(_ack_ok(ack_id, result))
    except WebSocketDisconnect:
        logger.info(f"🔌 Chat socket disconnected for user {user.id}")
    finally:
        manager.leave_all(websocket)
