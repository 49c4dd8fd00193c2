"""
Real-time channel for Hexachats.

Each connected user has at most one websocket. Events are forwarded to a
recipient only if it is connected at the moment of sending; nothing is
queued or retried.

Server frames look like ``{"event": "newMessage", "data": {...}}``.
"""
import json
import logging
from typing import Dict, Iterable, Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status
from fastapi.concurrency import run_in_threadpool

from database import Store, get_db
from security import SESSION_COOKIE_NAME, user_from_token
from utils import now_ms

logger = logging.getLogger(__name__)

router = APIRouter()


class ConnectionManager:
    """Process-wide map of user id -> websocket."""

    def __init__(self):
        self._sockets: Dict[str, WebSocket] = {}

    def is_online(self, user_id: str) -> bool:
        return user_id in self._sockets

    @property
    def total_connections(self) -> int:
        return len(self._sockets)

    async def connect(self, user_id: str, websocket: WebSocket) -> None:
        await websocket.accept()
        previous = self._sockets.get(user_id)
        self._sockets[user_id] = websocket
        if previous is not None and previous is not websocket:
            logger.info(f"User {user_id} reconnected, replacing previous socket")

    def disconnect(self, user_id: str, websocket: WebSocket) -> bool:
        """Forget ``websocket`` if it is still the registered one for ``user_id``."""
        if self._sockets.get(user_id) is websocket:
            del self._sockets[user_id]
            return True
        return False

    async def send_to(self, user_id: str, event: str, data: dict) -> bool:
        websocket = self._sockets.get(user_id)
        if websocket is None:
            return False
        try:
            await websocket.send_json({"event": event, "data": data})
        except Exception:
            logger.warning(f"Dropping socket for {user_id} after failed send of {event}", exc_info=True)
            self.disconnect(user_id, websocket)
            return False
        return True

    async def send_to_many(self, user_ids: Iterable[str], event: str, data: dict) -> int:
        delivered = 0
        for user_id in user_ids:
            if await self.send_to(user_id, event, data):
                delivered += 1
        return delivered


manager = ConnectionManager()


def get_connection_manager() -> ConnectionManager:
    return manager


def contact_ids_of(store: Store, user_id: str):
    return [c["contact_id"] for c in store.find("contact", {"owner_id": user_id})]


def set_presence(store: Store, user_id: str, online: bool) -> None:
    user = store.find_one("user", {"id": user_id})
    if user is None:
        return
    settings = dict(user.get("settings") or {})
    settings.update({"online": online, "last_seen": now_ms()})
    store.update_one("user", {"id": user_id}, {"settings": settings})


async def handle_frame(user_id: str, frame: dict, connections: ConnectionManager) -> None:
    event = frame.get("event")
    data = frame.get("data") or {}
    if event == "typing":
        contact_id = data.get("contactId")
        if contact_id:
            await connections.send_to(contact_id, "typing", {"userId": user_id, "isTyping": bool(data.get("isTyping"))})
    else:
        logger.debug(f"Ignoring unknown event {event!r} from {user_id}")


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: Optional[str] = None,
    store: Store = Depends(get_db),
    connections: ConnectionManager = Depends(get_connection_manager),
) -> None:
    """
    Presence, typing and notification channel.

    Connect to ws://<host>/ws?token=<access token>; the session cookie works too.
    Store calls run in the threadpool so a slow backend never stalls the loop.
    """
    user = await run_in_threadpool(user_from_token, store, token or websocket.cookies.get(SESSION_COOKIE_NAME))
    if user is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    user_id = user["id"]
    await connections.connect(user_id, websocket)
    logger.info(f"User {user_id} connected")
    try:
        await run_in_threadpool(set_presence, store, user_id, True)
        contact_ids = await run_in_threadpool(contact_ids_of, store, user_id)
        await connections.send_to_many(contact_ids, "userOnline", {"userId": user_id})
        await websocket.send_json({"event": "registered", "data": {"userId": user_id}})

        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except ValueError:
                logger.debug(f"Ignoring malformed frame from {user_id}")
                continue
            if isinstance(frame, dict):
                await handle_frame(user_id, frame, connections)
    except WebSocketDisconnect:
        pass
    finally:
        if connections.disconnect(user_id, websocket):
            logger.info(f"User {user_id} disconnected")
            await run_in_threadpool(set_presence, store, user_id, False)
            contact_ids = await run_in_threadpool(contact_ids_of, store, user_id)
            await connections.send_to_many(contact_ids, "userOffline", {"userId": user_id})
