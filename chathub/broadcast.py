"""WebSocket broadcast channel for chat messages, opinion progress and the issue feed."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Set
import asyncio
import logging

from fastapi import WebSocket

from chathub.store import IssueStore, StoreError

logger = logging.getLogger(__name__)

CHAT_TYPES = {"chat_message", "simple_response", "typing", "stop_typing", "error", "opinion_update"}
DEFAULT_AUTHOR = "Sistema"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def normalize_chat_envelope(fields: Dict[str, Any]) -> Dict[str, Any]:
    text = ""
    for key in ("text", "message", "response", "body"):
        value = fields.get(key)
        if isinstance(value, str) and value:
            text = value
            break
    msg_type = fields.get("type") if fields.get("type") in CHAT_TYPES else "chat_message"
    envelope = {
        key: value for key, value in fields.items()
        if key not in ("text", "message", "response", "body", "type", "author")
    }
    envelope.update({
        "type": msg_type,
        "author": fields.get("author") or DEFAULT_AUTHOR,
        "text": text,
        "timestamp": fields.get("timestamp") or _now(),
        "is_system_message": bool(fields.get("is_system_message", msg_type != "chat_message")),
    })
    return envelope


class Broadcaster:
    """Best-effort fan-out to live connections; nothing is queued for absent clients."""

    def __init__(self, read_attempts: int = 3, read_backoff: float = 0.1, send_timeout: float = 5.0):
        self.connections: Set[WebSocket] = set()
        self.send_timeout = send_timeout
        self.read_attempts = read_attempts
        self.read_backoff = read_backoff

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self.connections.add(websocket)
        logger.info(f"Client connected ({len(self.connections)} live)")

    def disconnect(self, websocket: WebSocket) -> None:
        self.connections.discard(websocket)

    async def _send(self, connection: WebSocket, message: Dict[str, Any]) -> bool:
        try:
            await asyncio.wait_for(connection.send_json(message), timeout=self.send_timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning(f"Client did not accept a message within {self.send_timeout}s, dropping it")
            return False
        except Exception:
            return False

    async def broadcast(self, message: Dict[str, Any]) -> int:
        connections = list(self.connections)
        if not connections:
            return 0
        sent = await asyncio.gather(*(self._send(connection, message) for connection in connections))
        dead = [connection for connection, ok in zip(connections, sent) if not ok]
        for connection in dead:
            self.connections.discard(connection)
        if dead:
            logger.info(f"Dropped {len(dead)} dead connection(s)")
        return len(connections) - len(dead)

    async def broadcast_opinion(self, session_id: str, event: str, **fields: Any) -> int:
        message = {
            "type": "opinion_update",
            "event": event,
            "session_id": session_id,
            "timestamp": _now(),
            **fields,
        }
        return await self.broadcast(message)

    async def broadcast_chat(self, **fields: Any) -> int:
        return await self.broadcast(normalize_chat_envelope(fields))

    async def _read_feed(self, store: IssueStore) -> Dict[str, Any] | None:
        for attempt in range(1, self.read_attempts + 1):
            try:
                return await store.feed()
            except StoreError as exc:
                if attempt == self.read_attempts:
                    logger.critical(f"Issue feed unreadable after {attempt} attempts ({store.path}): {exc}")
                    return None
                logger.warning(f"Issue feed read attempt {attempt} failed: {exc}")
                await asyncio.sleep(self.read_backoff)
        return None

    async def broadcast_issues(self, store: IssueStore) -> int:
        if not self.connections:
            return 0
        feed = await self._read_feed(store)
        if feed is None:
            return 0
        return await self.broadcast({"type": "issues_update", "timestamp": _now(), **feed})

    async def send_issues(self, websocket: WebSocket, store: IssueStore) -> None:
        feed = await self._read_feed(store)
        if feed is not None:
            await websocket.send_json({"type": "issues_update", "timestamp": _now(), **feed})

    async def close_all(self, code: int = 1000) -> None:
        for connection in list(self.connections):
            try:
                await connection.close(code=code)
            except Exception:
                logger.debug("Connection already closed", exc_info=True)
        self.connections.clear()
