"""Client side of the chat channel: one WebSocket per logged-in session."""
import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Set, Tuple

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake


logger = logging.getLogger("agrichat.client")

Connector = Callable[[str], Awaitable[Any]]


class ChatClientSession:
    """Owns at most one channel per (user, session lifetime).

    There is no reconnection: once the channel of a user has been attempted,
    logging the same user in again does not open another one. Use it as an
    async context manager so the channel is released on every exit path.
    """

    def __init__(self, url: str, connector: Optional[Connector] = None) -> None:
        self._url = url
        self._connect = connector or websockets.connect
        self._connection = None
        self._user_id: Optional[str] = None
        self._attempted: Set[str] = set()
        self._seen_ids: Set[str] = set()
        self.messages: List[Dict[str, Any]] = []
        self.last_error: Optional[str] = None

    async def __aenter__(self) -> "ChatClientSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def channel(self):
        return self._connection

    @property
    def connected(self) -> bool:
        return self._connection is not None

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    async def login(self, user_id: str, token: str):
        if self._user_id == user_id and self._connection is not None:
            return self._connection
        if self._user_id is not None and self._user_id != user_id:
            await self.logout()
        self._user_id = user_id
        if user_id in self._attempted:
            logger.info("Channel for %s already attempted in this session", user_id)
            return self._connection
        self._attempted.add(user_id)
        try:
            connection = await self._connect(self._url)
        except (OSError, InvalidHandshake) as exc:
            logger.warning("Could not open chat channel to %s: %s", self._url, exc)
            self.last_error = str(exc)
            return None
        self._connection = connection
        try:
            await self._send_frame("authenticate", {"token": token})
        except ConnectionClosed as exc:
            self.last_error = str(exc)
            self._connection = None
            await connection.close()
            return None
        return connection

    async def logout(self) -> None:
        await self.close()
        self._user_id = None
        self.messages = []
        self._seen_ids = set()

    async def close(self) -> None:
        connection, self._connection = self._connection, None
        if connection is not None:
            await connection.close()

    async def send(self, conversation_id: str, body: str, client_message_id: Optional[str] = None) -> None:
        if self._connection is None:
            raise RuntimeError("Chat channel is not connected")
        data = {"conversation_id": conversation_id, "body": body}
        if client_message_id:
            data["client_message_id"] = client_message_id
        await self._send_frame("send", data)

    async def typing(self, conversation_id: str, is_typing: bool = True) -> None:
        if self._connection is None:
            return
        await self._send_frame("typing", {"conversation_id": conversation_id, "is_typing": is_typing})

    async def read(self, conversation_id: str) -> None:
        if self._connection is None:
            return
        await self._send_frame("read", {"conversation_id": conversation_id})

    async def listen(self) -> AsyncIterator[Tuple[str, Dict[str, Any]]]:
        """Yield ``(event, data)`` frames, keeping ``messages`` up to date."""
        connection = self._connection
        if connection is None:
            return
        try:
            async for raw in connection:
                try:
                    frame = json.loads(raw)
                except ValueError:
                    logger.warning("Ignoring non-JSON frame from server")
                    continue
                event = frame.get("event")
                data = frame.get("data") or {}
                self._apply(event, data)
                yield event, data
        except ConnectionClosed as exc:
            logger.info("Chat channel closed: %s", exc)
        if self._connection is connection:
            self._connection = None

    def _apply(self, event: Optional[str], data: Dict[str, Any]) -> None:
        if event in ("messageReceived", "messageSent"):
            message = data.get("message") or {}
            message_id = message.get("id")
            if message_id and message_id not in self._seen_ids:
                self._seen_ids.add(message_id)
                self.messages.append(message)
        elif event == "authError":
            self.last_error = data.get("reason")

    async def _send_frame(self, event: str, data: Dict[str, Any]) -> None:
        await self._connection.send(json.dumps({"event": event, "data": data}))
