"""Real-time message gateway.

Bridges the conversation store to live client channels. Each channel is
served by its own task and its frames are handled one at a time, in arrival
order. Appends to one conversation are serialized together with their
fan-out so every connected participant sees messages in ``seq`` order.

Delivery is at-least-once from the store's point of view: the write is
durable before fan-out starts, and a failed fan-out is never rolled back.
Clients reconcile through the message history after reconnecting.

Sends and conversation creation are rate-limited per user; read receipts
are fanned out like any other event.
"""
import asyncio
import inspect
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

from pydantic import ValidationError
from pymongo.errors import PyMongoError

from agrichat.core.errors import AuthFailed, ChatError, RateLimited
from agrichat.repositories.conversation_repository import to_object_id
from agrichat.schemas.chat import MessagePublic
from agrichat.schemas.frames import AuthenticateFrame, ReadFrame, SendFrame, TypingFrame
from agrichat.services.chat_service import ChatService
from agrichat.utils.channel import (
    AUTH_FAILED_CLOSE_CODE,
    Channel,
    ChannelClosed,
    ChannelState,
    InvalidFrame,
)
from agrichat.utils.rate_limit import CREATE_CONVERSATION, SEND, ChatRateLimiter
from agrichat.utils.realtime_bus import FANOUT_CHANNEL, NoopBus
from agrichat.utils.security import verify_token
from agrichat.utils.websocket_manager import ConnectionRegistry


logger = logging.getLogger("agrichat.gateway")

TokenVerifier = Callable[[str], Union[str, Awaitable[str]]]


class MessageGateway:

    def __init__(
        self,
        store: ChatService,
        registry: Optional[ConnectionRegistry] = None,
        token_verifier: TokenVerifier = verify_token,
        bus=None,
        rate_limiter: Optional[ChatRateLimiter] = None,
    ) -> None:
        self._store = store
        self.rate_limiter = rate_limiter or ChatRateLimiter()
        self.registry = registry or ConnectionRegistry()
        self._verify_token = token_verifier
        self._bus = bus or NoopBus()
        self._conversation_locks: Dict[str, list] = {}
        self._subscriber = None
        self._subscriber_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if not getattr(self._bus, "enabled", False):
            return
        self._subscriber = await self._bus.subscribe(FANOUT_CHANNEL, self.deliver_envelope)
        self._subscriber_task = asyncio.create_task(self._subscriber.run())

    async def stop(self) -> None:
        if self._subscriber is not None:
            await self._subscriber.cancel()
        if self._subscriber_task is not None:
            self._subscriber_task.cancel()
            try:
                await self._subscriber_task
            except asyncio.CancelledError:
                pass
        self._subscriber = None
        self._subscriber_task = None

    # Channel lifecycle

    async def serve(self, channel: Channel, token: Optional[str] = None) -> None:
        """Run one channel from CONNECTING until CLOSED."""
        state = ChannelState.CONNECTING
        try:
            if token is None:
                token = await self._receive_token(channel)
            if await self.on_channel_authenticated(channel, token) is None:
                state = ChannelState.CLOSED
                return
            state = ChannelState.AUTHENTICATED
            while True:
                try:
                    event, data = await channel.receive()
                except InvalidFrame as exc:
                    await self._send_error(channel, "invalid_event", str(exc))
                    continue
                await self.dispatch(channel, event, data)
        except ChannelClosed:
            logger.info("Channel closed by peer", extra={"channel_id": channel.channel_id})
        finally:
            # the channel is registered before its ack is sent, so a task
            # cancelled during that send is still AUTHENTICATED here
            if state is ChannelState.AUTHENTICATED or self.registry.user_for(channel) is not None:
                await self.on_disconnect(channel)

    async def _receive_token(self, channel: Channel) -> str:
        try:
            event, data = await channel.receive()
        except InvalidFrame:
            return ""
        if event != "authenticate":
            return ""
        try:
            return AuthenticateFrame.model_validate(data).token
        except ValidationError:
            return ""

    async def on_channel_authenticated(self, channel: Channel, token: str) -> Optional[str]:
        try:
            user_id = self._verify_token(token)
            if inspect.isawaitable(user_id):
                user_id = await user_id
        except AuthFailed as exc:
            logger.info(
                "Channel failed authentication: %s", exc.reason, extra={"channel_id": channel.channel_id}
            )
            await self._safe_send(channel, "authError", {"reason": exc.reason})
            await channel.close(code=AUTH_FAILED_CLOSE_CODE, reason=exc.code)
            return None
        self.registry.register(user_id, channel)
        await self._safe_send(channel, "authenticated", {"user_id": user_id})
        return user_id

    async def on_disconnect(self, channel: Channel) -> None:
        user_id = self.registry.unregister(channel)
        if user_id is None:
            return
        if not self.registry.is_online(user_id):
            logger.info("User is offline", extra={"user_id": user_id, "channel_id": channel.channel_id})

    async def dispatch(self, channel: Channel, event: str, data: Dict[str, Any]) -> None:
        try:
            if event == "send":
                frame = SendFrame.model_validate(data)
                await self.on_send(channel, frame.conversation_id, frame.body, frame.client_message_id)
            elif event == "typing":
                frame = TypingFrame.model_validate(data)
                await self.on_typing(channel, frame.conversation_id, frame.is_typing)
            elif event == "read":
                frame = ReadFrame.model_validate(data)
                await self.on_read(channel, frame.conversation_id)
            else:
                await self._send_error(channel, "invalid_event", f"Unsupported event '{event}'")
        except ValidationError:
            await self._send_error(channel, "invalid_event", f"Malformed '{event}' payload")

    # Events

    async def on_send(
        self,
        channel: Channel,
        conversation_id: str,
        body: str,
        client_message_id: Optional[str] = None,
    ) -> Optional[MessagePublic]:
        sender_id = self.registry.user_for(channel)
        context = {"conversation_id": conversation_id, "client_message_id": client_message_id}
        if sender_id is None:
            error = AuthFailed("Channel is not authenticated")
            await self._send_error(channel, error.code, error.reason, **context)
            return None
        try:
            return await self.submit(sender_id, conversation_id, body, client_message_id, origin=channel)
        except ChatError as exc:
            await self._send_error(channel, exc.code, exc.reason, **context)
        except PyMongoError as exc:
            logger.warning(
                "Store error while sending: %s",
                exc,
                extra={"user_id": sender_id, "conversation_id": conversation_id},
            )
            await self._send_error(channel, "store_unavailable", "Message could not be stored", **context)
        return None

    async def submit(
        self,
        sender_id: str,
        conversation_id: str,
        body: str,
        client_message_id: Optional[str] = None,
        origin: Optional[Channel] = None,
    ) -> MessagePublic:
        """Append a message, ack the origin channel, and fan it out.

        Raises ``RateLimited`` before touching the store when the sender is
        over its send limit. Store errors propagate to the caller; nothing is
        broadcast for them.
        """
        if not await self.rate_limiter.hit(SEND, sender_id):
            raise RateLimited("Too many messages sent, please try again later")
        async with self._ordered(conversation_id):
            message, participant_ids = await self._store.send_message(
                conversation_id, sender_id, body, client_message_id
            )
            payload = {"message": message.model_dump(mode="json")}
            if origin is not None:
                await self._safe_send(origin, "messageSent", payload)
            await self.broadcast(participant_ids, "messageReceived", payload, exclude=origin)
        return message

    async def create_conversation(self, creator_id: str, participant_ids: Iterable[str]):
        if not await self.rate_limiter.hit(CREATE_CONVERSATION, creator_id):
            raise RateLimited("Too many conversations created, please try again later")
        return await self._store.create_or_get_conversation([creator_id, *participant_ids])

    async def on_typing(self, channel: Channel, conversation_id: str, is_typing: bool) -> None:
        user_id = self.registry.user_for(channel)
        if user_id is None:
            error = AuthFailed("Channel is not authenticated")
            await self._send_error(channel, error.code, error.reason, conversation_id=conversation_id)
            return
        try:
            convo = await self._store.get_conversation_for_participant(conversation_id, user_id)
        except ChatError as exc:
            await self._send_error(channel, exc.code, exc.reason, conversation_id=conversation_id)
            return
        others = [uid for uid in convo["participant_ids"] if uid != user_id]
        await self.broadcast(
            others,
            "userTyping",
            {"conversation_id": conversation_id, "user_id": user_id, "is_typing": is_typing},
        )

    async def on_read(self, channel: Channel, conversation_id: str) -> None:
        user_id = self.registry.user_for(channel)
        if user_id is None:
            error = AuthFailed("Channel is not authenticated")
            await self._send_error(channel, error.code, error.reason, conversation_id=conversation_id)
            return
        try:
            await self.mark_read(conversation_id, user_id, origin=channel)
        except ChatError as exc:
            await self._send_error(channel, exc.code, exc.reason, conversation_id=conversation_id)

    async def mark_read(self, conversation_id: str, reader_id: str, origin: Optional[Channel] = None) -> None:
        """Reset the reader's unread counter and tell every other channel about it.

        The reader's other channels get ``messageRead`` too, so their unread
        badges clear.
        """
        participant_ids = await self._store.mark_read(conversation_id, reader_id)
        await self.broadcast(
            participant_ids,
            "messageRead",
            {"conversation_id": conversation_id, "reader_id": reader_id},
            exclude=origin,
        )

    # Fan-out

    async def broadcast(
        self,
        user_ids: Iterable[str],
        event: str,
        data: Dict[str, Any],
        exclude: Optional[Channel] = None,
    ) -> None:
        exclude_id = exclude.channel_id if exclude is not None else None
        user_ids = list(user_ids)
        if getattr(self._bus, "enabled", False):
            envelope = {"user_ids": user_ids, "exclude_channel_id": exclude_id, "event": event, "data": data}
            await self._bus.publish(FANOUT_CHANNEL, json.dumps(envelope))
            return
        await self.registry.deliver(user_ids, event, data, exclude_channel_id=exclude_id)

    async def deliver_envelope(self, raw: str) -> None:
        try:
            envelope = json.loads(raw)
            user_ids: List[str] = envelope["user_ids"]
            event = envelope["event"]
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("Dropping malformed fan-out envelope: %s", exc)
            return
        await self.registry.deliver(
            user_ids,
            event,
            envelope.get("data") or {},
            exclude_channel_id=envelope.get("exclude_channel_id"),
        )

    # Helpers

    @asynccontextmanager
    async def _ordered(self, conversation_id: str):
        # one lock per conversation, whatever spelling of its id the caller used
        oid = to_object_id(conversation_id)
        key = str(oid) if oid is not None else conversation_id
        entry = self._conversation_locks.get(key)
        if entry is None:
            entry = self._conversation_locks[key] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._conversation_locks[key]

    async def _send_error(self, channel: Channel, code: str, reason: str, **extra: Any) -> None:
        await self._safe_send(channel, "sendError", {"code": code, "reason": reason, **extra})

    async def _safe_send(self, channel: Channel, event: str, data: Dict[str, Any]) -> None:
        try:
            await channel.send(event, data)
        except ChannelClosed:
            logger.info(
                "Could not send %s, channel already closed", event, extra={"channel_id": channel.channel_id}
            )
