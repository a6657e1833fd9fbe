import asyncio
import uuid

import pytest
from mongomock_motor import AsyncMongoMockClient

from agrichat.core.errors import AuthFailed
from agrichat.repositories.conversation_repository import ConversationRepository
from agrichat.repositories.message_repository import MessageRepository
from agrichat.services.chat_service import ChatService
from agrichat.services.gateway import MessageGateway
from agrichat.utils.channel import ChannelClosed


class FakeChannel:
    """In-memory channel: frames pushed to ``inbound`` are what the client sent."""

    def __init__(self) -> None:
        self.channel_id = uuid.uuid4().hex
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.sent = []
        self.closed = None
        self.fail_sends = False

    async def send(self, event, data):
        if self.closed is not None or self.fail_sends:
            raise ChannelClosed("channel closed")
        self.sent.append((event, data))

    async def receive(self):
        item = await self.inbound.get()
        if item is None:
            raise ChannelClosed("peer left")
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self, code=1000, reason=""):
        self.closed = (code, reason)

    def push(self, event, data=None):
        self.inbound.put_nowait((event, data or {}))

    def hang_up(self):
        self.inbound.put_nowait(None)

    def events(self, name):
        return [data for event, data in self.sent if event == name]


def fake_verifier(token: str) -> str:
    if not token or not token.startswith("token-"):
        raise AuthFailed()
    return token[len("token-"):]


@pytest.fixture
def db():
    client = AsyncMongoMockClient()
    return client[f"agrichat_test_{uuid.uuid4().hex}"]


@pytest.fixture
async def service(db):
    convo_repo = ConversationRepository(db)
    msg_repo = MessageRepository(db)
    await convo_repo.ensure_indexes()
    await msg_repo.ensure_indexes()
    return ChatService(msg_repo, convo_repo, max_message_length=50)


@pytest.fixture
def gateway(service):
    return MessageGateway(service, token_verifier=fake_verifier)


@pytest.fixture
def make_channel():
    return FakeChannel


@pytest.fixture
def connect(gateway):
    async def _connect(user_id):
        channel = FakeChannel()
        assert await gateway.on_channel_authenticated(channel, f"token-{user_id}") == user_id
        channel.sent.clear()
        return channel

    return _connect


@pytest.fixture
def token_for():
    from jose import jwt

    from agrichat.core.config import settings

    def _token_for(user_id):
        return jwt.encode({"sub": user_id}, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)

    return _token_for
