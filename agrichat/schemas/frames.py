"""WebSocket frame envelopes."""
from typing import Any, Dict, Optional

from pydantic import BaseModel


class Inbound(BaseModel):
    """Client -> server: authenticate | send | typing | read."""

    event: str
    data: Dict[str, Any] = {}


class Outbound(BaseModel):
    """Server -> client: authenticated | messageReceived | messageSent | messageRead | userTyping | authError | sendError."""

    event: str
    data: Dict[str, Any] = {}


class SendFrame(BaseModel):

    conversation_id: str
    body: str
    client_message_id: Optional[str] = None


class TypingFrame(BaseModel):

    conversation_id: str
    is_typing: bool = True


class ReadFrame(BaseModel):

    conversation_id: str


class AuthenticateFrame(BaseModel):

    token: str
