from datetime import datetime
from typing import Optional, TypedDict


class MessageDocument(TypedDict, total=False):
    _id: str
    conversation_id: str
    sender_id: str
    body: str
    created_at: datetime
    # position within the conversation, starting at 1
    seq: int
    # client ack
    client_message_id: Optional[str]
