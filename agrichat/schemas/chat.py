from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ConversationPublic(BaseModel):

    id: str
    participant_ids: List[str]
    created_at: datetime
    last_message_at: Optional[datetime] = None
    last_message_preview: Optional[str] = None
    unread_count: int = 0

    @classmethod
    def from_document(cls, doc: Dict[str, Any], viewer_id: Optional[str] = None) -> "ConversationPublic":
        counters = doc.get("unread_counters") or {}
        return cls(
            id=str(doc["_id"]),
            participant_ids=list(doc["participant_ids"]),
            created_at=doc["created_at"],
            last_message_at=doc.get("last_message_at"),
            last_message_preview=doc.get("last_message_preview"),
            unread_count=counters.get(viewer_id, 0) if viewer_id else 0,
        )


class MessagePublic(BaseModel):

    id: str
    conversation_id: str
    sender_id: str
    body: str
    created_at: datetime
    seq: int
    client_message_id: Optional[str] = None

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "MessagePublic":
        return cls(
            id=str(doc["_id"]),
            conversation_id=str(doc["conversation_id"]),
            sender_id=doc["sender_id"],
            body=doc["body"],
            created_at=doc["created_at"],
            seq=doc["seq"],
            client_message_id=doc.get("client_message_id"),
        )


class ConversationCreate(BaseModel):

    participant_ids: List[str] = Field(min_length=1)


class MessageCreate(BaseModel):

    body: str
    client_message_id: Optional[str] = None
