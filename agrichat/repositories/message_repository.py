from datetime import datetime
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from agrichat.models.message import MessageDocument
from agrichat.repositories.conversation_repository import to_object_id


class MessageRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["messages"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("conversation_id", ASCENDING), ("seq", ASCENDING)], unique=True)

    async def save_message(
        self,
        conversation_id,
        sender_id: str,
        body: str,
        seq: int,
        created_at: datetime,
        client_message_id: Optional[str] = None,
    ) -> MessageDocument:
        doc: Dict[str, Any] = {
            "conversation_id": to_object_id(conversation_id),
            "sender_id": sender_id,
            "body": body,
            "created_at": created_at,
            "seq": seq,
            "client_message_id": client_message_id,
        }
        result = await self.collection.insert_one(doc)
        doc["_id"] = str(result.inserted_id)
        doc["conversation_id"] = str(doc["conversation_id"])
        return doc

    async def get_messages_by_conversation(
        self,
        conversation_id,
        limit: Optional[int] = None,
        before_seq: Optional[int] = None,
    ) -> List[MessageDocument]:
        query: Dict[str, Any] = {"conversation_id": to_object_id(conversation_id)}
        if before_seq is not None:
            query["seq"] = {"$lt": before_seq}
        if limit is None:
            cur = self.collection.find(query).sort("seq", ASCENDING)
            items = await cur.to_list(length=None)
        else:
            # newest page first, then flip to chronological order
            cur = self.collection.find(query).sort("seq", DESCENDING).limit(limit)
            items = list(reversed(await cur.to_list(length=limit)))
        for it in items:
            it["_id"] = str(it.get("_id"))
            it["conversation_id"] = str(it.get("conversation_id"))
        return items
