import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from agrichat.models.conversation import ConversationDocument


def to_object_id(value) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def participants_key(participant_ids: List[str]) -> str:
    # ids are opaque strings, so no plain separator is safe
    return json.dumps(participant_ids, separators=(",", ":"))


class ConversationRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["conversations"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("participants_key", ASCENDING)], unique=True)
        await self.collection.create_index([("participant_ids", ASCENDING)])
        await self.collection.create_index([("last_message_at", DESCENDING)])

    async def get_or_create(self, participant_ids: List[str]) -> ConversationDocument:
        # participant_ids must already be sorted and unique
        key = participants_key(participant_ids)
        existing = await self.collection.find_one({"participants_key": key})
        if existing:
            existing["_id"] = str(existing.get("_id"))
            return existing
        now = datetime.now(timezone.utc)
        doc: Dict[str, Any] = {
            "participant_ids": participant_ids,
            "participants_key": key,
            "created_at": now,
            "last_message_at": now,
            "last_message_preview": None,
            "last_seq": 0,
            "last_seq_at": now,
            "last_preview_seq": 0,
            "unread_counters": {uid: 0 for uid in participant_ids},
        }
        try:
            result = await self.collection.insert_one(doc)
        except DuplicateKeyError:
            # lost the race against a concurrent create for the same set
            existing = await self.collection.find_one({"participants_key": key})
            existing["_id"] = str(existing.get("_id"))
            return existing
        doc["_id"] = str(result.inserted_id)
        return doc

    async def get(self, conversation_id) -> Optional[ConversationDocument]:
        oid = to_object_id(conversation_id)
        if oid is None:
            return None
        doc = await self.collection.find_one({"_id": oid})
        if doc:
            doc["_id"] = str(doc["_id"])
        return doc

    async def reserve_seq(self, conversation_id, now: datetime) -> Optional[ConversationDocument]:
        """Atomically take the next position in the conversation.

        The returned document carries the reserved ``last_seq`` and a
        ``last_seq_at`` that never goes backwards, whatever the caller's
        clock says. Nothing visible to readers changes here.
        """
        doc = await self.collection.find_one_and_update(
            {"_id": to_object_id(conversation_id)},
            {"$inc": {"last_seq": 1}, "$max": {"last_seq_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        if doc:
            doc["_id"] = str(doc["_id"])
        return doc

    async def record_message(
        self,
        conversation_id,
        seq: int,
        preview: str,
        receiver_ids: List[str],
        created_at: datetime,
    ) -> None:
        """Account for a stored message: unread counters, activity and preview.

        The preview only moves forward, so a slower writer holding an older
        ``seq`` cannot overwrite a newer preview.
        """
        oid = to_object_id(conversation_id)
        update: Dict[str, Any] = {"$max": {"last_message_at": created_at}}
        if receiver_ids:
            update["$inc"] = {f"unread_counters.{uid}": 1 for uid in receiver_ids}
        await self.collection.update_one({"_id": oid}, update)
        await self.collection.update_one(
            {"_id": oid, "last_preview_seq": {"$lt": seq}},
            {"$set": {"last_message_preview": preview, "last_preview_seq": seq}},
        )

    async def reset_unread(self, conversation_id, user_id: str) -> None:
        await self.collection.update_one(
            {"_id": to_object_id(conversation_id)},
            {"$set": {f"unread_counters.{user_id}": 0}},
        )

    async def list_for_user(self, user_id: str, limit: int = 20, page: int = 1) -> List[ConversationDocument]:
        query = {"participant_ids": user_id}
        sort = [("last_message_at", DESCENDING), ("_id", DESCENDING)]
        cursor_db = self.collection.find(query).sort(sort).skip((page - 1) * limit).limit(limit)
        items = await cursor_db.to_list(length=limit)
        for it in items:
            it["_id"] = str(it.get("_id"))
        return items
