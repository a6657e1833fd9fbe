from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from agrichat.core.config import settings
from agrichat.core.errors import (
    BodyTooLong,
    ConversationNotFound,
    EmptyBody,
    InvalidParticipants,
    NotParticipant,
)
from agrichat.repositories.conversation_repository import ConversationRepository
from agrichat.repositories.message_repository import MessageRepository
from agrichat.schemas.chat import ConversationPublic, MessagePublic


PREVIEW_LENGTH = 200


class ChatService:
    """Conversation store: every call goes straight to MongoDB, nothing is cached."""

    def __init__(
        self,
        message_repo: MessageRepository,
        conversation_repo: ConversationRepository,
        max_message_length: Optional[int] = None,
    ) -> None:
        self._message_repo = message_repo
        self._conversation_repo = conversation_repo
        self._max_message_length = max_message_length or settings.MAX_MESSAGE_LENGTH

    async def create_or_get_conversation(self, participant_ids: Iterable[str]) -> ConversationPublic:
        participants = sorted({uid for uid in participant_ids if uid})
        if len(participants) < 2:
            raise InvalidParticipants()
        convo = await self._conversation_repo.get_or_create(participants)
        return ConversationPublic.from_document(convo)

    async def get_conversation_for_participant(self, conversation_id: str, user_id: str) -> Dict[str, Any]:
        convo = await self._conversation_repo.get(conversation_id)
        if not convo:
            raise ConversationNotFound()
        if user_id not in convo["participant_ids"]:
            raise NotParticipant()
        return convo

    async def send_message(
        self,
        conversation_id: str,
        sender_id: str,
        body: str,
        client_message_id: Optional[str] = None,
    ) -> Tuple[MessagePublic, List[str]]:
        """Append a message and return it with the conversation's participant ids.

        All validation happens before the first write, so a rejected call
        leaves the store untouched.
        """
        convo = await self.get_conversation_for_participant(conversation_id, sender_id)
        content = (body or "").strip()
        if not content:
            raise EmptyBody()
        if len(content) > self._max_message_length:
            raise BodyTooLong(f"Message body exceeds {self._max_message_length} characters")

        participants = list(convo["participant_ids"])
        receivers = [uid for uid in participants if uid != sender_id]
        reserved = await self._conversation_repo.reserve_seq(convo["_id"], datetime.now(timezone.utc))
        if not reserved:
            raise ConversationNotFound()
        seq = reserved["last_seq"]
        created_at = reserved["last_seq_at"]
        # a failed insert leaves a gap in seq and nothing else
        saved = await self._message_repo.save_message(
            conversation_id=convo["_id"],
            sender_id=sender_id,
            body=content,
            seq=seq,
            created_at=created_at,
            client_message_id=client_message_id,
        )
        await self._conversation_repo.record_message(
            convo["_id"], seq, content[:PREVIEW_LENGTH], receivers, created_at
        )
        return MessagePublic.from_document(saved), participants

    async def append_message(
        self,
        conversation_id: str,
        sender_id: str,
        body: str,
        client_message_id: Optional[str] = None,
    ) -> MessagePublic:
        message, _ = await self.send_message(conversation_id, sender_id, body, client_message_id)
        return message

    async def list_conversations_for_user(self, user_id: str, limit: int = 20, page: int = 1) -> List[ConversationPublic]:
        items = await self._conversation_repo.list_for_user(user_id, limit=limit, page=page)
        return [ConversationPublic.from_document(it, viewer_id=user_id) for it in items]

    async def list_messages(
        self,
        conversation_id: str,
        user_id: str,
        limit: Optional[int] = None,
        before_seq: Optional[int] = None,
    ) -> List[MessagePublic]:
        convo = await self.get_conversation_for_participant(conversation_id, user_id)
        items = await self._message_repo.get_messages_by_conversation(convo["_id"], limit=limit, before_seq=before_seq)
        return [MessagePublic.from_document(it) for it in items]

    async def mark_read(self, conversation_id: str, user_id: str) -> List[str]:
        """Reset the reader's unread counter; returns the conversation's participant ids."""
        convo = await self.get_conversation_for_participant(conversation_id, user_id)
        await self._conversation_repo.reset_unread(convo["_id"], user_id)
        return list(convo["participant_ids"])
