from datetime import datetime
from typing import List, Optional, TypedDict


class ConversationDocument(TypedDict, total=False):
    _id: str
    # sorted, unique, at least two entries
    participant_ids: List[str]
    # JSON array of participant_ids, unique per participant set
    participants_key: str
    created_at: datetime
    last_message_at: datetime
    last_message_preview: Optional[str]
    # number of positions reserved so far; next message gets last_seq + 1
    last_seq: int
    # creation time handed to the last reserved position, never decreases
    last_seq_at: datetime
    # seq of the message last_message_preview was taken from
    last_preview_seq: int
    # per-user unread counters (user_id -> count)
    unread_counters: dict[str, int]
