import logging
from typing import Any, Dict, Iterable, List, Optional, Set

from agrichat.utils.channel import Channel


logger = logging.getLogger("agrichat.websocket")


class ConnectionRegistry:
    """User id -> open channels. Owned by one gateway, mutated only on its event loop."""

    def __init__(self) -> None:
        self.active_connections: Dict[str, List[Channel]] = {}
        self.channel_owners: Dict[str, str] = {}

    def register(self, user_id: str, channel: Channel) -> None:
        if user_id not in self.active_connections:
            self.active_connections[user_id] = []
        if channel not in self.active_connections[user_id]:
            self.active_connections[user_id].append(channel)
        self.channel_owners[channel.channel_id] = user_id
        logger.info(
            "Channel registered, user has %d open",
            len(self.active_connections[user_id]),
            extra={"user_id": user_id, "channel_id": channel.channel_id},
        )

    def unregister(self, channel: Channel) -> Optional[str]:
        user_id = self.channel_owners.pop(channel.channel_id, None)
        if user_id is None:
            return None
        if user_id in self.active_connections:
            try:
                self.active_connections[user_id].remove(channel)
            except ValueError:
                pass
            if not self.active_connections[user_id]:
                del self.active_connections[user_id]
        return user_id

    def user_for(self, channel: Channel) -> Optional[str]:
        return self.channel_owners.get(channel.channel_id)

    def channels_for(self, user_id: str) -> List[Channel]:
        return list(self.active_connections.get(user_id, []))

    def is_online(self, user_id: str) -> bool:
        return bool(self.active_connections.get(user_id))

    async def deliver(
        self,
        user_ids: Iterable[str],
        event: str,
        data: Dict[str, Any],
        exclude_channel_id: Optional[str] = None,
    ) -> int:
        """Send one event to every open channel of the given users.

        Returns the number of channels that received it. A channel whose send
        fails is dropped from the registry; the others are unaffected.
        """
        sent_count = 0
        failed: Set[str] = set()
        targets: List[Channel] = []
        for user_id in dict.fromkeys(user_ids):
            for conn in self.channels_for(user_id):
                if conn.channel_id != exclude_channel_id:
                    targets.append(conn)

        for conn in targets:
            try:
                await conn.send(event, data)
                sent_count += 1
            except Exception as e:
                logger.warning(
                    "Failed to deliver %s: %s", event, e, extra={"channel_id": conn.channel_id, "event": event}
                )
                failed.add(conn.channel_id)

        for conn in targets:
            if conn.channel_id in failed:
                self.unregister(conn)
        return sent_count
