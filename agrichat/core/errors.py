"""Domain errors raised by the conversation store and the gateway."""


class ChatError(Exception):

    code = "chat_error"
    status_code = 400
    default_reason = "Chat operation failed"

    def __init__(self, reason: str | None = None) -> None:
        self.reason = reason or self.default_reason
        super().__init__(self.reason)


class InvalidParticipants(ChatError):

    code = "invalid_participants"
    default_reason = "A conversation needs at least 2 distinct participants"


class ConversationNotFound(ChatError):

    code = "conversation_not_found"
    status_code = 404
    default_reason = "Conversation not found"


class NotParticipant(ChatError):

    code = "not_participant"
    status_code = 403
    default_reason = "User is not a participant of this conversation"


class EmptyBody(ChatError):

    code = "empty_body"
    default_reason = "Message body cannot be empty"


class BodyTooLong(ChatError):

    code = "body_too_long"
    default_reason = "Message body is too long"


class AuthFailed(ChatError):

    code = "auth_failed"
    status_code = 401
    default_reason = "Invalid or expired token"


class RateLimited(ChatError):

    code = "rate_limited"
    status_code = 429
    default_reason = "Too many requests, please try again later"
