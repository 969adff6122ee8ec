# multichat/errors.py


class ChatError(Exception):
    """
    Base class for every policy/domain error raised by the chat core.
    `code` is the stable identifier the transport sends back to clients.
    """

    code = "chat_error"

    def __init__(self, message: str = "", **details):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def to_dict(self) -> dict:
        out = {"code": self.code, "message": self.message}
        if self.details:
            out["details"] = self.details
        return out


class PermissionDenied(ChatError):
    code = "permission_denied"


class CapacityExceeded(ChatError):
    code = "capacity_exceeded"


class NotAMember(ChatError):
    code = "not_a_member"


class OwnershipTransferRequired(ChatError):
    code = "ownership_transfer_required"


class InsufficientBalance(ChatError):
    code = "insufficient_balance"


class GenerationFailed(ChatError):
    """LLM capability error. Retryable by the job layer."""

    code = "generation_failed"
    retryable = True


class DecryptionFailed(ChatError):
    code = "decryption_failed"


class CompressionConflict(ChatError):
    """Another compression already covers the intended range. Resolved as a no-op."""

    code = "compression_conflict"


class ConversationNotFound(ChatError):
    code = "conversation_not_found"


class MessageNotFound(ChatError):
    code = "message_not_found"


class InvalidRequest(ChatError):
    code = "invalid_request"


class JobAbandoned(ChatError):
    """A running job stopped heartbeating after its last allowed attempt."""

    code = "job_abandoned"


def is_retryable(exc: BaseException) -> bool:
    return bool(getattr(exc, "retryable", False))
