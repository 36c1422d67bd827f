# chatkeep/memory/errors.py


class ChatkeepError(Exception):
    """Base class for every error raised inside chatkeep."""


class CapacityExceeded(ChatkeepError):
    """
    The key/value medium refused a write because the stored total would
    exceed its capacity. Consumed by the conversation store's degradation
    ladder; never surfaced to callers of ConversationStore.save().
    """

    def __init__(self, key: str, needed: int, capacity: int) -> None:
        super().__init__(f"write to {key!r} needs {needed} bytes; capacity is {capacity}")
        self.key = key
        self.needed = needed
        self.capacity = capacity


class MalformedStoredData(ChatkeepError):
    """Stored payload could not be parsed into the expected shape."""


class CollaboratorFailure(ChatkeepError):
    """A call to the chat, summarization or image gateway failed."""

    def __init__(self, message: str, status_code: int = 0) -> None:
        super().__init__(message)
        self.status_code = status_code


class QuotaExceeded(ChatkeepError):
    """The daily image-generation quota is used up."""
