"""Error taxonomy for the relay core.

None of these are fatal: the router catches them, logs, and keeps serving.
"""


class RelayError(Exception):
    """Base class for every error raised by the relay core."""


class RecordValidationError(RelayError):
    """Malformed input or a duplicate message id."""


class RecordNotFound(RelayError):
    def __init__(self, message_id: str):
        super().__init__(f"message {message_id!r} not found")
        self.message_id = message_id


class InvalidState(RelayError):
    """Mutation not allowed in the record's current state (redacted or file)."""


class PayloadTooLarge(RelayError):
    def __init__(self, size: int, limit: int):
        super().__init__(f"payload of {size} bytes exceeds limit of {limit} bytes")
        self.size = size
        self.limit = limit


class PersistenceFailure(RelayError):
    """Writing the history file failed. In-memory state stays authoritative."""
