"""Exception taxonomy shared by the queue, the processor and the channel."""

from __future__ import annotations

from typing import Optional


class MessageServiceError(RuntimeError):
    """Base class for every error raised by the message service."""

    code = "message_service_error"


class ValidationError(MessageServiceError):
    """Raised when a submitted payload is missing or carries invalid fields."""

    code = "validation_error"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class DuplicateMessageError(ValidationError):
    """Raised when a caller reuses a ``message_id`` already stored."""

    code = "duplicate_message"


class TransientChannelError(MessageServiceError):
    """Session closed, protocol errors, timeouts: retried through backoff."""

    code = "transient_channel_error"


class ChannelNotReadyError(TransientChannelError):
    """Raised when a delivery handle is requested while the channel is not ready."""

    code = "channel_not_ready"

    def __init__(self, message: str = "Channel client not ready"):
        super().__init__(message)


class PermanentRecipientError(MessageServiceError):
    """The recipient is not a deliverable endpoint; never retried."""

    code = "permanent_recipient_error"

    def __init__(self, message: str = "Number not registered on the channel"):
        super().__init__(message)


class ConfigurationError(MessageServiceError):
    """Invalid configuration values or a channel that cannot be brought up."""

    code = "configuration_error"


class StorageError(MessageServiceError):
    """Wraps failures of the underlying job storage."""

    code = "storage_error"


class AlreadyInitializingError(MessageServiceError):
    """A second ``connect()`` raced an initialization already in progress.

    Only ever logged by the channel manager, never propagated.
    """

    code = "already_initializing"

    def __init__(self, message: str = "Channel is already being initialized"):
        super().__init__(message)
