from typing import Optional


class RelayError(Exception):
    """Base class for every failure the relay knows how to handle."""


class InvalidPayload(RelayError):
    """Inbound webhook event that cannot be turned into a message."""


class StoreError(RelayError):
    """Conversation store query or claim failed."""


class MediaError(RelayError):
    """Voice or photo could not be turned into oracle content."""


class TranscriptionError(MediaError):
    pass


class ImageProcessingError(MediaError):
    pass


class OracleError(RelayError):
    """Completion API timed out, refused the request or answered garbage."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class DeliveryError(RelayError):
    """Outbound message could not be delivered to the chat platform."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)
