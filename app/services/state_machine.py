from enum import Enum
from typing import Iterable


class MessageStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    ERROR = "error"


class ConversationPhase(str, Enum):
    IDLE = "idle"
    ACCUMULATING = "accumulating"
    CLAIMED = "claimed"


VALID_TRANSITIONS = {
    MessageStatus.PENDING: [MessageStatus.PROCESSING],
    MessageStatus.PROCESSING: [MessageStatus.PROCESSED, MessageStatus.ERROR],
    MessageStatus.PROCESSED: [],
    MessageStatus.ERROR: [],
}

TERMINAL_STATUSES = (MessageStatus.PROCESSED, MessageStatus.ERROR)


class InvalidTransitionError(Exception):
    def __init__(self, from_status: MessageStatus, to_status: MessageStatus):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Invalid transition: {from_status.value} -> {to_status.value}")


def can_transition(from_status: MessageStatus, to_status: MessageStatus) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_status, [])
    return to_status in allowed


def transition(from_status: MessageStatus, to_status: MessageStatus) -> MessageStatus:
    """Perform status transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_status, to_status):
        raise InvalidTransitionError(from_status, to_status)
    return to_status


def derive_phase(statuses: Iterable[str]) -> ConversationPhase:
    """Collapse the statuses of a conversation's messages into its phase."""
    seen = {MessageStatus(value) for value in statuses}
    if MessageStatus.PROCESSING in seen:
        return ConversationPhase.CLAIMED
    if MessageStatus.PENDING in seen:
        return ConversationPhase.ACCUMULATING
    return ConversationPhase.IDLE
