from app.services.payload import (
    InboundEvent,
    MessageKind,
    Other,
    Photo,
    Text,
    Video,
    Voice,
    build_inbound_event,
)
from app.services.state_machine import (
    ConversationPhase,
    InvalidTransitionError,
    MessageStatus,
    can_transition,
    derive_phase,
    transition,
)
from app.services.window_policy import WindowAction, WindowDecision, WindowPolicy
