from auditbot.services.state_machine import (
    ConversationStep,
    InvalidTransitionError,
    can_transition,
    mark_ready,
    mark_submitted,
    revert_to_collecting,
    start_collecting,
    transition,
)
