from enum import Enum


class ConversationStep(str, Enum):
    NEW = "new"
    COLLECTING = "collecting"
    READY_TO_SUBMIT = "ready_to_submit"
    SUBMITTED = "submitted"


VALID_TRANSITIONS = {
    ConversationStep.NEW: [ConversationStep.COLLECTING],
    ConversationStep.COLLECTING: [ConversationStep.COLLECTING, ConversationStep.READY_TO_SUBMIT],
    # A failed handoff drops back so the requester can retry /contact.
    ConversationStep.READY_TO_SUBMIT: [ConversationStep.SUBMITTED, ConversationStep.COLLECTING],
    ConversationStep.SUBMITTED: [],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_step: ConversationStep, to_step: ConversationStep):
        self.from_step = from_step
        self.to_step = to_step
        super().__init__(f"Invalid transition: {from_step.value} -> {to_step.value}")


def can_transition(from_step: ConversationStep, to_step: ConversationStep) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_step, [])
    return to_step in allowed


def transition(from_step: ConversationStep, to_step: ConversationStep) -> ConversationStep:
    """Perform step transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_step, to_step):
        raise InvalidTransitionError(from_step, to_step)
    return to_step


def start_collecting(current: ConversationStep) -> ConversationStep:
    return transition(current, ConversationStep.COLLECTING)


def mark_ready(current: ConversationStep) -> ConversationStep:
    """Project name collected, requester asked to be contacted."""
    return transition(current, ConversationStep.READY_TO_SUBMIT)


def mark_submitted(current: ConversationStep) -> ConversationStep:
    return transition(current, ConversationStep.SUBMITTED)


def revert_to_collecting(current: ConversationStep) -> ConversationStep:
    """Handoff to the approval flow failed."""
    return transition(current, ConversationStep.COLLECTING)
