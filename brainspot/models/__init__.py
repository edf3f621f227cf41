"""ORM model exports."""

from brainspot.models.base import Base
from brainspot.models.phase import Phase, PhaseDataRequirement, PhaseTransition
from brainspot.models.phase_transition_event import PhaseTransitionEvent
from brainspot.models.session import Message, Session, SessionFieldValue

__all__ = [
    "Base",
    "Message",
    "Phase",
    "PhaseDataRequirement",
    "PhaseTransition",
    "PhaseTransitionEvent",
    "Session",
    "SessionFieldValue",
]
