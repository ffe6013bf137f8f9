"""Agents deciding who speaks in a group chat."""

from .mentions import is_trivial_acknowledgment, mentions_name
from .reply_decider import LLMReplyDecider
from .moderator import LLMModeratorSelector
from .responder_selector import ResponderSelector
from .persona_optimizer import PersonaPromptOptimizer, PersonaOptimizationError

__all__ = [
    "is_trivial_acknowledgment",
    "mentions_name",
    "LLMReplyDecider",
    "LLMModeratorSelector",
    "ResponderSelector",
    "PersonaPromptOptimizer",
    "PersonaOptimizationError",
]
