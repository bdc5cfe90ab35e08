"""World-interaction mode: round/event state machine, directors and service."""

from .director import Director, LLMDirector, RuleDirector
from .service import WorldInteraction

__all__ = ["Director", "LLMDirector", "RuleDirector", "WorldInteraction"]
