"""Workflow state machine engine."""

from .cache import DefinitionCache, load_definitions_from_path, validate_definition
from .engine import MACHINE_EVENTS, StateMachineEngine
from .templating import evaluate_skip_condition, interpolate_prompt
from .transitions import VALID_TRANSITIONS, can_transition, is_terminal, validate_transition

__all__ = [
    "DefinitionCache",
    "MACHINE_EVENTS",
    "StateMachineEngine",
    "VALID_TRANSITIONS",
    "can_transition",
    "evaluate_skip_condition",
    "interpolate_prompt",
    "is_terminal",
    "load_definitions_from_path",
    "validate_definition",
]
