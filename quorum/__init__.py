"""quorum - orchestration core for executive-role agent workers."""

from .bus import CoreHandlers, DecisionService, MessageBus
from .config import QuorumConfig, load_config
from .contracts import AgentMessage, MessageType, StateAckMessage, StateTaskMessage, VotePayload
from .errors import (
    ConcurrentModification,
    DefinitionError,
    DefinitionNotFound,
    DependencyFailure,
    InvalidDefinition,
    InvalidTransition,
    MachineNotFound,
    QuorumError,
    TransitionError,
)
from .health import HealthMonitor, SystemHealth
from .machine import DefinitionCache, StateMachineEngine
from .orchestrator import Orchestrator
from .persistence import get_repository
from .scheduler import DueEventExecutor, Scheduler, interval_to_cron
from .transports import get_transport

__version__ = "0.1.0"

__all__ = [
    "AgentMessage",
    "ConcurrentModification",
    "CoreHandlers",
    "DecisionService",
    "DefinitionCache",
    "DefinitionError",
    "DefinitionNotFound",
    "DependencyFailure",
    "DueEventExecutor",
    "HealthMonitor",
    "InvalidDefinition",
    "InvalidTransition",
    "MachineNotFound",
    "MessageBus",
    "MessageType",
    "Orchestrator",
    "QuorumConfig",
    "QuorumError",
    "Scheduler",
    "StateAckMessage",
    "StateMachineEngine",
    "StateTaskMessage",
    "SystemHealth",
    "TransitionError",
    "VotePayload",
    "get_repository",
    "get_transport",
    "interval_to_cron",
    "load_config",
]
