"""Message bus, built-in handlers and the decision subsystem."""

from .channels import agent_channel, channel_for, task_queue
from .decisions import DecisionService, LoggingNotifier, Notifier
from .handlers import CoreHandlers
from .message_bus import MessageBus

__all__ = [
    "CoreHandlers",
    "DecisionService",
    "LoggingNotifier",
    "MessageBus",
    "Notifier",
    "agent_channel",
    "channel_for",
    "task_queue",
]
