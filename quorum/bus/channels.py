"""Channel and queue naming."""

from __future__ import annotations

from ..constants import (
    AGENT_CHANNEL_PREFIX,
    BROADCAST_CHANNEL,
    CLEVEL_CHANNEL,
    HEAD_CHANNEL,
    ORCHESTRATOR_CHANNEL,
    STATE_ACK_CHANNEL,
    TASK_QUEUE_PREFIX,
    URGENT_QUEUE,
)

TIER_CHANNELS = {
    "all": BROADCAST_CHANNEL,
    "head": HEAD_CHANNEL,
    "clevel": CLEVEL_CHANNEL,
}


def agent_channel(agent_id: str) -> str:
    return f"{AGENT_CHANNEL_PREFIX}{agent_id}"


def task_queue(agent_id: str) -> str:
    return f"{TASK_QUEUE_PREFIX}{agent_id}"


def channel_for(target: str) -> str:
    """Resolve a message ``to`` field into the channel that carries it."""
    if target in TIER_CHANNELS:
        return TIER_CHANNELS[target]
    if target == "orchestrator":
        return ORCHESTRATOR_CHANNEL
    return agent_channel(target)


ORCHESTRATOR_SUBSCRIPTIONS = (
    BROADCAST_CHANNEL,
    HEAD_CHANNEL,
    CLEVEL_CHANNEL,
    ORCHESTRATOR_CHANNEL,
    STATE_ACK_CHANNEL,
)

__all__ = [
    "BROADCAST_CHANNEL",
    "CLEVEL_CHANNEL",
    "HEAD_CHANNEL",
    "ORCHESTRATOR_CHANNEL",
    "ORCHESTRATOR_SUBSCRIPTIONS",
    "STATE_ACK_CHANNEL",
    "TIER_CHANNELS",
    "URGENT_QUEUE",
    "agent_channel",
    "channel_for",
    "task_queue",
]
