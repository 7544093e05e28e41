"""Shared constants for channel names, roles and engine defaults."""

ORCHESTRATOR_ID = "orchestrator"

# Pub/sub channels
BROADCAST_CHANNEL = "channel:broadcast"
HEAD_CHANNEL = "channel:head"
CLEVEL_CHANNEL = "channel:clevel"
ORCHESTRATOR_CHANNEL = "channel:orchestrator"
STATE_ACK_CHANNEL = "channel:state:ack"
AGENT_CHANNEL_PREFIX = "channel:agent:"

# List queues
TASK_QUEUE_PREFIX = "queue:tasks:"
URGENT_QUEUE = "queue:urgent"

HEAD_ROLES = ("ceo", "dao")
CLEVEL_ROLES = ("cmo", "cto", "cfo", "coo", "cco")

DEFAULT_LOOP_INTERVALS = {
    "ceo": 1800,
    "dao": 14400,
    "cmo": 7200,
    "cto": 3600,
    "cfo": 14400,
    "coo": 3600,
    "cco": 43200,
}

DEFAULT_PRIORITY = 50
# Pseudo state recorded as the target of a finishing transition
COMPLETE_STATE = "COMPLETE"
DEFAULT_STATE_TIMEOUT_MS = 300_000
DEFAULT_MAX_RETRIES = 3
DEFAULT_MAX_VETO_ROUNDS = 3
DEFAULT_STATUS_FIELDS = ["metrics", "tasks", "blockers"]
