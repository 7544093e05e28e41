from __future__ import annotations

import os
from typing import Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    CLEVEL_ROLES,
    DEFAULT_LOOP_INTERVALS,
    DEFAULT_MAX_VETO_ROUNDS,
    HEAD_ROLES,
    ORCHESTRATOR_ID,
)


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class AgentConfig(BaseModel):
    """Per-role agent settings."""

    loop_interval: int = 3600
    tier: Literal["head", "clevel"] = "clevel"
    active: bool = True


class DecisionTierConfig(BaseModel):
    """Approval requirements for one decision tier."""

    ceo_required: bool = True
    dao_required: bool = True
    human_required: bool = False
    timeout_seconds: Optional[int] = None
    auto_approve_on_timeout: bool = False


class SchedulerConfig(BaseModel):
    """Intervals (seconds) of the built-in scheduler jobs."""

    timeout_check_interval: int = 30
    workflow_schedule_interval: int = 60
    due_event_interval: int = 60
    urgent_queue_interval: int = 5
    urgent_batch_size: int = 10
    due_event_batch_size: int = 10
    due_event_deadline_seconds: int = 300
    decision_timeout_interval: int = 300
    health_check_interval: int = 300
    daily_digest_cron: str = "0 9 * * *"
    agent_loops_enabled: bool = True


class ContainerConfig(BaseModel):
    """Container runtime health provider settings."""

    portainer_url: Optional[str] = None
    portainer_api_key: Optional[str] = None
    endpoint_id: int = 1
    name_prefix: str = "quorum-"


def _default_agents() -> Dict[str, AgentConfig]:
    agents = {}
    for role, interval in DEFAULT_LOOP_INTERVALS.items():
        tier = "head" if role in HEAD_ROLES else "clevel"
        agents[role] = AgentConfig(loop_interval=interval, tier=tier)
    return agents


def _default_decision_tiers() -> Dict[str, DecisionTierConfig]:
    return {
        "operational": DecisionTierConfig(ceo_required=False, dao_required=False),
        "minor": DecisionTierConfig(
            dao_required=False, timeout_seconds=4 * 3600, auto_approve_on_timeout=True
        ),
        "major": DecisionTierConfig(timeout_seconds=24 * 3600),
        "critical": DecisionTierConfig(human_required=True, timeout_seconds=48 * 3600),
    }


class QuorumConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    database_url: Optional[str] = None
    orchestrator_id: str = ORCHESTRATOR_ID
    max_veto_rounds: int = DEFAULT_MAX_VETO_ROUNDS
    definitions_path: Optional[str] = None
    log_level: str = "INFO"
    agents: Dict[str, AgentConfig] = Field(default_factory=_default_agents)
    decision_tiers: Dict[str, DecisionTierConfig] = Field(
        default_factory=_default_decision_tiers
    )
    scheduler: SchedulerConfig = SchedulerConfig()
    container: ContainerConfig = ContainerConfig()

    def tier_for(self, role: str) -> str:
        agent = self.agents.get(role)
        if agent is not None:
            return agent.tier
        return "head" if role in HEAD_ROLES else "clevel"

    def clevel_roles(self) -> list[str]:
        roles = [r for r, a in self.agents.items() if a.tier == "clevel"]
        return roles or list(CLEVEL_ROLES)


def load_config(path: Optional[str] = None) -> QuorumConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to QUORUM_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("QUORUM_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = QuorumConfig(**data)
    else:
        config = QuorumConfig()

    env_db_url = os.getenv("QUORUM_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_transport = os.getenv("QUORUM_TRANSPORT")
    if env_transport:
        config.transport.backend = env_transport.lower()
    env_rounds = os.getenv("QUORUM_MAX_VETO_ROUNDS")
    if env_rounds:
        config.max_veto_rounds = int(env_rounds)
    return config
