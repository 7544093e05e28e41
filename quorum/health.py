"""System health: storage, bus, container runtime and per-agent liveness."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Protocol

import httpx
from pydantic import BaseModel, Field

from .config import ContainerConfig
from .contracts import utcnow
from .persistence import Agent, OrchestratorRepository
from .transports import BaseTransport

logger = logging.getLogger(__name__)

Status = Literal["healthy", "degraded", "unhealthy"]


class ComponentHealth(BaseModel):
    status: Literal["healthy", "unhealthy"]
    latency_ms: Optional[float] = None
    error: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)

    @property
    def healthy(self) -> bool:
        return self.status == "healthy"


class AgentHealth(BaseModel):
    agent_id: str
    role: str
    status: Literal["healthy", "unhealthy", "inactive"]
    container_status: Optional[str] = None
    error: Optional[str] = None


class AgentsSummary(BaseModel):
    total: int = 0
    healthy: int = 0
    unhealthy: int = 0
    inactive: int = 0
    details: List[AgentHealth] = Field(default_factory=list)


class SystemHealth(BaseModel):
    status: Status
    timestamp: datetime = Field(default_factory=utcnow)
    uptime_seconds: float
    components: Dict[str, ComponentHealth]
    agents: AgentsSummary


class ContainerHealthProvider(Protocol):
    """Health check for the runtime that hosts agent processes."""

    async def ping(self) -> bool:
        ...

    async def agent_status(self, agent: Agent) -> str:
        """Return the runtime state of the agent's container, e.g. ``running``."""
        ...


class StaticHealthProvider:
    """Provider with fixed answers, for tests and single-host runs."""

    def __init__(self, available: bool = True, statuses: Optional[Dict[str, str]] = None) -> None:
        self.available = available
        self.statuses = statuses or {}

    async def ping(self) -> bool:
        return self.available

    async def agent_status(self, agent: Agent) -> str:
        return self.statuses.get(agent.role, self.statuses.get(agent.id, "running"))


class PortainerHealthProvider:
    """Container states read from the Portainer Docker proxy API."""

    def __init__(self, config: ContainerConfig, client: Optional[httpx.AsyncClient] = None) -> None:
        if not config.portainer_url:
            raise ValueError("portainer_url is required for PortainerHealthProvider")
        self.config = config
        headers = {"X-API-Key": config.portainer_api_key} if config.portainer_api_key else {}
        self._client = client or httpx.AsyncClient(
            base_url=config.portainer_url, headers=headers, timeout=10.0
        )

    @property
    def _docker(self) -> str:
        return f"/api/endpoints/{self.config.endpoint_id}/docker"

    async def ping(self) -> bool:
        response = await self._client.get(f"{self._docker}/_ping")
        return response.status_code == 200

    async def agent_status(self, agent: Agent) -> str:
        name = f"{self.config.name_prefix}{agent.role}"
        response = await self._client.get(
            f"{self._docker}/containers/json",
            params={"all": "true", "filters": f'{{"name":["{name}"]}}'},
        )
        response.raise_for_status()
        for container in response.json():
            if any(n.lstrip("/") == name for n in container.get("Names", [])):
                return container.get("State", "unknown")
        return "missing"

    async def aclose(self) -> None:
        await self._client.aclose()


def combine_status(components: Dict[str, ComponentHealth], agents: AgentsSummary) -> Status:
    """Critical dependencies decide ``unhealthy``; everything else can only degrade."""
    if not components["database"].healthy or not components["bus"].healthy:
        return "unhealthy"
    if not components["container_runtime"].healthy or agents.unhealthy > 0:
        return "degraded"
    return "healthy"


class HealthMonitor:
    def __init__(
        self,
        repository: OrchestratorRepository,
        transport: BaseTransport,
        container: Optional[ContainerHealthProvider] = None,
    ) -> None:
        self.repository = repository
        self.transport = transport
        self.container = container or StaticHealthProvider()
        self.started = time.monotonic()
        self.last_health: Optional[SystemHealth] = None

    async def _timed(self, check) -> ComponentHealth:
        start = time.perf_counter()
        try:
            ok = await check()
        except Exception as e:
            return ComponentHealth(
                status="unhealthy",
                latency_ms=(time.perf_counter() - start) * 1000,
                error=str(e) or type(e).__name__,
            )
        return ComponentHealth(
            status="healthy" if ok else "unhealthy",
            latency_ms=(time.perf_counter() - start) * 1000,
            error=None if ok else "check returned false",
        )

    async def check_database(self) -> ComponentHealth:
        return await self._timed(self.repository.ping)

    async def check_bus(self) -> ComponentHealth:
        return await self._timed(self.transport.ping)

    async def check_container_runtime(self) -> ComponentHealth:
        return await self._timed(self.container.ping)

    async def _agent_health(self, agent: Agent) -> AgentHealth:
        if not agent.active:
            return AgentHealth(agent_id=agent.id, role=agent.role, status="inactive")
        try:
            state = await self.container.agent_status(agent)
        except Exception as e:
            return AgentHealth(agent_id=agent.id, role=agent.role, status="unhealthy", error=str(e))
        return AgentHealth(
            agent_id=agent.id,
            role=agent.role,
            status="healthy" if state == "running" else "unhealthy",
            container_status=state,
        )

    async def get_agent_health(self) -> AgentsSummary:
        agents = await self.repository.list_agents()
        details = await asyncio.gather(*(self._agent_health(a) for a in agents))
        return AgentsSummary(
            total=len(details),
            healthy=sum(1 for d in details if d.status == "healthy"),
            unhealthy=sum(1 for d in details if d.status == "unhealthy"),
            inactive=sum(1 for d in details if d.status == "inactive"),
            details=list(details),
        )

    async def _safe_agent_health(self) -> AgentsSummary:
        try:
            return await self.get_agent_health()
        except Exception:
            logger.exception("Agent health check failed")
            return AgentsSummary()

    async def get_system_health(self) -> SystemHealth:
        database, bus, runtime, agents = await asyncio.gather(
            self.check_database(),
            self.check_bus(),
            self.check_container_runtime(),
            self._safe_agent_health(),
        )
        components = {"database": database, "bus": bus, "container_runtime": runtime}
        return SystemHealth(
            status=combine_status(components, agents),
            uptime_seconds=time.monotonic() - self.started,
            components=components,
            agents=agents,
        )

    async def is_alive(self) -> bool:
        return True

    async def is_ready(self) -> bool:
        database, bus = await asyncio.gather(self.check_database(), self.check_bus())
        return database.healthy and bus.healthy

    async def run_health_check(self) -> SystemHealth:
        health = await self.get_system_health()
        self.last_health = health
        if health.status == "unhealthy":
            failing = [name for name, c in health.components.items() if not c.healthy]
            logger.error(f"System unhealthy: {', '.join(failing)}")
        elif health.status == "degraded":
            logger.warning(
                f"System degraded: runtime={health.components['container_runtime'].status}, "
                f"unhealthy agents={health.agents.unhealthy}"
            )
        else:
            logger.debug("System healthy")
        return health
