"""Wiring of repository, bus, engine, decisions, health and scheduler."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .bus import CoreHandlers, DecisionService, MessageBus, Notifier
from .config import QuorumConfig, load_config
from .health import (
    ContainerHealthProvider,
    HealthMonitor,
    PortainerHealthProvider,
    StaticHealthProvider,
)
from .machine import DefinitionCache, StateMachineEngine, load_definitions_from_path
from .persistence import Agent, OrchestratorRepository, get_repository
from .scheduler import Scheduler
from .transports import BaseTransport, get_transport

logger = logging.getLogger(__name__)


class Orchestrator:
    """Explicit service objects for one orchestrator process."""

    def __init__(
        self,
        config: QuorumConfig,
        repository: OrchestratorRepository,
        transport: BaseTransport,
        container: Optional[ContainerHealthProvider] = None,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self.config = config
        self.repository = repository
        self.transport = transport
        self.bus = MessageBus(transport, repository, orchestrator_id=config.orchestrator_id)
        self.decisions = DecisionService(repository, self.bus, config, notifier=notifier)
        self.handlers = CoreHandlers(self.bus, repository, self.decisions)
        self.definitions = DefinitionCache(repository)
        self.engine = StateMachineEngine(repository, self.bus, self.definitions)
        self.health = HealthMonitor(repository, transport, container)
        self.scheduler = Scheduler(
            self.bus,
            repository,
            config,
            engine=self.engine,
            decisions=self.decisions,
            health=self.health,
        )
        self.handlers.register()
        self.engine.attach()

    @classmethod
    def from_config(cls, config: Optional[QuorumConfig] = None) -> "Orchestrator":
        config = config or load_config()
        container: ContainerHealthProvider
        if config.container.portainer_url:
            container = PortainerHealthProvider(config.container)
        else:
            container = StaticHealthProvider()
        return cls(
            config,
            get_repository(config=config),
            get_transport(config=config),
            container=container,
        )

    async def ensure_agents(self) -> list[Agent]:
        """Register one agent per configured role that has none yet."""
        existing = {a.role for a in await self.repository.list_agents()}
        created = []
        for role, settings in self.config.agents.items():
            if role in existing:
                continue
            agent = Agent(
                role=role,
                name=role.upper(),
                tier=settings.tier,
                active=settings.active,
                loop_interval=settings.loop_interval,
            )
            await self.repository.save_agent(agent)
            created.append(agent)
        if created:
            logger.info(f"Registered agents: {', '.join(a.role for a in created)}")
        return created

    async def load_definitions(self) -> int:
        if self.config.definitions_path:
            for definition in load_definitions_from_path(self.config.definitions_path):
                await self.definitions.save(definition)
        return await self.definitions.load()

    async def start(self) -> None:
        await self.ensure_agents()
        await self.load_definitions()
        await self.bus.start()
        await self.scheduler.start()
        logger.info("Orchestrator started")

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.bus.stop()
        logger.info("Orchestrator stopped")

    async def run(self, lifespan: Optional[float] = None) -> None:
        """Run until cancelled or ``lifespan`` seconds have passed."""
        await self.start()
        try:
            if lifespan is None:
                await asyncio.Event().wait()
            else:
                await asyncio.sleep(lifespan)
        finally:
            await self.stop()
