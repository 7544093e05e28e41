"""Job registry turning intervals and cron expressions into triggers."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

from ..config import QuorumConfig
from ..contracts import MessageType, utcnow
from ..persistence import Agent, OrchestratorRepository
from ..utils.cron import interval_to_cron
from .due_events import DueEventExecutor
from .jobs import JobCallback, PeriodicJob, ScheduledJob

if TYPE_CHECKING:
    from ..bus import DecisionService, MessageBus
    from ..health import HealthMonitor
    from ..machine import StateMachineEngine

logger = logging.getLogger(__name__)


class Scheduler:
    """Map of job id to timer plus metadata.

    ``pause_job``/``resume_job``/``stop_job`` return ``False`` for unknown
    ids. Pausing keeps the registration; stopping removes it.
    """

    def __init__(
        self,
        bus: "MessageBus",
        repository: OrchestratorRepository,
        config: Optional[QuorumConfig] = None,
        engine: Optional["StateMachineEngine"] = None,
        decisions: Optional["DecisionService"] = None,
        health: Optional["HealthMonitor"] = None,
        due_events: Optional[DueEventExecutor] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.bus = bus
        self.repository = repository
        self.config = config or QuorumConfig()
        self.engine = engine
        self.decisions = decisions
        self.health = health
        self.due_events = due_events or DueEventExecutor(repository, bus, self.config, clock)
        self.clock = clock
        self._jobs: Dict[str, PeriodicJob] = {}

    # ------------------------------------------------------------------
    # Registry
    def schedule(
        self,
        job_id: str,
        cron_expression: str,
        callback: JobCallback,
        agent_id: Optional[str] = None,
        start: bool = True,
    ) -> ScheduledJob:
        """Register (or replace) a job and start its timer."""
        existing = self._jobs.pop(job_id, None)
        if existing is not None:
            existing.stop()
        job = PeriodicJob(job_id, cron_expression, callback, agent_id=agent_id, clock=self.clock)
        self._jobs[job_id] = job
        if start:
            job.start()
        logger.info(f"Scheduled job {job_id} ({cron_expression})")
        return job.metadata

    def schedule_interval(
        self,
        job_id: str,
        seconds: int,
        callback: JobCallback,
        agent_id: Optional[str] = None,
        start: bool = True,
    ) -> ScheduledJob:
        return self.schedule(job_id, interval_to_cron(seconds), callback, agent_id, start)

    def schedule_maintenance(
        self, job_id: str, interval_seconds: int, callback: JobCallback, start: bool = True
    ) -> ScheduledJob:
        """Register an ancillary job such as archival or backlog grooming."""
        return self.schedule_interval(job_id, interval_seconds, callback, start=start)

    def pause_job(self, job_id: str) -> bool:
        job = self._jobs.get(job_id)
        if job is None:
            return False
        job.pause()
        logger.info(f"Paused job {job_id}")
        return True

    def resume_job(self, job_id: str) -> bool:
        job = self._jobs.get(job_id)
        if job is None:
            return False
        job.start()
        logger.info(f"Resumed job {job_id}")
        return True

    def stop_job(self, job_id: str) -> bool:
        job = self._jobs.pop(job_id, None)
        if job is None:
            return False
        job.stop()
        logger.info(f"Stopped job {job_id}")
        return True

    async def run_job(self, job_id: str) -> bool:
        """Run one tick of a registered job now."""
        job = self._jobs.get(job_id)
        if job is None:
            return False
        return await job.run_once()

    def get_job(self, job_id: str) -> Optional[ScheduledJob]:
        job = self._jobs.get(job_id)
        return job.metadata if job else None

    def get_jobs(self) -> List[ScheduledJob]:
        return [job.metadata for job in self._jobs.values()]

    def stop_all(self) -> None:
        for job in self._jobs.values():
            job.stop()
        self._jobs.clear()
        logger.info("All scheduled jobs stopped")

    # ------------------------------------------------------------------
    # Agent loops
    def schedule_agent_loop(self, agent: Agent, start: bool = True) -> ScheduledJob:
        role_config = self.config.agents.get(agent.role)
        interval = role_config.loop_interval if role_config else agent.loop_interval

        async def trigger() -> None:
            await self.trigger_agent_loop(agent)

        return self.schedule_interval(f"loop-{agent.role}", interval, trigger, agent.id, start)

    async def trigger_agent_loop(self, agent: Agent) -> None:
        now = self.clock()
        await self.bus.send_to_agent(
            agent.id,
            MessageType.BROADCAST,
            {"action": "loop_trigger", "timestamp": now.isoformat()},
        )
        await self.bus.log_event(
            "loop_trigger", self.bus.orchestrator_id, target=agent.id, payload={"role": agent.role}
        )
        logger.debug(f"Loop trigger sent to {agent.role} ({agent.id})")

    async def schedule_agent_loops(self, start: bool = True) -> List[ScheduledJob]:
        scheduled = []
        for agent in await self.repository.list_agents(active_only=True):
            role_config = self.config.agents.get(agent.role)
            if role_config is not None and not role_config.active:
                continue
            scheduled.append(self.schedule_agent_loop(agent, start))
        return scheduled

    # ------------------------------------------------------------------
    # Built-in job bodies
    async def drain_urgent_queue(self) -> int:
        """Forward at most ``urgent_batch_size`` urgent items to their agents."""
        processed = 0
        for _ in range(self.config.scheduler.urgent_batch_size):
            item = await self.bus.pop_urgent()
            if item is None:
                break
            agent_id = item.get("agentId")
            if not agent_id:
                logger.warning(f"Dropping urgent item without agent: {item}")
                continue
            try:
                await self.bus.send_to_agent(agent_id, MessageType.URGENT_TASK, item, priority="urgent")
            except Exception:
                await self.bus.push_urgent(item)
                raise
            processed += 1
        if processed:
            logger.info(f"Forwarded {processed} urgent tasks")
        return processed

    async def send_daily_digest(self) -> bool:
        ceo = await self.repository.find_agent_by_role("ceo")
        if ceo is None:
            logger.warning("No active CEO agent for the daily digest")
            return False
        await self.bus.push_task(
            ceo.id,
            {
                "type": MessageType.TASK,
                "taskId": str(uuid.uuid4()),
                "title": "Generate daily digest",
                "action": "generate_daily_digest",
                "priority": "normal",
                "from": self.bus.orchestrator_id,
            },
        )
        return True

    def register_core_jobs(self, start: bool = True) -> List[ScheduledJob]:
        settings = self.config.scheduler
        jobs = [
            self.schedule_interval(
                "urgent-queue", settings.urgent_queue_interval, self.drain_urgent_queue, start=start
            ),
            self.schedule_interval(
                "due-events", settings.due_event_interval, self.due_events.run, start=start
            ),
            self.schedule("daily-digest", settings.daily_digest_cron, self.send_daily_digest, start=start),
        ]
        if self.engine is not None:
            jobs.append(
                self.schedule_interval(
                    "timeout-sweep",
                    settings.timeout_check_interval,
                    self.engine.check_timeouts,
                    start=start,
                )
            )
            jobs.append(
                self.schedule_interval(
                    "workflow-schedules",
                    settings.workflow_schedule_interval,
                    self.engine.check_scheduled_workflows,
                    start=start,
                )
            )
        if self.decisions is not None:
            jobs.append(
                self.schedule_interval(
                    "decision-timeouts",
                    settings.decision_timeout_interval,
                    self.decisions.check_timeouts,
                    start=start,
                )
            )
        if self.health is not None:
            jobs.append(
                self.schedule_interval(
                    "health-checks",
                    settings.health_check_interval,
                    self.health.run_health_check,
                    start=start,
                )
            )
        return jobs

    async def start(self) -> List[ScheduledJob]:
        jobs = self.register_core_jobs()
        if self.config.scheduler.agent_loops_enabled:
            jobs += await self.schedule_agent_loops()
        logger.info(f"Scheduler started with {len(jobs)} jobs")
        return jobs

    async def stop(self) -> None:
        """Stop every job and wait for ticks already in flight."""
        jobs = list(self._jobs.values())
        self.stop_all()
        await asyncio.gather(*(job.wait_stopped() for job in jobs))
