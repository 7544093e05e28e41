"""Persisted state machine engine driving agent workflows.

Each machine instance walks a workflow definition one state at a time: the
engine publishes a ``state_task`` to the responsible agent, waits for a
``state_ack`` (or a timeout detected by ``check_timeouts``) and follows the
state's ``on_success``/``on_failure`` routing. Every state change is
appended to the transition log.

Transitions for one instance are serialized by a per-instance lock, and
every row write carries the version read under that lock, so an ack and a
timeout sweep racing on the same instance cannot both apply.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

from ..constants import COMPLETE_STATE, DEFAULT_PRIORITY
from ..contracts import AgentMessage, MessageType, StateAckMessage, StateTaskMessage, utcnow
from ..errors import (
    ConcurrentModification,
    DefinitionNotFound,
    InvalidDefinition,
    InvalidTransition,
    MachineNotFound,
)
from ..persistence import (
    MachineContext,
    MachineInstance,
    MachineStatus,
    OrchestratorRepository,
    QueueItem,
    QueueStatus,
    ScheduledWorkflow,
    StateDefinition,
    StateTransition,
    WorkflowDefinition,
)
from ..utils.cron import next_run
from .cache import DefinitionCache
from .templating import evaluate_skip_condition, interpolate_prompt
from .transitions import validate_transition

if TYPE_CHECKING:
    from ..bus import MessageBus

logger = logging.getLogger(__name__)

MachineListener = Callable[[str, Dict[str, Any]], Union[None, Awaitable[None]]]

MACHINE_EVENTS = frozenset(
    {
        "machine_created",
        "machine_started",
        "state_entered",
        "task_sent",
        "machine_completed",
        "machine_failed",
        "machine_timeout",
        "machine_paused",
        "machine_resumed",
        "machine_cancelled",
    }
)

ACTIVE_STATUSES = (MachineStatus.PENDING, MachineStatus.RUNNING, MachineStatus.PAUSED)


def _duration_ms(start: Optional[datetime], end: datetime) -> Optional[int]:
    if start is None:
        return None
    return int((end - start).total_seconds() * 1000)


class StateMachineEngine:
    """Creates, drives and persists machine instances."""

    def __init__(
        self,
        repository: OrchestratorRepository,
        bus: "MessageBus",
        definitions: Optional[DefinitionCache] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.bus = bus
        self.definitions = definitions or DefinitionCache(repository)
        self.clock = clock
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._listeners: Dict[str, List[MachineListener]] = defaultdict(list)

    # ------------------------------------------------------------------
    # Event listeners
    def on(self, event: str, listener: MachineListener) -> None:
        """Register ``listener`` for a machine event, or ``*`` for all events."""
        if event != "*" and event not in MACHINE_EVENTS:
            raise ValueError(f"Unknown machine event: {event}")
        self._listeners[event].append(listener)

    def off(self, event: str, listener: MachineListener) -> None:
        if listener in self._listeners.get(event, []):
            self._listeners[event].remove(listener)

    async def _emit(self, event: str, **data: Any) -> None:
        for listener in [*self._listeners.get(event, []), *self._listeners.get("*", [])]:
            try:
                result = listener(event, data)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Listener for {event} failed")

    def attach(self, bus: Optional["MessageBus"] = None) -> None:
        """Route ``state_ack`` messages from the bus into ``handle_ack``."""
        (bus or self.bus).register_handler(MessageType.STATE_ACK, self._on_ack_message)

    async def _on_ack_message(self, message: AgentMessage) -> None:
        await self.handle_ack(StateAckMessage.model_validate(message.payload))

    # ------------------------------------------------------------------
    # Lookups
    async def get_machine(self, machine_id: str) -> Optional[MachineInstance]:
        return await self.repository.get_machine(machine_id)

    async def list_machines(
        self,
        agent_type: Optional[str] = None,
        statuses: Optional[Iterable[str]] = None,
        definition_type: Optional[str] = None,
        github_issue: Optional[int] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[MachineInstance]:
        return await self.repository.list_machines(
            agent_type=agent_type,
            statuses=statuses,
            definition_type=definition_type,
            github_issue=github_issue,
            limit=limit,
            offset=offset,
        )

    async def get_active_machines_for_agent(self, agent_type: str) -> List[MachineInstance]:
        return await self.repository.list_machines(agent_type=agent_type, statuses=ACTIVE_STATUSES)

    async def get_transitions(self, machine_id: str) -> List[StateTransition]:
        return await self.repository.list_transitions(machine_id)

    async def _definition_for(self, machine: MachineInstance) -> WorkflowDefinition:
        definition = await self.definitions.get(machine.definition_type)
        if definition is None:
            # running machines keep working after their definition is deactivated
            definition = await self.repository.get_definition(
                machine.definition_type, active_only=False
            )
        if definition is None:
            raise DefinitionNotFound(machine.definition_type)
        return definition

    async def _require(self, machine_id: str) -> MachineInstance:
        machine = await self.repository.get_machine(machine_id)
        if machine is None:
            raise MachineNotFound(machine_id)
        return machine

    async def _resolve_agent(self, machine: MachineInstance) -> Optional[str]:
        if machine.agent_id:
            return machine.agent_id
        agent = await self.repository.find_agent_by_role(machine.agent_type)
        return agent.id if agent else None

    # ------------------------------------------------------------------
    # Persistence helpers
    async def _write(
        self, machine: MachineInstance, changes: Dict[str, Any]
    ) -> MachineInstance:
        changes = {**changes, "updated_at": self.clock()}
        applied = await self.repository.update_machine(
            machine.id, changes, expected_version=machine.version
        )
        if not applied:
            raise ConcurrentModification(
                f"Machine {machine.id} changed since version {machine.version}"
            )
        if changes.get("status") in MachineStatus.TERMINAL:
            self._locks.pop(machine.id, None)
        return machine.model_copy(update={**changes, "version": machine.version + 1})

    async def _log_transition(
        self,
        machine: MachineInstance,
        from_state: Optional[str],
        to_state: str,
        success: bool,
        now: datetime,
        output: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
        error_code: Optional[str] = None,
        attempt: int = 1,
    ) -> None:
        await self.repository.add_transition(
            StateTransition(
                machine_id=machine.id,
                from_state=from_state,
                to_state=to_state,
                success=success,
                agent_output=output,
                error_message=error,
                error_code=error_code,
                duration_ms=_duration_ms(machine.state_entered_at, now) if from_state else None,
                attempt_number=attempt,
                created_at=now,
            )
        )

    # ------------------------------------------------------------------
    # Lifecycle
    async def create_machine(
        self,
        definition_type: str,
        context: Optional[Dict[str, Any]] = None,
        priority: int = DEFAULT_PRIORITY,
        github_issue: Optional[int] = None,
        github_repo: Optional[str] = None,
        agent_id: Optional[str] = None,
    ) -> MachineInstance:
        """Create a pending machine positioned at the definition's initial state."""
        definition = await self.definitions.get(definition_type)
        if definition is None:
            raise DefinitionNotFound(definition_type)
        initial = definition.get_state(definition.initial_state)
        if initial is None:
            raise InvalidDefinition(
                f"Initial state '{definition.initial_state}' not found in {definition_type}"
            )

        now = self.clock()
        machine_context = MachineContext.model_validate(
            {"retryCount": 0, "maxRetries": initial.max_retries, **(context or {})}
        )
        machine = MachineInstance(
            definition_id=definition.id,
            definition_type=definition.type,
            agent_type=definition.agent_type,
            agent_id=agent_id,
            current_state=initial.name,
            context=machine_context,
            status=MachineStatus.PENDING,
            state_entered_at=now,
            state_timeout_at=now + timedelta(milliseconds=initial.timeout),
            github_issue=github_issue if github_issue is not None else machine_context.github_issue,
            github_repo=github_repo or machine_context.github_repo,
            priority=priority,
            created_at=now,
            updated_at=now,
        )
        await self.repository.create_machine(machine)
        await self._log_transition(machine, None, initial.name, True, now)
        logger.info(
            f"Created machine {machine.id} ({definition_type}) at state {initial.name}"
        )
        await self._emit(
            "machine_created",
            machine_id=machine.id,
            definition_type=definition_type,
            state=initial.name,
        )
        return machine

    async def start_machine(self, machine_id: str) -> MachineInstance:
        """Start a pending machine and dispatch its current state."""
        async with self._locks[machine_id]:
            machine = await self._require(machine_id)
            if machine.status != MachineStatus.PENDING:
                raise InvalidTransition(machine.status, MachineStatus.RUNNING, machine_id)
            definition = await self._definition_for(machine)
            state = definition.get_state(machine.current_state)
            now = self.clock()
            if state is None:
                return await self._fail(
                    machine, f"State {machine.current_state} not found in definition", now
                )
            machine = await self._write(
                machine,
                {
                    "status": MachineStatus.RUNNING,
                    "started_at": now,
                    "state_entered_at": now,
                    "state_timeout_at": now + timedelta(milliseconds=state.timeout),
                },
            )
            logger.info(f"Started machine {machine_id} at state {machine.current_state}")
            await self._emit("machine_started", machine_id=machine_id, state=machine.current_state)
            return await self._run_state(machine, definition, now)

    async def pause_machine(self, machine_id: str) -> MachineInstance:
        async with self._locks[machine_id]:
            machine = await self._require(machine_id)
            validate_transition(machine.status, MachineStatus.PAUSED, machine_id)
            machine = await self._write(
                machine, {"status": MachineStatus.PAUSED, "state_timeout_at": None}
            )
            logger.info(f"Paused machine {machine_id} at state {machine.current_state}")
            await self._emit("machine_paused", machine_id=machine_id, state=machine.current_state)
            return machine

    async def resume_machine(self, machine_id: str) -> MachineInstance:
        """Resume a paused machine and re-dispatch its current state."""
        async with self._locks[machine_id]:
            machine = await self._require(machine_id)
            if machine.status != MachineStatus.PAUSED:
                raise InvalidTransition(machine.status, MachineStatus.RUNNING, machine_id)
            definition = await self._definition_for(machine)
            state = definition.get_state(machine.current_state)
            now = self.clock()
            if state is None:
                return await self._fail(
                    machine, f"State {machine.current_state} not found in definition", now
                )
            machine = await self._write(
                machine,
                {
                    "status": MachineStatus.RUNNING,
                    "state_entered_at": now,
                    "state_timeout_at": now + timedelta(milliseconds=state.timeout),
                },
            )
            logger.info(f"Resumed machine {machine_id} at state {machine.current_state}")
            await self._emit("machine_resumed", machine_id=machine_id, state=machine.current_state)
            return await self._run_state(machine, definition, now)

    async def cancel_machine(self, machine_id: str, reason: Optional[str] = None) -> MachineInstance:
        async with self._locks[machine_id]:
            machine = await self._require(machine_id)
            validate_transition(machine.status, MachineStatus.CANCELLED, machine_id)
            now = self.clock()
            machine = await self._write(
                machine,
                {
                    "status": MachineStatus.CANCELLED,
                    "completed_at": now,
                    "state_timeout_at": None,
                    "error_message": reason,
                },
            )
            await self.repository.update_queue_items(
                machine_id, QueueStatus.SENT, {"status": QueueStatus.TIMEOUT}
            )
            logger.info(f"Cancelled machine {machine_id}")
            await self._emit("machine_cancelled", machine_id=machine_id, reason=reason)
            return machine

    async def fail_machine(self, machine_id: str, error: str) -> MachineInstance:
        async with self._locks[machine_id]:
            machine = await self._require(machine_id)
            return await self._fail(machine, error, self.clock(), error_code="MANUAL")

    # ------------------------------------------------------------------
    # Acknowledgements and timeouts
    async def handle_ack(self, ack: Union[StateAckMessage, Dict[str, Any]]) -> bool:
        """Apply an agent's reported outcome; return ``False`` if it was dropped."""
        if not isinstance(ack, StateAckMessage):
            ack = StateAckMessage.model_validate(ack)

        async with self._locks[ack.machine_id]:
            machine = await self.repository.get_machine(ack.machine_id)
            if machine is None:
                logger.warning(f"Ack for unknown machine {ack.machine_id}")
                self._locks.pop(ack.machine_id, None)
                return False
            if machine.status != MachineStatus.RUNNING:
                logger.warning(
                    f"Ack for machine {machine.id} in status {machine.status} ignored"
                )
                if machine.is_terminal:
                    self._locks.pop(machine.id, None)
                return False
            if ack.state != machine.current_state:
                logger.warning(
                    f"Stale ack for machine {machine.id}: got state {ack.state}, "
                    f"current state is {machine.current_state}"
                )
                return False

            try:
                await self._apply_ack(machine, ack)
            except ConcurrentModification as e:
                logger.warning(f"Dropped ack for machine {machine.id}: {e}")
                return False
            return True

    async def _apply_ack(self, machine: MachineInstance, ack: StateAckMessage) -> None:
        definition = await self._definition_for(machine)
        state = definition.get_state(machine.current_state)
        now = self.clock()
        if state is None:
            await self._fail(machine, f"State {machine.current_state} not found in definition", now)
            return

        await self.repository.update_queue_items(
            machine.id,
            QueueStatus.SENT,
            {"status": QueueStatus.ACKNOWLEDGED, "acknowledged_at": now},
        )

        if ack.success:
            context = machine.context.merged(ack.output)
            if state.on_success is None:
                await self._complete(machine, context, now)
                return
            await self._move(
                machine,
                definition,
                state.on_success,
                now,
                context=context,
                success=True,
                output=ack.output,
                attempt=machine.retry_count + 1,
            )
            return

        retries = machine.retry_count + 1
        context = machine.context.merged({"retryCount": retries})
        error = ack.error or "Max retries exceeded"
        if retries >= state.max_retries:
            await self._fail(
                machine,
                error,
                now,
                context=context,
                output=ack.output or None,
                attempt=retries,
                error_code="MAX_RETRIES",
            )
            return

        target = state.on_failure
        if target is None:
            # No failure route: the workflow ends here
            await self._complete(machine, context, now)
            await self._log_transition(
                machine,
                state.name,
                COMPLETE_STATE,
                False,
                now,
                output=ack.output or None,
                error=ack.error,
                attempt=retries,
            )
        elif target == state.name:
            await self._retry(
                machine, definition, state, retries, now, error=ack.error, output=ack.output or None
            )
        else:
            await self._move(
                machine,
                definition,
                target,
                now,
                context=context,
                success=False,
                output=ack.output or None,
                error=ack.error,
                attempt=retries,
            )

    async def check_timeouts(self, now: Optional[datetime] = None) -> int:
        """Retry or fail every running machine whose state deadline has passed."""
        now = now or self.clock()
        handled = 0
        for candidate in await self.repository.find_timed_out_machines(now):
            try:
                async with self._locks[candidate.id]:
                    machine = await self.repository.get_machine(candidate.id)
                    if (
                        machine is None
                        or machine.status != MachineStatus.RUNNING
                        or machine.state_timeout_at is None
                        or machine.state_timeout_at >= now
                    ):
                        continue
                    await self._handle_timeout(machine, now)
                    handled += 1
            except Exception:
                logger.exception(f"Timeout handling failed for machine {candidate.id}")
        if handled:
            logger.info(f"Handled {handled} timed out machines")
        return handled

    async def _handle_timeout(self, machine: MachineInstance, now: datetime) -> None:
        definition = await self._definition_for(machine)
        state = definition.get_state(machine.current_state)
        if state is None:
            await self._fail(machine, f"State {machine.current_state} not found in definition", now)
            return

        retries = machine.retry_count + 1
        await self.repository.update_queue_items(
            machine.id, QueueStatus.SENT, {"status": QueueStatus.TIMEOUT}
        )
        logger.warning(
            f"Machine {machine.id} timed out in state {state.name} (attempt {retries})"
        )
        await self._emit(
            "machine_timeout", machine_id=machine.id, state=state.name, attempt=retries
        )
        if retries >= state.max_retries:
            await self._fail(
                machine,
                f"Timeout after {retries} attempts",
                now,
                context=machine.context.merged({"retryCount": retries}),
                attempt=retries,
                error_code="TIMEOUT",
            )
            return
        await self._retry(
            machine,
            definition,
            state,
            retries,
            now,
            error=f"Timeout after {state.timeout}ms",
            error_code="TIMEOUT",
        )

    # ------------------------------------------------------------------
    # Transitions
    async def _move(
        self,
        machine: MachineInstance,
        definition: WorkflowDefinition,
        target: str,
        now: datetime,
        context: MachineContext,
        success: bool,
        output: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
        attempt: int = 1,
    ) -> MachineInstance:
        """Enter ``target`` from the current state and run it."""
        state = definition.get_state(target)
        if state is None:
            return await self._fail(
                machine, f"State {target} not found in definition", now, context=context
            )
        previous = machine
        machine = await self._write(
            machine,
            {
                "current_state": target,
                "previous_state": machine.current_state,
                "context": context.merged({"retryCount": 0, "maxRetries": state.max_retries}),
                "retry_count": 0,
                "state_entered_at": now,
                "state_timeout_at": now + timedelta(milliseconds=state.timeout),
            },
        )
        await self._log_transition(
            previous, previous.current_state, target, success, now, output=output, error=error, attempt=attempt
        )
        return await self._run_state(machine, definition, now)

    async def _retry(
        self,
        machine: MachineInstance,
        definition: WorkflowDefinition,
        state: StateDefinition,
        retries: int,
        now: datetime,
        error: Optional[str] = None,
        error_code: Optional[str] = None,
        output: Optional[Dict[str, Any]] = None,
    ) -> MachineInstance:
        previous = machine
        machine = await self._write(
            machine,
            {
                "context": machine.context.merged({"retryCount": retries}),
                "retry_count": retries,
                "state_entered_at": now,
                "state_timeout_at": now + timedelta(milliseconds=state.timeout),
            },
        )
        await self._log_transition(
            previous,
            state.name,
            state.name,
            False,
            now,
            output=output,
            error=error,
            error_code=error_code,
            attempt=retries,
        )
        logger.info(f"Retrying machine {machine.id} state {state.name} (attempt {retries + 1})")
        await self._dispatch(machine, definition, state, now)
        return machine

    async def _run_state(
        self, machine: MachineInstance, definition: WorkflowDefinition, now: datetime
    ) -> MachineInstance:
        """Dispatch the current state, following skip conditions first."""
        visited = set()
        while True:
            state = definition.get_state(machine.current_state)
            if state is None:
                return await self._fail(
                    machine, f"State {machine.current_state} not found in definition", now
                )
            if not evaluate_skip_condition(state.skip_if, machine.context.as_dict()):
                await self._emit("state_entered", machine_id=machine.id, state=state.name)
                await self._dispatch(machine, definition, state, now)
                return machine

            if state.name in visited:
                return await self._fail(machine, f"Skip cycle at state {state.name}", now)
            visited.add(state.name)
            logger.info(f"Machine {machine.id} skipping state {state.name} ({state.skip_if})")
            if state.on_success is None:
                return await self._complete(machine, machine.context, now)

            target = definition.get_state(state.on_success)
            if target is None:
                return await self._fail(
                    machine, f"State {state.on_success} not found in definition", now
                )
            previous = machine
            machine = await self._write(
                machine,
                {
                    "current_state": target.name,
                    "previous_state": state.name,
                    "context": machine.context.merged({"retryCount": 0, "maxRetries": target.max_retries}),
                    "retry_count": 0,
                    "state_entered_at": now,
                    "state_timeout_at": now + timedelta(milliseconds=target.timeout),
                },
            )
            await self._log_transition(
                previous, state.name, target.name, True, now, output={"skipped": True}
            )

    async def _dispatch(
        self,
        machine: MachineInstance,
        definition: WorkflowDefinition,
        state: StateDefinition,
        now: datetime,
    ) -> None:
        context = machine.context.as_dict()
        attempt = machine.retry_count + 1
        task = StateTaskMessage(
            machine_id=machine.id,
            state=state.name,
            workflow_type=definition.type,
            context=context,
            prompt=interpolate_prompt(state.agent_prompt, context),
            required_output=state.required_output,
            timeout=state.timeout,
            attempt_number=attempt,
        )
        payload = task.to_payload()
        item = QueueItem(
            machine_id=machine.id,
            agent_type=machine.agent_type,
            task_payload=payload,
            status=QueueStatus.PENDING,
            created_at=now,
            timeout_at=machine.state_timeout_at,
            retry_count=machine.retry_count,
            max_retries=state.max_retries,
        )
        await self.repository.add_queue_item(item)

        priority = "high" if machine.priority < DEFAULT_PRIORITY else "normal"
        agent_id = await self._resolve_agent(machine)
        if agent_id:
            await self.bus.send_to_agent(
                agent_id,
                MessageType.STATE_TASK,
                payload,
                priority=priority,
                requires_response=True,
                response_deadline=machine.state_timeout_at,
            )
        else:
            logger.warning(
                f"No active {machine.agent_type} agent for machine {machine.id}; broadcasting task"
            )
            await self.bus.broadcast(
                MessageType.STATE_TASK,
                payload,
                priority=priority,
                requires_response=True,
                response_deadline=machine.state_timeout_at,
            )
        await self.repository.update_queue_items(
            machine.id, QueueStatus.PENDING, {"status": QueueStatus.SENT, "sent_at": now}
        )
        logger.info(
            f"Sent task for machine {machine.id} state {state.name} (attempt {attempt}) "
            f"to {agent_id or 'broadcast'}"
        )
        await self._emit(
            "task_sent",
            machine_id=machine.id,
            state=state.name,
            agent_id=agent_id,
            attempt=attempt,
        )

    async def _complete(
        self, machine: MachineInstance, context: MachineContext, now: datetime
    ) -> MachineInstance:
        validate_transition(machine.status, MachineStatus.COMPLETED, machine.id)
        machine = await self._write(
            machine,
            {
                "status": MachineStatus.COMPLETED,
                "context": context,
                "completed_at": now,
                "state_timeout_at": None,
            },
        )
        logger.info(f"Machine {machine.id} completed at state {machine.current_state}")
        await self._emit(
            "machine_completed",
            machine_id=machine.id,
            definition_type=machine.definition_type,
            context=context.as_dict(),
        )
        return machine

    async def _fail(
        self,
        machine: MachineInstance,
        error: str,
        now: datetime,
        context: Optional[MachineContext] = None,
        output: Optional[Dict[str, Any]] = None,
        attempt: Optional[int] = None,
        error_code: Optional[str] = None,
    ) -> MachineInstance:
        validate_transition(machine.status, MachineStatus.FAILED, machine.id)
        changes: Dict[str, Any] = {
            "status": MachineStatus.FAILED,
            "error_message": error,
            "completed_at": now,
            "state_timeout_at": None,
        }
        if context is not None:
            changes["context"] = context
            changes["retry_count"] = context.retry_count
        previous = machine
        machine = await self._write(machine, changes)
        await self._log_transition(
            previous,
            previous.current_state,
            previous.current_state,
            False,
            now,
            output=output,
            error=error,
            error_code=error_code,
            attempt=attempt or previous.retry_count + 1,
        )
        logger.error(f"Machine {machine.id} failed in state {machine.current_state}: {error}")
        await self._emit(
            "machine_failed", machine_id=machine.id, state=machine.current_state, error=error
        )
        return machine

    # ------------------------------------------------------------------
    # Scheduled workflows
    async def schedule_workflow(
        self,
        definition_type: str,
        cron_expression: str,
        timezone: str = "UTC",
        now: Optional[datetime] = None,
    ) -> ScheduledWorkflow:
        """Register a cron schedule that starts ``definition_type`` machines."""
        if await self.definitions.get(definition_type) is None:
            raise DefinitionNotFound(definition_type)
        schedule = ScheduledWorkflow(
            definition_type=definition_type,
            cron_expression=cron_expression,
            timezone=timezone,
            next_run_at=next_run(cron_expression, now or self.clock()),
        )
        await self.repository.save_schedule(schedule)
        logger.info(
            f"Scheduled {definition_type} with '{cron_expression}', next run {schedule.next_run_at}"
        )
        return schedule

    async def run_scheduled_workflow(
        self, schedule: ScheduledWorkflow, now: Optional[datetime] = None
    ) -> Optional[MachineInstance]:
        """Create and start a machine for a due schedule, then advance it."""
        now = now or self.clock()
        machine: Optional[MachineInstance] = None
        status = "started"
        try:
            machine = await self.create_machine(
                schedule.definition_type,
                context={"scheduledWorkflowId": schedule.id, "triggeredAt": now.isoformat()},
            )
            machine = await self.start_machine(machine.id)
        except Exception as e:
            logger.exception(f"Scheduled workflow {schedule.definition_type} failed to start")
            status = f"failed: {e}"

        await self.repository.update_schedule(
            schedule.id,
            {
                "last_run_at": now,
                "last_machine_id": machine.id if machine else schedule.last_machine_id,
                "last_status": status,
                "next_run_at": next_run(schedule.cron_expression, now),
            },
        )
        return machine

    async def check_scheduled_workflows(self, now: Optional[datetime] = None) -> int:
        now = now or self.clock()
        started = 0
        for schedule in await self.repository.find_due_schedules(now):
            try:
                if await self.run_scheduled_workflow(schedule, now):
                    started += 1
            except Exception:
                logger.exception(f"Failed to advance schedule {schedule.id}")
        return started

    # ------------------------------------------------------------------
    # Statistics
    async def get_stats(self) -> Dict[str, Any]:
        machines = await self.repository.list_machines()
        by_status: Dict[str, int] = defaultdict(int)
        by_agent: Dict[str, int] = defaultdict(int)
        by_type: Dict[str, Dict[str, Any]] = {}
        for machine in machines:
            by_status[machine.status] += 1
            by_agent[machine.agent_type] += 1
            stats = by_type.setdefault(
                machine.definition_type,
                {"total": 0, "completed": 0, "failed": 0, "_durations": []},
            )
            stats["total"] += 1
            if machine.status == MachineStatus.COMPLETED:
                stats["completed"] += 1
                if machine.started_at and machine.completed_at:
                    stats["_durations"].append(_duration_ms(machine.started_at, machine.completed_at))
            elif machine.status == MachineStatus.FAILED:
                stats["failed"] += 1

        for stats in by_type.values():
            durations = stats.pop("_durations")
            finished = stats["completed"] + stats["failed"]
            stats["avg_duration_ms"] = sum(durations) / len(durations) if durations else None
            stats["success_rate"] = stats["completed"] / finished if finished else None

        return {
            "total": len(machines),
            "by_status": dict(by_status),
            "by_agent": dict(by_agent),
            "by_type": by_type,
        }
