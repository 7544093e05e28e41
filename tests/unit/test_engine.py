import asyncio
from datetime import timedelta

import pytest

from quorum.bus import agent_channel
from quorum.errors import DefinitionNotFound, InvalidDefinition, InvalidTransition, MachineNotFound
from quorum.persistence import Agent, MachineStatus, QueueStatus, WorkflowDefinition


def _definition(states, initial="plan", agent_type="cto", type_="custom") -> WorkflowDefinition:
    return WorkflowDefinition.model_validate(
        {"type": type_, "agentType": agent_type, "initialState": initial, "states": states}
    )


def _ack(machine_id, state, success=True, output=None, error=None):
    return {
        "type": "state_ack",
        "machineId": machine_id,
        "state": state,
        "success": success,
        "output": output or {},
        "error": error,
    }


async def _agent(repository, role="cto") -> Agent:
    agent = Agent(role=role, name=role.upper())
    await repository.save_agent(agent)
    return agent


@pytest.mark.asyncio
async def test_linear_workflow_runs_to_completion(engine, repository, transport, linear_definition):
    await engine.definitions.save(linear_definition)
    agent = await _agent(repository)

    machine = await engine.create_machine("linear", {"projectName": "demo"})
    assert machine.status == MachineStatus.PENDING
    assert machine.current_state == "plan"

    machine = await engine.start_machine(machine.id)
    assert machine.status == MachineStatus.RUNNING

    tasks = transport.messages_for(agent_channel(agent.id))
    assert len(tasks) == 1
    assert tasks[0].type == "state_task"
    assert tasks[0].requires_response is True
    assert tasks[0].payload["machineId"] == machine.id
    assert tasks[0].payload["state"] == "plan"
    assert tasks[0].payload["prompt"] == "Plan the work for demo"
    assert tasks[0].payload["attemptNumber"] == 1

    assert await engine.handle_ack(_ack(machine.id, "plan", output={"summary": "two steps"}))
    machine = await engine.get_machine(machine.id)
    assert machine.current_state == "build"
    assert machine.previous_state == "plan"
    assert machine.context.summary == "two steps"
    assert transport.messages_for(agent_channel(agent.id))[-1].payload["prompt"] == "Build it: two steps"

    assert await engine.handle_ack(_ack(machine.id, "build", output={"prUrl": "https://example/pr/1"}))
    machine = await engine.get_machine(machine.id)
    assert machine.status == MachineStatus.COMPLETED
    assert machine.completed_at is not None
    assert machine.state_timeout_at is None
    assert machine.context.as_dict()["prUrl"] == "https://example/pr/1"

    transitions = await engine.get_transitions(machine.id)
    assert [(t.from_state, t.to_state) for t in transitions] == [(None, "plan"), ("plan", "build")]
    assert all(t.success for t in transitions)

    items = await repository.list_queue_items(machine.id)
    assert len(items) == 2
    assert {i.status for i in items} == {QueueStatus.ACKNOWLEDGED}


@pytest.mark.asyncio
async def test_stale_and_unknown_acks_are_dropped(engine, repository, linear_definition):
    await engine.definitions.save(linear_definition)
    await _agent(repository)
    machine = await engine.create_machine("linear")
    await engine.start_machine(machine.id)

    assert await engine.handle_ack(_ack(machine.id, "build")) is False
    assert await engine.handle_ack(_ack("missing", "plan")) is False

    current = await engine.get_machine(machine.id)
    assert current.current_state == "plan"
    assert current.version == machine.version + 1
    assert len(await engine.get_transitions(machine.id)) == 1


@pytest.mark.asyncio
async def test_duplicate_acks_apply_once(engine, repository, linear_definition):
    await engine.definitions.save(linear_definition)
    await _agent(repository)
    machine = await engine.create_machine("linear")
    await engine.start_machine(machine.id)

    ack = _ack(machine.id, "plan", output={"summary": "x"})
    results = await asyncio.gather(engine.handle_ack(ack), engine.handle_ack(ack))

    assert sorted(results) == [False, True]
    current = await engine.get_machine(machine.id)
    assert current.current_state == "build"
    assert len(await engine.get_transitions(machine.id)) == 2


@pytest.mark.asyncio
async def test_single_retry_budget_fails_on_first_failure(engine, repository):
    definition = _definition([{"name": "plan", "maxRetries": 1}])
    await engine.definitions.save(definition)
    await _agent(repository)
    machine = await engine.create_machine("custom")
    await engine.start_machine(machine.id)

    assert await engine.handle_ack(_ack(machine.id, "plan", success=False, error="boom"))

    machine = await engine.get_machine(machine.id)
    assert machine.status == MachineStatus.FAILED
    assert machine.error_message == "boom"
    assert machine.retry_count == 1
    last = (await engine.get_transitions(machine.id))[-1]
    assert (last.from_state, last.to_state, last.success) == ("plan", "plan", False)
    assert last.error_code == "MAX_RETRIES"


@pytest.mark.asyncio
async def test_failure_retries_same_state_until_budget_is_spent(engine, repository, transport):
    definition = _definition([{"name": "plan", "maxRetries": 3, "onFailure": "plan"}])
    await engine.definitions.save(definition)
    agent = await _agent(repository)
    machine = await engine.create_machine("custom")
    await engine.start_machine(machine.id)

    for attempt in (1, 2):
        assert await engine.handle_ack(_ack(machine.id, "plan", success=False, error="flaky"))
        current = await engine.get_machine(machine.id)
        assert current.status == MachineStatus.RUNNING
        assert current.retry_count == attempt
        assert current.context.retry_count == attempt
        last_task = transport.messages_for(agent_channel(agent.id))[-1]
        assert last_task.payload["attemptNumber"] == attempt + 1

    assert await engine.handle_ack(_ack(machine.id, "plan", success=False, error="flaky"))
    current = await engine.get_machine(machine.id)
    assert current.status == MachineStatus.FAILED
    assert current.error_message == "flaky"


@pytest.mark.asyncio
async def test_failure_routes_to_on_failure_state_and_resets_retries(engine, repository):
    definition = _definition(
        [
            {"name": "plan", "onSuccess": "review"},
            {"name": "review", "onFailure": "plan", "maxRetries": 3},
        ]
    )
    await engine.definitions.save(definition)
    await _agent(repository)
    machine = await engine.create_machine("custom")
    await engine.start_machine(machine.id)
    await engine.handle_ack(_ack(machine.id, "plan"))

    assert await engine.handle_ack(_ack(machine.id, "review", success=False, error="changes requested"))

    machine = await engine.get_machine(machine.id)
    assert machine.status == MachineStatus.RUNNING
    assert machine.current_state == "plan"
    assert machine.retry_count == 0
    last = (await engine.get_transitions(machine.id))[-1]
    assert (last.from_state, last.to_state, last.success) == ("review", "plan", False)


@pytest.mark.asyncio
async def test_failure_without_route_completes_machine(engine, repository, transport):
    definition = _definition([{"name": "plan", "maxRetries": 3}])
    await engine.definitions.save(definition)
    agent = await _agent(repository)
    machine = await engine.create_machine("custom")
    await engine.start_machine(machine.id)

    assert await engine.handle_ack(_ack(machine.id, "plan", success=False, error="not feasible"))

    machine = await engine.get_machine(machine.id)
    assert machine.status == MachineStatus.COMPLETED
    assert machine.completed_at is not None
    assert machine.context.retry_count == 1
    last = (await engine.get_transitions(machine.id))[-1]
    assert (last.from_state, last.to_state, last.success) == ("plan", "COMPLETE", False)
    assert last.error_message == "not feasible"
    assert last.attempt_number == 1
    # no retry was dispatched
    assert len(transport.messages_for(agent_channel(agent.id))) == 1


@pytest.mark.asyncio
async def test_lost_version_race_writes_no_transition(engine, repository, linear_definition, monkeypatch):
    await engine.definitions.save(linear_definition)
    await _agent(repository)
    machine = await engine.create_machine("linear")
    await engine.start_machine(machine.id)

    async def stale_write(machine_id, changes, expected_version=None):
        return False

    monkeypatch.setattr(repository, "update_machine", stale_write)
    assert await engine.handle_ack(_ack(machine.id, "plan", output={"summary": "x"})) is False

    assert [t.to_state for t in await engine.get_transitions(machine.id)] == ["plan"]
    assert (await engine.get_machine(machine.id)).current_state == "plan"


@pytest.mark.asyncio
async def test_start_and_resume_fail_when_state_is_missing(engine, repository):
    await engine.definitions.save(_definition([{"name": "plan"}]))
    await _agent(repository)
    pending = await engine.create_machine("custom")
    paused = await engine.create_machine("custom")
    await engine.start_machine(paused.id)
    await engine.pause_machine(paused.id)

    await engine.definitions.save(_definition([{"name": "draft"}], initial="draft"))

    started = await engine.start_machine(pending.id)
    assert started.status == MachineStatus.FAILED
    assert started.error_message == "State plan not found in definition"

    resumed = await engine.resume_machine(paused.id)
    assert resumed.status == MachineStatus.FAILED
    assert resumed.state_timeout_at is None


@pytest.mark.asyncio
async def test_locks_are_released_for_finished_machines(engine, repository, linear_definition):
    await engine.definitions.save(linear_definition)
    await _agent(repository)
    done = await engine.create_machine("linear")
    await engine.start_machine(done.id)
    await engine.handle_ack(_ack(done.id, "plan"))
    assert done.id in engine._locks
    await engine.handle_ack(_ack(done.id, "build"))
    assert done.id not in engine._locks

    dropped = await engine.create_machine("linear")
    await engine.start_machine(dropped.id)
    await engine.cancel_machine(dropped.id)

    assert await engine.handle_ack(_ack(done.id, "build")) is False
    assert await engine.handle_ack(_ack("missing", "plan")) is False
    assert dict(engine._locks) == {}


@pytest.mark.asyncio
async def test_timeouts_retry_then_fail(engine, repository, clock):
    definition = _definition([{"name": "plan", "timeout": 1000, "maxRetries": 2}])
    await engine.definitions.save(definition)
    await _agent(repository)
    machine = await engine.create_machine("custom")
    await engine.start_machine(machine.id)

    assert await engine.check_timeouts() == 0

    clock.advance(seconds=2)
    assert await engine.check_timeouts() == 1
    machine = await engine.get_machine(machine.id)
    assert machine.status == MachineStatus.RUNNING
    assert machine.retry_count == 1
    assert machine.state_timeout_at == clock.now + timedelta(seconds=1)
    items = await repository.list_queue_items(machine.id)
    assert [i.status for i in items].count(QueueStatus.TIMEOUT) == 1

    clock.advance(seconds=2)
    assert await engine.check_timeouts() == 1
    machine = await engine.get_machine(machine.id)
    assert machine.status == MachineStatus.FAILED
    assert machine.error_message == "Timeout after 2 attempts"
    assert await engine.check_timeouts() == 0


@pytest.mark.asyncio
async def test_skip_condition_moves_past_state(engine, repository, transport):
    definition = _definition(
        [
            {"name": "spec", "skipIf": "!context.needsSpec", "onSuccess": "build"},
            {"name": "build"},
        ],
        initial="spec",
    )
    await engine.definitions.save(definition)
    agent = await _agent(repository)

    skipped = await engine.create_machine("custom", {"needsSpec": False})
    skipped = await engine.start_machine(skipped.id)
    assert skipped.current_state == "build"
    transitions = await engine.get_transitions(skipped.id)
    assert transitions[-1].agent_output == {"skipped": True}

    kept = await engine.create_machine("custom", {"needsSpec": True})
    kept = await engine.start_machine(kept.id)
    assert kept.current_state == "spec"

    states = [m.payload["state"] for m in transport.messages_for(agent_channel(agent.id))]
    assert states == ["build", "spec"]


@pytest.mark.asyncio
async def test_skipping_final_state_completes_machine(engine, repository):
    definition = _definition([{"name": "plan", "skipIf": "context.done"}])
    await engine.definitions.save(definition)
    machine = await engine.create_machine("custom", {"done": True})
    machine = await engine.start_machine(machine.id)
    assert machine.status == MachineStatus.COMPLETED


@pytest.mark.asyncio
async def test_pause_resume_and_cancel(engine, repository, transport, linear_definition):
    await engine.definitions.save(linear_definition)
    agent = await _agent(repository)
    machine = await engine.create_machine("linear")
    await engine.start_machine(machine.id)

    paused = await engine.pause_machine(machine.id)
    assert paused.status == MachineStatus.PAUSED
    assert paused.state_timeout_at is None
    assert await engine.handle_ack(_ack(machine.id, "plan")) is False

    resumed = await engine.resume_machine(machine.id)
    assert resumed.status == MachineStatus.RUNNING
    assert len(transport.messages_for(agent_channel(agent.id))) == 2

    cancelled = await engine.cancel_machine(machine.id, "no longer needed")
    assert cancelled.status == MachineStatus.CANCELLED
    assert cancelled.error_message == "no longer needed"

    with pytest.raises(InvalidTransition):
        await engine.cancel_machine(machine.id)
    with pytest.raises(InvalidTransition):
        await engine.resume_machine(machine.id)
    with pytest.raises(MachineNotFound):
        await engine.pause_machine("missing")


@pytest.mark.asyncio
async def test_start_requires_pending_machine(engine, linear_definition):
    await engine.definitions.save(linear_definition)
    machine = await engine.create_machine("linear")
    await engine.start_machine(machine.id)
    with pytest.raises(InvalidTransition):
        await engine.start_machine(machine.id)


@pytest.mark.asyncio
async def test_task_is_broadcast_without_agent(engine, transport, linear_definition):
    await engine.definitions.save(linear_definition)
    machine = await engine.create_machine("linear", priority=10)
    await engine.start_machine(machine.id)

    broadcast = transport.messages_for("channel:broadcast")
    assert len(broadcast) == 1
    assert broadcast[0].type == "state_task"
    assert broadcast[0].priority == "high"


@pytest.mark.asyncio
async def test_unknown_and_invalid_definitions(engine):
    with pytest.raises(DefinitionNotFound):
        await engine.create_machine("missing")

    broken = _definition([{"name": "plan", "onSuccess": "nowhere"}])
    with pytest.raises(InvalidDefinition):
        await engine.definitions.save(broken)


@pytest.mark.asyncio
async def test_listeners_receive_lifecycle_events(engine, repository, linear_definition):
    await engine.definitions.save(linear_definition)
    await _agent(repository)
    events = []
    engine.on("*", lambda event, data: events.append(event))

    async def failing(event, data):
        raise RuntimeError("listener bug")

    engine.on("machine_completed", failing)

    machine = await engine.create_machine("linear")
    await engine.start_machine(machine.id)
    await engine.handle_ack(_ack(machine.id, "plan"))
    await engine.handle_ack(_ack(machine.id, "build"))

    assert events[0] == "machine_created"
    assert "machine_started" in events
    assert events.count("task_sent") == 2
    assert events[-1] == "machine_completed"

    with pytest.raises(ValueError):
        engine.on("not_an_event", lambda e, d: None)


@pytest.mark.asyncio
async def test_scheduled_workflow_starts_machine_when_due(engine, repository, clock, linear_definition):
    await engine.definitions.save(linear_definition)
    await _agent(repository)
    schedule = await engine.schedule_workflow("linear", "*/5 * * * *")
    assert schedule.next_run_at == clock.now.replace(minute=5)

    assert await engine.check_scheduled_workflows() == 0
    clock.advance(minutes=6)
    assert await engine.check_scheduled_workflows() == 1

    stored = (await repository.list_schedules())[0]
    assert stored.last_status == "started"
    assert stored.next_run_at == clock.now.replace(minute=10)
    machine = await engine.get_machine(stored.last_machine_id)
    assert machine.status == MachineStatus.RUNNING
    assert machine.context.as_dict()["scheduledWorkflowId"] == schedule.id


@pytest.mark.asyncio
async def test_stats_group_by_status_and_type(engine, repository, linear_definition):
    await engine.definitions.save(linear_definition)
    await _agent(repository)
    done = await engine.create_machine("linear")
    await engine.start_machine(done.id)
    await engine.handle_ack(_ack(done.id, "plan"))
    await engine.handle_ack(_ack(done.id, "build"))
    await engine.create_machine("linear")

    stats = await engine.get_stats()
    assert stats["total"] == 2
    assert stats["by_status"] == {"completed": 1, "pending": 1}
    assert stats["by_type"]["linear"]["success_rate"] == 1.0
    assert await engine.get_active_machines_for_agent("cto") != []
