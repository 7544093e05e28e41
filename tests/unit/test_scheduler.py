import asyncio

import pytest

from quorum.bus import agent_channel, task_queue
from quorum.config import QuorumConfig
from quorum.persistence import Agent
from quorum.scheduler import PeriodicJob, Scheduler


@pytest.fixture
def scheduler(bus, repository):
    return Scheduler(bus, repository, QuorumConfig())


@pytest.mark.asyncio
async def test_urgent_drain_is_bounded(scheduler, bus, transport):
    for n in range(15):
        await bus.push_urgent({"agentId": "cto-1", "taskId": f"t{n}"})

    assert await scheduler.drain_urgent_queue() == 10
    assert await bus.urgent_length() == 5
    forwarded = transport.messages_for(agent_channel("cto-1"))
    assert [m.payload["taskId"] for m in forwarded] == [f"t{n}" for n in range(10)]
    assert {m.type for m in forwarded} == {"urgent_task"}

    assert await scheduler.drain_urgent_queue() == 5
    assert await bus.urgent_length() == 0


@pytest.mark.asyncio
async def test_urgent_item_is_requeued_when_send_fails(scheduler, bus, monkeypatch):
    await bus.push_urgent({"agentId": "cto-1", "taskId": "t1"})

    async def fail(*args, **kwargs):
        raise ConnectionError("bus down")

    monkeypatch.setattr(bus, "send_to_agent", fail)
    with pytest.raises(ConnectionError):
        await scheduler.drain_urgent_queue()
    assert await bus.urgent_length() == 1


@pytest.mark.asyncio
async def test_pausing_mid_drain_delivers_the_popped_item(scheduler, bus, transport, monkeypatch):
    await bus.push_urgent({"agentId": "cto-1", "taskId": "t1"})
    entered, release, delivered = asyncio.Event(), asyncio.Event(), asyncio.Event()
    send = bus.send_to_agent

    async def held_send(*args, **kwargs):
        entered.set()
        await release.wait()
        result = await send(*args, **kwargs)
        delivered.set()
        return result

    monkeypatch.setattr(bus, "send_to_agent", held_send)
    scheduler.schedule_interval("urgent-queue", 1, scheduler.drain_urgent_queue)
    await asyncio.wait_for(entered.wait(), timeout=3)

    assert scheduler.pause_job("urgent-queue") is True
    release.set()
    await asyncio.wait_for(delivered.wait(), timeout=3)
    assert scheduler.get_job("urgent-queue").run_count == 1
    await scheduler.stop()

    forwarded = transport.messages_for(agent_channel("cto-1"))
    assert [m.payload["taskId"] for m in forwarded] == ["t1"]
    assert await bus.urgent_length() == 0


@pytest.mark.asyncio
async def test_stopped_job_lets_in_flight_tick_finish():
    started, release = asyncio.Event(), asyncio.Event()
    finished = []

    async def tick():
        started.set()
        await release.wait()
        finished.append(1)

    job = PeriodicJob("slow", "* * * * * *", tick)
    job.start()
    await asyncio.wait_for(started.wait(), timeout=3)
    job.stop()
    assert not job.running

    release.set()
    await asyncio.wait_for(job.wait_stopped(), timeout=3)
    assert finished == [1]
    assert job.metadata.run_count == 1


@pytest.mark.asyncio
async def test_pause_resume_stop_contract(scheduler):
    async def tick():
        return None

    scheduler.schedule_interval("archive", 3600, tick)
    assert scheduler.get_job("archive").cron_expression == "0 */1 * * *"

    assert scheduler.pause_job("archive") is True
    paused = scheduler.get_job("archive")
    assert paused.enabled is False
    assert paused.next_run is None

    assert scheduler.resume_job("archive") is True
    assert scheduler.get_job("archive").enabled is True
    assert scheduler.get_job("archive").next_run is not None

    assert scheduler.stop_job("archive") is True
    assert scheduler.get_job("archive") is None

    for operation in (scheduler.pause_job, scheduler.resume_job, scheduler.stop_job):
        assert operation("archive") is False


@pytest.mark.asyncio
async def test_failing_job_skips_tick(scheduler):
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("storage down")

    scheduler.schedule_maintenance("grooming", 600, flaky, start=False)
    assert await scheduler.run_job("grooming") is False
    job = scheduler.get_job("grooming")
    assert job.last_error == "storage down"

    assert await scheduler.run_job("grooming") is True
    job = scheduler.get_job("grooming")
    assert job.run_count == 2
    assert job.last_error is None
    assert await scheduler.run_job("missing") is False


@pytest.mark.asyncio
async def test_job_timer_fires():
    fired = asyncio.Event()

    async def tick():
        fired.set()

    job = PeriodicJob("fast", "* * * * * *", tick)
    job.start()
    try:
        await asyncio.wait_for(fired.wait(), timeout=3)
    finally:
        job.stop()
    assert job.metadata.run_count >= 1


@pytest.mark.asyncio
async def test_agent_loops_follow_configured_intervals(scheduler, repository, transport):
    cto = Agent(role="cto")
    cco = Agent(role="cco")
    idle = Agent(role="cfo", active=False)
    for agent in (cto, cco, idle):
        await repository.save_agent(agent)

    jobs = await scheduler.schedule_agent_loops(start=False)
    crons = {job.id: job.cron_expression for job in jobs}
    assert crons == {"loop-cto": "0 */1 * * *", "loop-cco": "0 */12 * * *"}

    await scheduler.run_job("loop-cto")
    trigger = transport.messages_for(agent_channel(cto.id))[0]
    assert trigger.type == "broadcast"
    assert trigger.payload["action"] == "loop_trigger"
    assert len(await repository.list_events("loop_trigger")) == 1


@pytest.mark.asyncio
async def test_core_jobs_are_registered(bus, repository, engine):
    scheduler = Scheduler(bus, repository, QuorumConfig(), engine=engine)
    try:
        ids = {job.id for job in scheduler.register_core_jobs(start=False)}
    finally:
        scheduler.stop_all()
    assert ids == {"urgent-queue", "due-events", "daily-digest", "timeout-sweep", "workflow-schedules"}


@pytest.mark.asyncio
async def test_daily_digest_goes_to_ceo(scheduler, repository, transport):
    assert await scheduler.send_daily_digest() is False

    ceo = Agent(role="ceo", tier="head")
    await repository.save_agent(ceo)
    assert await scheduler.send_daily_digest() is True
    task = await transport.pop(task_queue(ceo.id))
    assert task["action"] == "generate_daily_digest"
