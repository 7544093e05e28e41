"""Message bus dispatch and built-in handler tests."""

import asyncio

import pytest

from quorum.bus import CoreHandlers, DecisionService, agent_channel, task_queue
from quorum.contracts import AgentMessage
from quorum.persistence import Agent


async def eventually(check, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        if await check():
            return
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def _message(type_, from_="agent-1", to="orchestrator", payload=None, priority="normal"):
    return AgentMessage(type=type_, from_=from_, to=to, payload=payload or {}, priority=priority)


@pytest.fixture
def handlers(bus, repository):
    decisions = DecisionService(repository, bus)
    core = CoreHandlers(bus, repository, decisions)
    core.register()
    return core


def test_agent_message_uses_wire_aliases():
    message = _message("task", from_="cto-1", payload={"title": "x"})
    data = message.model_dump(by_alias=True)
    assert data["from"] == "cto-1"
    assert "requiresResponse" in data
    assert AgentMessage.from_json(message.to_json()).from_ == "cto-1"


@pytest.mark.asyncio
async def test_own_messages_are_ignored(bus, repository, handlers):
    assert await bus.process_message(_message("task", from_=bus.orchestrator_id)) is False
    assert await repository.list_events() == []


@pytest.mark.asyncio
async def test_unknown_type_is_logged_not_raised(bus, repository):
    assert await bus.process_message(_message("mystery")) is False
    unhandled = await repository.list_events("unhandled_message")
    assert len(unhandled) == 1
    assert unhandled[0].payload["type"] == "mystery"


@pytest.mark.asyncio
async def test_handler_errors_do_not_escape(bus, repository):
    async def broken(message):
        raise RuntimeError("bad handler")

    bus.register_handler("alert", broken)
    assert await bus.process_message(_message("alert")) is False
    assert len(await repository.list_events("alert")) == 1


@pytest.mark.asyncio
async def test_broadcast_targets(bus, transport):
    await bus.broadcast("broadcast", {"eventType": "hello"}, target="head")
    assert transport.messages_for("channel:head")[0].to == "head"
    with pytest.raises(ValueError):
        await bus.broadcast("broadcast", {}, target="board")


@pytest.mark.asyncio
async def test_status_request_queues_task_for_agent(bus, repository, transport, handlers):
    agent = Agent(role="cfo")
    await repository.save_agent(agent)

    assert await bus.process_message(_message("status_request", from_="ceo-1", to=agent.id))

    task = await bus.pop_task(agent.id)
    assert task["type"] == "status_request"
    assert task["include"] == ["metrics", "tasks", "blockers"]
    assert task["from"] == "ceo-1"
    notices = transport.messages_for(agent_channel(agent.id))
    assert [m.type for m in notices] == ["task_queued"]


@pytest.mark.asyncio
async def test_urgent_task_is_also_queued_urgently(bus, transport, handlers):
    message = _message(
        "task", from_="ceo-1", to="cto-1", payload={"title": "Fix prod"}, priority="urgent"
    )
    assert await bus.process_message(message)

    assert await transport.length(task_queue("cto-1")) == 1
    urgent = await bus.pop_urgent()
    assert urgent["agentId"] == "cto-1"
    assert urgent["taskId"] == (await bus.pop_task("cto-1"))["taskId"]


@pytest.mark.asyncio
async def test_decision_message_creates_proposal(bus, repository, transport, handlers):
    payload = {"title": "Adopt Rust", "description": "for the indexer", "tier": "major"}
    assert await bus.process_message(_message("decision", from_="cto-1", payload=payload))

    decisions = await repository.list_decisions()
    assert len(decisions) == 1
    assert decisions[0].proposed_by == "cto-1"
    assert transport.messages_for("channel:head")[0].payload["action"] == "request_vote"


@pytest.mark.asyncio
async def test_vote_message_uses_sender_role(bus, repository, handlers):
    ceo = Agent(role="ceo", tier="head")
    await repository.save_agent(ceo)
    await bus.process_message(_message("decision", from_="cto-1", payload={"title": "Hire"}))
    decision = (await repository.list_decisions())[0]

    await bus.process_message(
        _message("vote", from_=ceo.id, payload={"decisionId": decision.id, "vote": "approve"})
    )
    # analysis replies carry no ballot and are ignored
    await bus.process_message(
        _message("vote", from_="cmo-1", payload={"decisionId": decision.id, "analysis": "ok"})
    )

    decision = await repository.get_decision(decision.id)
    assert decision.ceo_vote == "approve"
    assert decision.clevel_votes == {}


@pytest.mark.asyncio
async def test_consumers_dispatch_published_messages(bus, repository, transport, handlers):
    await bus.start()
    try:
        assert bus.running
        await transport.publish(
            "channel:orchestrator",
            _message("alert", from_="cfo-1", payload={"severity": "critical", "message": "burn"}),
        )

        async def escalated():
            return len(await repository.list_escalations()) == 1

        await eventually(escalated)
    finally:
        await bus.stop()
    assert not bus.running
