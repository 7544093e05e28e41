"""End-to-end orchestration over the in-memory transport."""

import asyncio

import pytest

from quorum import Orchestrator
from quorum.bus.channels import HEAD_CHANNEL, ORCHESTRATOR_CHANNEL, STATE_ACK_CHANNEL, agent_channel
from quorum.config import QuorumConfig
from quorum.contracts import AgentMessage, MessageType, StateAckMessage
from quorum.persistence import InMemoryRepository
from quorum.transports.inmemory import InMemoryTransport


async def eventually(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        result = await predicate()
        if result:
            return result
        await asyncio.sleep(0.01)
    raise AssertionError("condition not met in time")


@pytest.fixture
def orchestrator():
    return Orchestrator(QuorumConfig(), InMemoryRepository(), InMemoryTransport())


async def _ack(transport, agent_id, machine_id, state, output):
    ack = StateAckMessage(machine_id=machine_id, state=state, success=True, output=output)
    await transport.publish(
        STATE_ACK_CHANNEL,
        AgentMessage(
            type=MessageType.STATE_ACK,
            from_=agent_id,
            to="orchestrator",
            payload=ack.model_dump(by_alias=True),
        ),
    )


@pytest.mark.asyncio
async def test_machine_runs_to_completion_through_the_bus(orchestrator, linear_definition):
    await orchestrator.start()
    try:
        await orchestrator.definitions.save(linear_definition)
        cto = await orchestrator.repository.find_agent_by_role("cto")
        assert cto is not None

        machine = await orchestrator.engine.create_machine("linear", {"projectName": "apollo"})
        await orchestrator.engine.start_machine(machine.id)

        def state_tasks():
            return [
                m
                for m in orchestrator.transport.messages_for(agent_channel(cto.id))
                if m.type == MessageType.STATE_TASK
            ]

        (task,) = state_tasks()
        assert task.payload["prompt"] == "Plan the work for apollo"

        await _ack(orchestrator.transport, cto.id, machine.id, "plan", {"summary": "two steps"})

        async def at_build():
            m = await orchestrator.engine.get_machine(machine.id)
            return m.current_state == "build"

        await eventually(at_build)
        assert state_tasks()[-1].payload["prompt"] == "Build it: two steps"

        await _ack(orchestrator.transport, cto.id, machine.id, "build", {})

        async def completed():
            m = await orchestrator.engine.get_machine(machine.id)
            return m if m.status == "completed" else None

        finished = await eventually(completed)
        assert finished.context.summary == "two steps"
        assert len(await orchestrator.engine.get_transitions(machine.id)) == 2
    finally:
        await orchestrator.stop()
    assert not orchestrator.bus.running


@pytest.mark.asyncio
async def test_decision_proposed_and_approved_over_the_bus(orchestrator):
    await orchestrator.start()
    try:
        cmo = await orchestrator.repository.find_agent_by_role("cmo")
        await orchestrator.transport.publish(
            ORCHESTRATOR_CHANNEL,
            AgentMessage(
                type=MessageType.DECISION,
                from_=cmo.id,
                to="orchestrator",
                payload={"title": "Launch campaign", "tier": "major"},
            ),
        )

        async def proposed():
            return await orchestrator.repository.list_decisions("pending")

        (decision,) = await eventually(proposed)
        assert orchestrator.transport.messages_for(HEAD_CHANNEL)

        for role in ("ceo", "dao"):
            agent = await orchestrator.repository.find_agent_by_role(role)
            await orchestrator.transport.publish(
                HEAD_CHANNEL,
                AgentMessage(
                    type=MessageType.VOTE,
                    from_=agent.id,
                    to="orchestrator",
                    payload={"decisionId": decision.id, "vote": "approve", "round": 1},
                ),
            )

        async def approved():
            d = await orchestrator.repository.get_decision(decision.id)
            return d if d.status == "approved" else None

        resolved = await eventually(approved)
        assert resolved.ceo_vote == "approve"
        assert resolved.dao_vote == "approve"
    finally:
        await orchestrator.stop()


@pytest.mark.asyncio
async def test_run_with_lifespan_returns(orchestrator):
    await asyncio.wait_for(orchestrator.run(lifespan=0.05), timeout=2.0)
    assert not orchestrator.bus.running
    assert len(await orchestrator.repository.list_agents()) == len(orchestrator.config.agents)
