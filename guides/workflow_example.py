"""Run a workflow end to end with a simulated CTO agent on the in-memory bus."""

import asyncio
from pathlib import Path

from quorum import AgentMessage, MessageType, Orchestrator, QuorumConfig, StateAckMessage
from quorum.bus.channels import STATE_ACK_CHANNEL, agent_channel
from quorum.persistence import InMemoryRepository
from quorum.transports.inmemory import InMemoryTransport

OUTPUTS = {
    "analyze": {"needsSpec": False, "summary": "add rate limiting to the public API"},
    "implement": {"prUrl": "https://github.com/acme/api/pull/7"},
    "review": {"merged": True},
}


async def cto_agent(transport, agent_id: str) -> None:
    """Answer every state task with a canned output."""
    async for raw, message in transport.subscribe(agent_channel(agent_id), lifespan=5):
        await transport.ack(raw)
        if message.type != MessageType.STATE_TASK:
            continue
        state = message.payload["state"]
        print(f"🤖 cto received '{state}': {message.payload['prompt']}")
        ack = StateAckMessage(
            machine_id=message.payload["machineId"],
            state=state,
            success=True,
            output=OUTPUTS.get(state, {}),
        )
        await transport.publish(
            STATE_ACK_CHANNEL,
            AgentMessage(
                type=MessageType.STATE_ACK,
                from_=agent_id,
                to="orchestrator",
                payload=ack.model_dump(by_alias=True),
            ),
        )


async def main():
    config = QuorumConfig(definitions_path=str(Path(__file__).parent / "workflows"))
    orchestrator = Orchestrator(config, InMemoryRepository(), InMemoryTransport())
    await orchestrator.start()

    cto = await orchestrator.repository.find_agent_by_role("cto")
    agent = asyncio.create_task(cto_agent(orchestrator.transport, cto.id))
    await asyncio.sleep(0)

    machine = await orchestrator.engine.create_machine(
        "cto_feature", {"githubIssue": 42, "githubRepo": "acme/api"}
    )
    await orchestrator.engine.start_machine(machine.id)

    while not (await orchestrator.engine.get_machine(machine.id)).is_terminal:
        await asyncio.sleep(0.05)

    machine = await orchestrator.engine.get_machine(machine.id)
    print(f"✅ Machine {machine.id} finished: {machine.status}")
    for t in await orchestrator.engine.get_transitions(machine.id):
        print(f"   {t.from_state or '-'} -> {t.to_state}")

    agent.cancel()
    await orchestrator.stop()


if __name__ == "__main__":
    asyncio.run(main())
