"""Walk a major decision through a CEO/DAO split until it reaches a human."""

import asyncio

from quorum import Orchestrator, QuorumConfig
from quorum.persistence import InMemoryRepository
from quorum.transports.inmemory import InMemoryTransport


class PrintNotifier:
    async def notify(self, escalation):
        channels = ", ".join(escalation.channels_notified)
        print(f"📣 Escalation {escalation.id} via {channels}: {escalation.reason}")


async def main():
    orchestrator = Orchestrator(
        QuorumConfig(max_veto_rounds=2),
        InMemoryRepository(),
        InMemoryTransport(),
        notifier=PrintNotifier(),
    )
    decisions = orchestrator.decisions

    decision = await decisions.propose(
        title="Shift marketing budget to developer relations",
        proposed_by="cmo",
        tier="major",
    )
    print(f"🗳️  Decision {decision.id} opened ({decision.tier})")

    # CEO approves, DAO vetoes, every round
    for round_number in (1, 2):
        await decisions.record_vote(
            {"decisionId": decision.id, "voterType": "ceo", "vote": "approve", "round": round_number}
        )
        decision = await decisions.record_vote(
            {"decisionId": decision.id, "voterType": "dao", "vote": "veto", "round": round_number}
        )
        print(f"   round {round_number}: {decision.status} (veto round {decision.veto_round})")

    (escalation,) = await orchestrator.repository.list_escalations(decision_id=decision.id)
    await decisions.respond_to_escalation(escalation.id, "approve")
    decision = await orchestrator.repository.get_decision(decision.id)
    print(f"✅ Human answered; decision is {decision.status}")


if __name__ == "__main__":
    asyncio.run(main())
