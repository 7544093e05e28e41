"""Governance decisions: tiered CEO/DAO voting with human escalation.

A decision is proposed, put to the head tier (CEO and DAO) and evaluated
once both required votes for the active round are in:

* both approve: approved (critical decisions additionally need a human)
* both veto: vetoed
* anything else: the veto round advances; C-level agents are asked for
  analysis and the head tier votes again. When the round counter reaches
  ``max_veto_rounds`` the decision is escalated to a human instead.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Protocol, Union

from ..config import DecisionTierConfig, QuorumConfig
from ..contracts import MessageType, VotePayload, utcnow
from ..persistence import Decision, DecisionStatus, Escalation, OrchestratorRepository
from .message_bus import MessageBus

logger = logging.getLogger(__name__)

HUMAN_RESPONSES = {
    "approve": DecisionStatus.APPROVED,
    "approved": DecisionStatus.APPROVED,
    "yes": DecisionStatus.APPROVED,
    "reject": DecisionStatus.REJECTED,
    "rejected": DecisionStatus.REJECTED,
    "no": DecisionStatus.REJECTED,
    "veto": DecisionStatus.VETOED,
    "vetoed": DecisionStatus.VETOED,
}


class Notifier(Protocol):
    """Delivers escalations to humans (chat, email, dashboard)."""

    async def notify(self, escalation: Escalation) -> None:
        ...


class LoggingNotifier:
    """Notifier that only writes escalations to the log."""

    async def notify(self, escalation: Escalation) -> None:
        logger.warning(
            f"Escalation {escalation.id} via {', '.join(escalation.channels_notified)}: "
            f"{escalation.reason}"
        )


class DecisionService:
    """Owns Decision and Escalation mutation."""

    def __init__(
        self,
        repository: OrchestratorRepository,
        bus: MessageBus,
        config: Optional[QuorumConfig] = None,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.bus = bus
        self.config = config or QuorumConfig()
        self.notifier = notifier or LoggingNotifier()
        self.clock = clock
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def max_veto_rounds(self) -> int:
        return self.config.max_veto_rounds

    def requirements(self, tier: str) -> DecisionTierConfig:
        return self.config.decision_tiers.get(tier) or DecisionTierConfig()

    # ------------------------------------------------------------------
    # Proposals
    async def propose(
        self,
        title: str,
        proposed_by: str,
        description: str = "",
        tier: str = "major",
    ) -> Decision:
        now = self.clock()
        requirements = self.requirements(tier)

        if not (requirements.ceo_required or requirements.dao_required):
            decision = Decision(
                title=title,
                description=description,
                proposed_by=proposed_by,
                tier=tier,
                status=DecisionStatus.APPROVED,
                created_at=now,
                resolved_at=now,
            )
            await self.repository.create_decision(decision)
            logger.info(f"Operational decision '{title}' from {proposed_by} auto-approved")
            await self._notify_ceo(decision)
            return decision

        deadline = None
        if requirements.timeout_seconds:
            deadline = now + timedelta(seconds=requirements.timeout_seconds)
        decision = Decision(
            title=title,
            description=description,
            proposed_by=proposed_by,
            tier=tier,
            deadline_at=deadline,
            created_at=now,
        )
        await self.repository.create_decision(decision)
        logger.info(f"Decision {decision.id} '{title}' ({tier}) proposed by {proposed_by}")
        await self._request_votes(decision)
        return decision

    async def _notify_ceo(self, decision: Decision) -> None:
        ceo = await self.repository.find_agent_by_role("ceo")
        if ceo is None or ceo.id == decision.proposed_by:
            return
        await self.bus.send_to_agent(
            ceo.id,
            MessageType.STATUS_RESPONSE,
            {
                "action": "decision_notice",
                "decisionId": decision.id,
                "title": decision.title,
                "tier": decision.tier,
                "proposedBy": decision.proposed_by,
                "autoApproved": True,
            },
        )

    async def _request_votes(self, decision: Decision) -> None:
        payload = {
            "action": "request_vote",
            "decisionId": decision.id,
            "title": decision.title,
            "description": decision.description,
            "tier": decision.tier,
            "proposedBy": decision.proposed_by,
            "round": decision.active_round,
        }
        requirements = self.requirements(decision.tier)
        if requirements.ceo_required and not requirements.dao_required:
            ceo = await self.repository.find_agent_by_role("ceo")
            if ceo is not None:
                await self.bus.send_to_agent(
                    ceo.id,
                    MessageType.VOTE,
                    payload,
                    priority="high",
                    requires_response=True,
                    response_deadline=decision.deadline_at,
                )
                return
        await self.bus.broadcast(
            MessageType.VOTE,
            payload,
            target="head",
            priority="high",
            requires_response=True,
            response_deadline=decision.deadline_at,
        )

    # ------------------------------------------------------------------
    # Voting
    async def record_vote(self, vote: Union[VotePayload, Dict[str, Any]]) -> Optional[Decision]:
        """Record one vote and evaluate the decision when the round is complete."""
        if not isinstance(vote, VotePayload):
            vote = VotePayload.model_validate(vote)

        async with self._locks[vote.decision_id]:
            decision = await self.repository.get_decision(vote.decision_id)
            if decision is None:
                logger.warning(f"Vote for unknown decision {vote.decision_id}")
                self._locks.pop(vote.decision_id, None)
                return None
            if decision.status != DecisionStatus.PENDING:
                logger.info(
                    f"Vote from {vote.voter_type} for {decision.status} decision {decision.id} ignored"
                )
                self._locks.pop(decision.id, None)
                return decision
            if vote.round is not None and vote.round != decision.active_round:
                logger.warning(
                    f"Vote from {vote.voter_type} for round {vote.round} of decision "
                    f"{decision.id} ignored; active round is {decision.active_round}"
                )
                return decision

            role = vote.voter_type.lower()
            if role == "ceo":
                changes: Dict[str, Any] = {"ceo_vote": vote.vote}
            elif role == "dao":
                changes = {"dao_vote": vote.vote}
            else:
                changes = {"clevel_votes": {**decision.clevel_votes, role: vote.vote}}
            await self.repository.update_decision(decision.id, changes)
            decision = decision.model_copy(update=changes)
            logger.info(
                f"Vote recorded for decision {decision.id}: {role}={vote.vote} "
                f"(round {decision.active_round})"
            )
            if role not in ("ceo", "dao"):
                return decision
            return await self._evaluate(decision)

    async def _evaluate(self, decision: Decision) -> Decision:
        requirements = self.requirements(decision.tier)
        votes: List[str] = []
        if requirements.ceo_required:
            if decision.ceo_vote is None:
                return decision
            votes.append(decision.ceo_vote)
        if requirements.dao_required:
            if decision.dao_vote is None:
                return decision
            votes.append(decision.dao_vote)

        if all(v == "approve" for v in votes):
            if requirements.human_required:
                return await self._escalate(
                    decision,
                    f"Critical decision requires human confirmation: {decision.title}",
                    ["telegram", "email"],
                )
            return await self._resolve(decision, DecisionStatus.APPROVED)
        if all(v == "veto" for v in votes):
            return await self._resolve(decision, DecisionStatus.VETOED)
        if len(votes) == 1:
            # single-voter tiers wait for a decisive vote or the deadline
            return decision
        return await self._next_round(decision)

    async def _next_round(self, decision: Decision) -> Decision:
        new_round = min(decision.veto_round + 1, self.max_veto_rounds)
        if new_round >= self.max_veto_rounds:
            await self.repository.update_decision(decision.id, {"veto_round": new_round})
            decision = decision.model_copy(update={"veto_round": new_round})
            return await self._escalate(
                decision,
                f"Decision deadlock after {self.max_veto_rounds} rounds: {decision.title}",
                ["telegram"],
            )

        previous = {"ceoVote": decision.ceo_vote, "daoVote": decision.dao_vote}
        changes = {"veto_round": new_round, "ceo_vote": None, "dao_vote": None}
        await self.repository.update_decision(decision.id, changes)
        decision = decision.model_copy(update=changes)
        logger.info(f"Decision {decision.id} split; starting round {decision.active_round}")

        await self.bus.broadcast(
            MessageType.VOTE,
            {
                "action": "provide_analysis",
                "decisionId": decision.id,
                "title": decision.title,
                "description": decision.description,
                "round": decision.active_round,
                **previous,
            },
            target="clevel",
            priority="high",
            requires_response=True,
            response_deadline=self.clock() + timedelta(hours=12),
        )
        await self._request_votes(decision)
        return decision

    async def _resolve(self, decision: Decision, status: str, human: Optional[str] = None) -> Decision:
        now = self.clock()
        changes: Dict[str, Any] = {"status": status, "resolved_at": now}
        if human is not None:
            changes["human_decision"] = human
        await self.repository.update_decision(decision.id, changes)
        decision = decision.model_copy(update=changes)
        self._locks.pop(decision.id, None)
        logger.info(f"Decision {decision.id} resolved: {status}")
        await self.bus.broadcast(
            MessageType.BROADCAST,
            {
                "eventType": "decision_resolved",
                "decisionId": decision.id,
                "title": decision.title,
                "tier": decision.tier,
                "result": status,
                "round": decision.veto_round,
            },
            target="all",
            priority="high",
        )
        return decision

    async def _escalate(self, decision: Decision, reason: str, channels: List[str]) -> Decision:
        await self.repository.update_decision(decision.id, {"status": DecisionStatus.ESCALATED})
        decision = decision.model_copy(update={"status": DecisionStatus.ESCALATED})
        self._locks.pop(decision.id, None)
        logger.warning(f"Escalating decision {decision.id} to human: {reason}")
        await self.trigger_escalation(reason, decision_id=decision.id, channels=channels)
        return decision

    # ------------------------------------------------------------------
    # Escalations and alerts
    async def trigger_escalation(
        self,
        reason: str,
        decision_id: Optional[str] = None,
        channels: Optional[List[str]] = None,
    ) -> Escalation:
        escalation = Escalation(
            decision_id=decision_id,
            reason=reason,
            channels_notified=channels or ["telegram"],
            created_at=self.clock(),
        )
        await self.repository.create_escalation(escalation)
        await self.bus.log_event(
            "escalation_created",
            self.bus.orchestrator_id,
            payload={"escalationId": escalation.id, "decisionId": decision_id, "reason": reason},
        )
        try:
            await self.notifier.notify(escalation)
        except Exception:
            logger.exception(f"Failed to deliver escalation {escalation.id}")
        return escalation

    async def respond_to_escalation(self, escalation_id: str, response: str) -> Optional[Escalation]:
        """Record a human answer; it resolves the linked escalated decision."""
        escalation = await self.repository.get_escalation(escalation_id)
        if escalation is None:
            logger.warning(f"Response for unknown escalation {escalation_id}")
            return None
        if escalation.status == "responded":
            logger.info(f"Escalation {escalation_id} already answered")
            return escalation

        now = self.clock()
        changes = {"status": "responded", "human_response": response, "responded_at": now}
        await self.repository.update_escalation(escalation_id, changes)
        escalation = escalation.model_copy(update=changes)

        if escalation.decision_id:
            async with self._locks[escalation.decision_id]:
                decision = await self.repository.get_decision(escalation.decision_id)
                status = HUMAN_RESPONSES.get(response.strip().lower())
                if decision and decision.status == DecisionStatus.ESCALATED and status:
                    await self._resolve(decision, status, human=response)
                elif decision and status is None:
                    logger.warning(
                        f"Human response '{response}' does not resolve decision {decision.id}"
                    )
                if decision is None or decision.status != DecisionStatus.PENDING:
                    self._locks.pop(escalation.decision_id, None)
        return escalation

    async def raise_alert(self, source: str, payload: Dict[str, Any]) -> Optional[Escalation]:
        severity = payload.get("severity", "info")
        logger.warning(
            f"Alert from {source}: {payload.get('type', 'alert')} ({severity}) {payload.get('message', '')}"
        )
        if severity != "critical":
            return None
        return await self.trigger_escalation(
            f"Critical alert from {source}: {payload.get('message', '')}",
            decision_id=payload.get("relatedDecisionId"),
            channels=["telegram", "email"],
        )

    # ------------------------------------------------------------------
    # Deadlines
    async def check_timeouts(self, now: Optional[datetime] = None) -> int:
        """Resolve pending decisions whose voting deadline has passed."""
        now = now or self.clock()
        handled = 0
        for expired in await self.repository.find_expired_decisions(now):
            try:
                async with self._locks[expired.id]:
                    decision = await self.repository.get_decision(expired.id)
                    if decision is None or decision.status != DecisionStatus.PENDING:
                        self._locks.pop(expired.id, None)
                        continue
                    if self.requirements(decision.tier).auto_approve_on_timeout:
                        logger.info(f"Decision {decision.id} auto-approved after timeout")
                        await self._resolve(decision, DecisionStatus.APPROVED)
                    else:
                        await self._escalate(
                            decision,
                            f"Decision timed out without consensus: {decision.title}",
                            ["telegram"],
                        )
                    handled += 1
            except Exception:
                logger.exception(f"Timeout handling failed for decision {expired.id}")
        return handled
