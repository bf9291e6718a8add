"""Deterministic handling-agent assignment for new disputes.

The roster per priority tier is configuration. Two policies are available:
round-robin keyed on the durable case sequence, and least-loaded by count of
active disputes.
"""

from typing import Protocol

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from gigescrow.models.dispute import Dispute
from gigescrow.services.dispute_state_machine import ACTIVE_STATUSES, DisputePriority

FALLBACK_AGENT = "Dispute Desk"


class AssignmentPolicy(Protocol):
    async def assign(self, db: AsyncSession, priority: DisputePriority, sequence: int) -> str: ...


def _normalise_roster(roster: dict[str, list[str]]) -> dict[DisputePriority, tuple[str, ...]]:
    return {
        DisputePriority(tier): tuple(name for name in names if name)
        for tier, names in roster.items()
    }


class RoundRobinAssignment:
    """``roster[priority][(sequence - 1) % len]``.

    The sequence is the year's case number, so the rotation survives restarts
    and is reproducible from the case number alone.
    """

    def __init__(self, roster: dict[str, list[str]]):
        self.roster = _normalise_roster(roster)

    def pick(self, priority: DisputePriority, sequence: int) -> str:
        agents = self.roster.get(priority) or self.roster.get(DisputePriority.MEDIUM)
        if not agents:
            return FALLBACK_AGENT
        return agents[(sequence - 1) % len(agents)]

    async def assign(self, db: AsyncSession, priority: DisputePriority, sequence: int) -> str:
        return self.pick(priority, sequence)


class LeastLoadedAssignment:
    """Agent of the tier with the fewest active disputes; ties go to roster order."""

    def __init__(self, roster: dict[str, list[str]]):
        self.roster = _normalise_roster(roster)

    async def assign(self, db: AsyncSession, priority: DisputePriority, sequence: int) -> str:
        agents = self.roster.get(priority) or self.roster.get(DisputePriority.MEDIUM)
        if not agents:
            return FALLBACK_AGENT

        result = await db.execute(
            select(Dispute.assigned_agent, func.count(Dispute.id))
            .where(
                Dispute.assigned_agent.in_(agents),
                Dispute.status.in_([s.value for s in ACTIVE_STATUSES]),
            )
            .group_by(Dispute.assigned_agent)
        )
        load = {agent: count for agent, count in result.all()}
        return min(agents, key=lambda agent: (load.get(agent, 0), agents.index(agent)))


def build_policy(name: str, roster: dict[str, list[str]]) -> AssignmentPolicy:
    if name == "least_loaded":
        return LeastLoadedAssignment(roster)
    if name == "round_robin":
        return RoundRobinAssignment(roster)
    raise ValueError(f"Unknown assignment policy: {name!r}")
