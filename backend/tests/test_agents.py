"""Tests for deterministic agent assignment."""

from datetime import timedelta

import pytest

from gigescrow.models.dispute import Dispute
from gigescrow.models.escrow import EscrowTransaction
from gigescrow.services.agents import (
    FALLBACK_AGENT,
    LeastLoadedAssignment,
    RoundRobinAssignment,
    build_policy,
)
from gigescrow.services.dispute_state_machine import DisputePriority

from conftest import NOW, ROSTER


class TestRoundRobin:
    def test_rotates_by_sequence(self):
        policy = RoundRobinAssignment(ROSTER)
        picks = [policy.pick(DisputePriority.MEDIUM, seq) for seq in range(1, 7)]
        assert picks == ["Mia", "Max", "Mo", "Mia", "Max", "Mo"]

    def test_reproducible_from_sequence(self):
        a = RoundRobinAssignment(ROSTER)
        b = RoundRobinAssignment(ROSTER)
        assert a.pick(DisputePriority.HIGH, 42) == b.pick(DisputePriority.HIGH, 42)

    def test_empty_tier_falls_back_to_medium(self):
        policy = RoundRobinAssignment({"HIGH": [], "MEDIUM": ["Mia"], "LOW": []})
        assert policy.pick(DisputePriority.HIGH, 1) == "Mia"

    def test_empty_roster_uses_desk(self):
        policy = RoundRobinAssignment({"HIGH": [], "MEDIUM": [], "LOW": []})
        assert policy.pick(DisputePriority.LOW, 3) == FALLBACK_AGENT

    @pytest.mark.asyncio
    async def test_assign_matches_pick(self, db):
        policy = RoundRobinAssignment(ROSTER)
        assert await policy.assign(db, DisputePriority.HIGH, 2) == "Hugo"


class TestLeastLoaded:
    @pytest.mark.asyncio
    async def test_picks_agent_with_fewest_active_cases(self, db):
        for i, (agent, status) in enumerate(
            [("Mia", "OPEN"), ("Mia", "UNDER_REVIEW"), ("Max", "OPEN"), ("Mo", "RESOLVED")]
        ):
            txn = EscrowTransaction(payer_id="p", payee_id="q", amount=10_000)
            db.add(txn)
            await db.flush()
            db.add(
                Dispute(
                    case_number=f"CASE-2025-{i + 1:03d}",
                    status=status,
                    type="OTHER",
                    priority="MEDIUM",
                    amount=10_000,
                    currency="USD",
                    reason="r",
                    created_by="p",
                    respondent="q",
                    escrow_transaction_id=txn.id,
                    expected_resolution=NOW + timedelta(days=10),
                    assigned_agent=agent,
                )
            )
        await db.flush()

        policy = LeastLoadedAssignment(ROSTER)
        # Mo's only case is resolved, so Mo carries no active load
        assert await policy.assign(db, DisputePriority.MEDIUM, 99) == "Mo"

    @pytest.mark.asyncio
    async def test_ties_go_to_roster_order(self, db):
        policy = LeastLoadedAssignment(ROSTER)
        assert await policy.assign(db, DisputePriority.HIGH, 7) == "Hana"


class TestBuildPolicy:
    def test_known_policies(self):
        assert isinstance(build_policy("round_robin", ROSTER), RoundRobinAssignment)
        assert isinstance(build_policy("least_loaded", ROSTER), LeastLoadedAssignment)

    def test_unknown_policy(self):
        with pytest.raises(ValueError):
            build_policy("random", ROSTER)
