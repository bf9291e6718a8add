from unittest.mock import AsyncMock, patch

import pytest

from gigescrow.services.orchestrator import Caller, CreateDisputeRequest

from conftest import PAYEE, PAYER, auth_header, funded_escrow

INTERNAL = {"X-Internal-Token": "test-internal-token"}


@pytest.fixture
def fresh_idempotency():
    with patch("gigescrow.api.escrow.check_idempotency", new_callable=AsyncMock) as mock, patch(
        "gigescrow.api.escrow.clear_idempotency", new_callable=AsyncMock
    ):
        mock.return_value = True
        yield mock


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}
        assert "X-Request-ID" in resp.headers

    @pytest.mark.asyncio
    async def test_fee_quote(self, client):
        resp = await client.get(
            "/api/fees/quote",
            params={"amount": 10_000, "payerTier": "premium", "paymentMethod": "bank_transfer"},
        )
        assert resp.json() == {
            "amount": 10_000,
            "platformFeeBps": 350,
            "processingFeeBps": 80,
            "platformFee": 350,
            "processingFee": 80,
            "totalFees": 430,
            "netAmount": 9_570,
        }

    @pytest.mark.asyncio
    async def test_fee_quote_unknown_tier(self, client):
        resp = await client.get("/api/fees/quote", params={"amount": 100, "payerTier": "gold"})
        assert resp.status_code == 422
        assert resp.json()["error"]["kind"] == "validation_error"


class TestEscrowLifecycle:
    @pytest.mark.asyncio
    async def test_open_settle_release(self, client, fresh_idempotency):
        created = await client.post(
            "/api/escrow",
            json={"payeeId": PAYEE, "amount": 10_000, "milestones": ["design", "build"]},
            headers=auth_header(PAYER),
        )
        assert created.status_code == 201
        escrow = created.json()
        assert escrow["status"] == "PENDING"
        assert escrow["platformFee"] == 500
        assert escrow["completionPercent"] == 0
        txn_id = escrow["id"]

        settled = await client.post(
            "/api/internal/payments/settled",
            json={"escrowTransactionId": txn_id, "paymentReference": "ch_123"},
            headers=INTERNAL,
        )
        assert settled.json()["status"] == "ESCROWED"

        wallet = await client.get("/api/wallet", headers=auth_header(PAYER))
        assert wallet.json() == {
            "userId": PAYER,
            "currency": "USD",
            "balance": 0,
            "frozenAmount": 10_000,
        }

        blocked = await client.post(
            f"/api/escrow/{txn_id}/release", json={}, headers=auth_header(PAYER)
        )
        assert blocked.status_code == 409
        assert blocked.json()["error"]["kind"] == "invalid_state_transition"

        for milestone in escrow["milestones"]:
            done = await client.post(
                f"/api/escrow/{txn_id}/milestones/{milestone['id']}/complete",
                headers=auth_header(PAYEE),
            )
            assert done.status_code == 200
        assert done.json()["completionPercent"] == 100

        released = await client.post(
            f"/api/escrow/{txn_id}/release", json={}, headers=auth_header(PAYER)
        )
        assert released.status_code == 200
        assert released.json()["status"] == "COMPLETED"
        assert released.json()["releasedAmount"] == 10_000

        payee_wallet = await client.get("/api/wallet", headers=auth_header(PAYEE))
        assert payee_wallet.json()["balance"] == 9_210

    @pytest.mark.asyncio
    async def test_release_blocked_by_dispute(
        self, client, orchestrator, session_factory, fresh_idempotency
    ):
        txn_id = await funded_escrow(orchestrator, session_factory)
        await client.post(
            "/api/disputes/create",
            json={
                "userId": PAYEE,
                "type": "PAYMENT_ISSUE",
                "escrowTransactionId": txn_id,
                "reason": "payer stalling",
            },
            headers=auth_header(PAYEE),
        )

        resp = await client.post(
            f"/api/escrow/{txn_id}/release", json={}, headers=auth_header(PAYER)
        )

        assert resp.status_code == 409
        assert resp.json()["error"] == {
            "kind": "dispute_blocks_release",
            "message": f"Escrow {txn_id} has an open dispute",
            "retryable": False,
        }

    @pytest.mark.asyncio
    async def test_payee_refund(self, client, orchestrator, session_factory):
        txn_id = await funded_escrow(orchestrator, session_factory)

        resp = await client.post(
            f"/api/escrow/{txn_id}/refund", json={"amount": 4_000}, headers=auth_header(PAYEE)
        )

        assert resp.json()["status"] == "REFUNDED"
        assert resp.json()["refundedAmount"] == 4_000
        assert resp.json()["releasedAmount"] == 6_000

    @pytest.mark.asyncio
    async def test_fund_from_wallet_insufficient(self, client):
        created = await client.post(
            "/api/escrow", json={"payeeId": PAYEE, "amount": 500}, headers=auth_header(PAYER)
        )
        resp = await client.post(
            f"/api/escrow/{created.json()['id']}/fund", headers=auth_header(PAYER)
        )
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_same_party_rejected(self, client):
        resp = await client.post(
            "/api/escrow", json={"payeeId": PAYER, "amount": 500}, headers=auth_header(PAYER)
        )
        assert resp.status_code == 422


class MemoryRedis:
    """Just enough of the redis client for the idempotency guard."""

    def __init__(self):
        self.keys: dict[str, str] = {}

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.keys:
            return None
        self.keys[key] = value
        return True

    async def delete(self, key):
        return 1 if self.keys.pop(key, None) is not None else 0


@pytest.fixture
def memory_redis():
    store = MemoryRedis()
    with patch("gigescrow.core.idempotency._get_redis", new_callable=AsyncMock) as get_redis:
        get_redis.return_value = store
        yield store


class TestReleaseRetries:
    @pytest.mark.asyncio
    async def test_retry_still_blocked_by_dispute(
        self, client, orchestrator, session_factory, memory_redis
    ):
        txn_id = await funded_escrow(orchestrator, session_factory)
        async with session_factory() as db:
            await orchestrator.create_dispute(
                db, Caller(PAYEE), CreateDisputeRequest(txn_id, "PAYMENT_ISSUE", "unpaid")
            )

        for _ in range(2):
            resp = await client.post(
                f"/api/escrow/{txn_id}/release", json={}, headers=auth_header(PAYER)
            )
            assert resp.status_code == 409
            assert resp.json()["error"]["kind"] == "dispute_blocks_release"
        assert memory_redis.keys == {}

    @pytest.mark.asyncio
    async def test_override_after_rejected_release(
        self, client, orchestrator, session_factory, memory_redis
    ):
        txn_id = await funded_escrow(orchestrator, session_factory, milestones=["handover"])

        first = await client.post(
            f"/api/escrow/{txn_id}/release", json={}, headers=auth_header(PAYER)
        )
        assert first.json()["error"]["kind"] == "invalid_state_transition"

        second = await client.post(
            f"/api/escrow/{txn_id}/release", json={"override": True}, headers=auth_header(PAYER)
        )
        assert second.status_code == 200
        assert second.json()["status"] == "COMPLETED"

    @pytest.mark.asyncio
    async def test_duplicate_click_after_release(
        self, client, orchestrator, session_factory, memory_redis
    ):
        txn_id = await funded_escrow(orchestrator, session_factory)

        first = await client.post(
            f"/api/escrow/{txn_id}/release", json={}, headers=auth_header(PAYER)
        )
        second = await client.post(
            f"/api/escrow/{txn_id}/release", json={}, headers=auth_header(PAYER)
        )

        assert first.json()["status"] == second.json()["status"] == "COMPLETED"
        assert f"idempotent:escrow:release:{txn_id}:{PAYER}" in memory_redis.keys
        payee = await client.get("/api/wallet", headers=auth_header(PAYEE))
        assert payee.json()["balance"] == 9_210

    @pytest.mark.asyncio
    async def test_stale_key_does_not_swallow_release(
        self, client, orchestrator, session_factory, memory_redis
    ):
        txn_id = await funded_escrow(orchestrator, session_factory)
        memory_redis.keys[f"idempotent:escrow:release:{txn_id}:{PAYER}"] = "1"

        resp = await client.post(
            f"/api/escrow/{txn_id}/release", json={}, headers=auth_header(PAYER)
        )

        assert resp.status_code == 200
        assert resp.json()["status"] == "COMPLETED"


class TestInternalCallbacks:
    @pytest.mark.asyncio
    async def test_requires_internal_token(self, client):
        resp = await client.post(
            "/api/internal/payments/settled",
            json={"escrowTransactionId": 1},
            headers={"X-Internal-Token": "wrong"},
        )
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_settlement_replay_is_a_no_op(self, client, orchestrator, session_factory):
        txn_id = await funded_escrow(orchestrator, session_factory, amount=3_000)

        resp = await client.post(
            "/api/internal/payments/settled",
            json={"escrowTransactionId": txn_id},
            headers=INTERNAL,
        )

        assert resp.json()["status"] == "ESCROWED"
        wallet = await client.get("/api/wallet", headers=auth_header(PAYER))
        assert wallet.json()["frozenAmount"] == 3_000

    @pytest.mark.asyncio
    async def test_payment_failed(self, client):
        created = await client.post(
            "/api/escrow", json={"payeeId": PAYEE, "amount": 500}, headers=auth_header(PAYER)
        )

        resp = await client.post(
            "/api/internal/payments/failed",
            json={"escrowTransactionId": created.json()["id"], "reason": "card declined"},
            headers=INTERNAL,
        )

        assert resp.status_code == 200
        assert resp.json()["status"] == "PENDING"
