import pytest

from conftest import PAYEE, PAYER, auth_header, funded_escrow


def _body(txn_id: int, user_id: str = PAYER, **overrides) -> dict:
    body = {
        "userId": user_id,
        "type": "CONTRACT_BREACH",
        "escrowTransactionId": txn_id,
        "reason": "milestone missed",
        "evidence": [],
    }
    body.update(overrides)
    return body


class TestCreateDispute:
    @pytest.mark.asyncio
    async def test_created(self, client, orchestrator, session_factory):
        txn_id = await funded_escrow(orchestrator, session_factory, amount=55_000)

        resp = await client.post(
            "/api/disputes/create", json=_body(txn_id), headers=auth_header(PAYER)
        )

        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is True
        dispute = data["dispute"]
        assert dispute["caseNumber"] == "CASE-2025-001"
        assert dispute["status"] == "OPEN"
        assert dispute["type"] == "CONTRACT_BREACH"
        assert dispute["priority"] == "HIGH"
        assert dispute["expectedResolution"].startswith("2025-03-15T12:00:00")
        assert isinstance(dispute["id"], int)

    @pytest.mark.asyncio
    async def test_requires_token(self, client, orchestrator, session_factory):
        txn_id = await funded_escrow(orchestrator, session_factory)

        resp = await client.post("/api/disputes/create", json=_body(txn_id))

        assert resp.status_code == 401
        assert resp.json() == {
            "success": False,
            "error": {
                "kind": "unauthorized",
                "message": "Authentication required",
                "retryable": False,
            },
        }

    @pytest.mark.asyncio
    async def test_rejects_bad_token(self, client):
        resp = await client.post(
            "/api/disputes/create",
            json=_body(1),
            headers={"Authorization": "Bearer not-a-jwt"},
        )
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_user_id_must_match_token(self, client, orchestrator, session_factory):
        txn_id = await funded_escrow(orchestrator, session_factory)

        resp = await client.post(
            "/api/disputes/create", json=_body(txn_id, user_id=PAYEE), headers=auth_header(PAYER)
        )

        assert resp.status_code == 403
        assert resp.json()["error"]["kind"] == "forbidden"

    @pytest.mark.asyncio
    async def test_outsider_forbidden(self, client, orchestrator, session_factory):
        txn_id = await funded_escrow(orchestrator, session_factory)

        resp = await client.post(
            "/api/disputes/create",
            json=_body(txn_id, user_id="mallory"),
            headers=auth_header("mallory"),
        )

        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_unknown_escrow(self, client):
        resp = await client.post(
            "/api/disputes/create", json=_body(999), headers=auth_header(PAYER)
        )
        assert resp.status_code == 404
        assert resp.json()["error"]["kind"] == "not_found"

    @pytest.mark.asyncio
    async def test_second_dispute_conflicts(self, client, orchestrator, session_factory):
        txn_id = await funded_escrow(orchestrator, session_factory)
        first = await client.post(
            "/api/disputes/create", json=_body(txn_id), headers=auth_header(PAYER)
        )
        assert first.status_code == 200

        resp = await client.post(
            "/api/disputes/create", json=_body(txn_id, user_id=PAYEE), headers=auth_header(PAYEE)
        )

        assert resp.status_code == 409
        assert resp.json()["error"]["kind"] == "conflict"

    @pytest.mark.asyncio
    async def test_invalid_type(self, client, orchestrator, session_factory):
        txn_id = await funded_escrow(orchestrator, session_factory)

        resp = await client.post(
            "/api/disputes/create", json=_body(txn_id, type="ANGRY"), headers=auth_header(PAYER)
        )

        assert resp.status_code == 422
        assert resp.json()["error"]["kind"] == "validation_error"

    @pytest.mark.asyncio
    async def test_missing_field(self, client):
        body = _body(1)
        del body["reason"]

        resp = await client.post("/api/disputes/create", json=body, headers=auth_header(PAYER))

        assert resp.status_code == 422
        error = resp.json()["error"]
        assert error["kind"] == "validation_error"
        assert "reason" in error["message"]


class TestDisputeWorkflow:
    @pytest.mark.asyncio
    async def test_messages_and_admin_resolution(self, client, orchestrator, session_factory):
        txn_id = await funded_escrow(orchestrator, session_factory)
        created = await client.post(
            "/api/disputes/create", json=_body(txn_id), headers=auth_header(PAYER)
        )
        dispute_id = created.json()["dispute"]["id"]

        msg = await client.post(
            f"/api/disputes/{dispute_id}/messages",
            json={"content": "Delivered on time, see logs"},
            headers=auth_header(PAYEE),
        )
        assert msg.status_code == 201
        assert msg.json()["senderId"] == PAYEE

        listed = await client.get(
            f"/api/disputes/{dispute_id}/messages", headers=auth_header(PAYER)
        )
        assert [m["content"] for m in listed.json()] == [
            "milestone missed",
            "Delivered on time, see logs",
        ]

        party_resolve = await client.post(
            f"/api/disputes/{dispute_id}/resolve",
            json={"outcome": "REFUNDED"},
            headers=auth_header(PAYER),
        )
        assert party_resolve.status_code == 403

        admin = auth_header("admin-1", role="admin")
        review = await client.post(f"/api/disputes/{dispute_id}/review", headers=admin)
        assert review.json()["status"] == "UNDER_REVIEW"
        assert review.json()["availableActions"] == ["resolve"]

        resolved = await client.post(
            f"/api/disputes/{dispute_id}/resolve",
            json={"outcome": "PARTIAL_SETTLEMENT", "payeeAmount": 6_000, "payerAmount": 4_000},
            headers=admin,
        )
        assert resolved.status_code == 200
        assert resolved.json()["status"] == "RESOLVED"
        assert resolved.json()["resolutionPayeeAmount"] == 6_000

        escrow = await client.get(f"/api/escrow/{txn_id}", headers=auth_header(PAYER))
        assert escrow.json()["status"] == "COMPLETED"

    @pytest.mark.asyncio
    async def test_list_and_get(self, client, orchestrator, session_factory):
        txn_id = await funded_escrow(orchestrator, session_factory)
        created = await client.post(
            "/api/disputes/create", json=_body(txn_id), headers=auth_header(PAYER)
        )
        dispute_id = created.json()["dispute"]["id"]

        mine = await client.get("/api/disputes", headers=auth_header(PAYEE))
        assert [d["id"] for d in mine.json()] == [dispute_id]

        other = await client.get(f"/api/disputes/{dispute_id}", headers=auth_header("mallory"))
        assert other.status_code == 403

        detail = await client.get(f"/api/disputes/{dispute_id}", headers=auth_header(PAYER))
        assert detail.json()["respondent"] == PAYEE
        assert detail.json()["availableActions"] == []

    @pytest.mark.asyncio
    async def test_evidence_upload(self, client, orchestrator, session_factory):
        txn_id = await funded_escrow(orchestrator, session_factory)
        created = await client.post(
            "/api/disputes/create", json=_body(txn_id), headers=auth_header(PAYER)
        )
        dispute_id = created.json()["dispute"]["id"]

        resp = await client.post(
            f"/api/disputes/{dispute_id}/evidence",
            json={"filename": "spec.pdf", "mimeType": "application/pdf", "size": 1024},
            headers=auth_header(PAYER),
        )
        assert resp.status_code == 201
        assert resp.json()["uploadedBy"] == PAYER

        bad = await client.post(
            f"/api/disputes/{dispute_id}/evidence",
            json={"filename": "run.exe", "mimeType": "application/x-msdownload"},
            headers=auth_header(PAYER),
        )
        assert bad.status_code == 422
