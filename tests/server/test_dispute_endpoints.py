"""Tests for dispute REST endpoints."""

from __future__ import annotations

from decimal import Decimal

from sciflow.core.identity import Principal

API_V1 = "/api/v1"

FUNDER = Principal.of("funder-1", "funder")
LAB_OWNER = Principal.of("lab-owner-1", "lab")
ADMIN = Principal.of("admin-1", "admin")
ARBITRATOR = Principal.of("arbitrator-1", "arbitrator")

DESCRIPTION = "Plate reads were re-used across replicate runs"


def _open(client, headers, bounty_id: str, **overrides):
    body = {"bounty_id": bounty_id, "reason": "data_falsification", "description": DESCRIPTION, **overrides}
    return client.post(f"{API_V1}/disputes", json=body, headers=headers)


class TestOpenDispute:
    async def test_funder_opens(self, client, auth_headers, flow):
        bounty, _ = await flow.active()

        response = _open(client, auth_headers(FUNDER), bounty.id, evidence_links=["https://data.example.org/qc"])

        assert response.status_code == 201
        dispute = response.json()["dispute"]
        assert dispute["status"] == "open"
        assert dispute["initiator_role"] == "funder"
        assert dispute["evidence_links"] == ["https://data.example.org/qc"]
        assert flow.engine.get_bounty(bounty.id).state == "disputed"

        fetched = client.get(f"{API_V1}/disputes/{dispute['id']}", headers=auth_headers(ARBITRATOR))
        assert fetched.json()["dispute"]["id"] == dispute["id"]

    async def test_second_dispute_conflicts(self, client, auth_headers, flow):
        bounty, _ = await flow.active()
        _open(client, auth_headers(FUNDER), bounty.id)

        response = _open(client, auth_headers(LAB_OWNER), bounty.id, reason="communication_failure")

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "STATE_CONFLICT"

    async def test_short_description(self, client, auth_headers, flow):
        bounty, _ = await flow.active()
        response = _open(client, auth_headers(FUNDER), bounty.id, description="too short")
        assert response.status_code == 400

    async def test_not_before_research(self, client, auth_headers, flow):
        bounty = await flow.open()
        assert _open(client, auth_headers(FUNDER), bounty.id).status_code == 409

    def test_missing_reason(self, client, auth_headers):
        response = client.post(f"{API_V1}/disputes", json={"bounty_id": "b", "description": DESCRIPTION}, headers=auth_headers(FUNDER))
        assert response.json()["error"]["message"] == "reason is required"


class TestEscalation:
    async def test_staff_escalate(self, client, auth_headers, flow):
        bounty, _ = await flow.active()
        dispute_id = _open(client, auth_headers(FUNDER), bounty.id).json()["dispute"]["id"]

        first = client.post(f"{API_V1}/disputes/{dispute_id}/escalate", headers=auth_headers(ADMIN)).json()
        second = client.post(f"{API_V1}/disputes/{dispute_id}/escalate", headers=auth_headers(ADMIN)).json()

        assert first["dispute"]["status"] == "under_review"
        assert second["dispute"]["status"] == "arbitration"

    async def test_parties_cannot_escalate(self, client, auth_headers, flow):
        bounty, _ = await flow.active()
        dispute_id = _open(client, auth_headers(FUNDER), bounty.id).json()["dispute"]["id"]
        response = client.post(f"{API_V1}/disputes/{dispute_id}/escalate", headers=auth_headers(FUNDER))
        assert response.status_code == 403


class TestResolution:
    """Rulings store a plan; the settle endpoint moves the money."""

    async def test_funder_wins_and_settles(self, client, auth_headers, flow, rail):
        bounty, lab = await flow.active()
        dispute_id = _open(client, auth_headers(FUNDER), bounty.id).json()["dispute"]["id"]

        response = client.post(
            f"{API_V1}/disputes/{dispute_id}/resolve",
            json={"resolution": "funder_wins", "slash_percentage": "50", "notes": "Confirmed by QC"},
            headers=auth_headers(ARBITRATOR),
        )

        assert response.status_code == 200
        dispute = response.json()["dispute"]
        assert dispute["status"] == "resolved"
        assert Decimal(dispute["slash_amount"]) == Decimal("45")
        assert rail.refunds == []

        response = client.post(f"{API_V1}/bounties/{bounty.id}/settle", headers=auth_headers(ARBITRATOR))

        assert response.json()["bounty"]["state"] == "completed"
        assert rail.refunds == [("dispute", Decimal("1000"))]
        stake = client.get(f"{API_V1}/labs/{lab.id}/stake", headers=auth_headers(LAB_OWNER)).json()
        assert Decimal(stake["staking_balance"]) == Decimal("455")
        assert [tx["transaction_type"] for tx in stake["transactions"]][-2:] == ["slash", "unlock"]

    async def test_partial_refund_needs_percentage(self, client, auth_headers, flow):
        bounty, _ = await flow.active()
        dispute_id = _open(client, auth_headers(FUNDER), bounty.id).json()["dispute"]["id"]

        response = client.post(
            f"{API_V1}/disputes/{dispute_id}/resolve", json={"resolution": "partial_refund"}, headers=auth_headers(ARBITRATOR)
        )

        assert response.status_code == 400
        assert flow.engine.get_dispute(dispute_id).status == "open"

    async def test_unknown_resolution(self, client, auth_headers, flow):
        bounty, _ = await flow.active()
        dispute_id = _open(client, auth_headers(FUNDER), bounty.id).json()["dispute"]["id"]
        response = client.post(f"{API_V1}/disputes/{dispute_id}/resolve", json={"resolution": "coin_flip"}, headers=auth_headers(ARBITRATOR))
        assert response.json()["error"]["details"]["field"] == "resolution"

    async def test_resolved_twice(self, client, auth_headers, flow):
        bounty, _ = await flow.active()
        dispute_id = _open(client, auth_headers(FUNDER), bounty.id).json()["dispute"]["id"]
        url = f"{API_V1}/disputes/{dispute_id}/resolve"

        assert client.post(url, json={"resolution": "lab_wins"}, headers=auth_headers(ARBITRATOR)).status_code == 200
        assert client.post(url, json={"resolution": "lab_wins"}, headers=auth_headers(ARBITRATOR)).status_code == 409

    async def test_funder_cannot_rule(self, client, auth_headers, flow):
        bounty, _ = await flow.active()
        dispute_id = _open(client, auth_headers(FUNDER), bounty.id).json()["dispute"]["id"]
        response = client.post(f"{API_V1}/disputes/{dispute_id}/resolve", json={"resolution": "funder_wins"}, headers=auth_headers(FUNDER))
        assert response.status_code == 403
