"""Tests for the main Starlette application."""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import patch

import pytest

from sciflow.core.exceptions import DatabaseException
from sciflow.core.identity import Principal

API_V1 = "/api/v1"

FUNDER = Principal.of("funder-1", "funder")
LAB_OWNER = Principal.of("lab-owner-1", "lab")
ADMIN = Principal.of("admin-1", "admin")

LAB_ADDRESS = "0x" + "ab" * 20
PAYER_ADDRESS = "0x" + "cd" * 20


# ============================================================================
# Discovery
# ============================================================================


class TestInfoEndpoint:
    def test_info(self, client):
        response = client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert data["server"] == "sciflow"
        assert data["rails"] == ["base_usdc"]
        assert data["endpoints"]["health"] == f"{API_V1}/health"


class TestHealthEndpoint:
    """Tests for health check endpoint."""

    def test_healthy(self, client):
        response = client.get(f"{API_V1}/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["storage"] == "memory"
        assert data["database"] == "connected"

    def test_degraded_on_storage_error(self, client, store):
        """A failing store reports 503 so load balancers drain the instance."""
        with patch.object(store, "transaction", side_effect=DatabaseException("connection refused")):
            response = client.get(f"{API_V1}/health")

        assert response.status_code == 503
        data = response.json()
        assert data["status"] == "degraded"
        assert "connection refused" in data["database"]

    def test_no_auth_required(self, client):
        assert client.get(f"{API_V1}/health").status_code == 200


class TestOpenAPI:
    def test_served_as_json(self, client):
        response = client.get(f"{API_V1}/openapi.json")

        assert response.status_code == 200
        spec = response.json()
        assert spec["info"]["title"] == "SciFlow Settlement API"
        assert "/bounties" in spec["paths"]


class TestCors:
    @pytest.fixture
    def settings(self, settings):
        return settings.model_copy(update={"allowed_origins": ["https://app.example.org"]})

    def test_preflight(self, client):
        response = client.options(
            f"{API_V1}/bounties",
            headers={"Origin": "https://app.example.org", "Access-Control-Request-Method": "POST"},
        )

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "https://app.example.org"

    def test_unknown_origin(self, client):
        response = client.options(
            f"{API_V1}/bounties",
            headers={"Origin": "https://evil.example.com", "Access-Control-Request-Method": "POST"},
        )
        assert "access-control-allow-origin" not in response.headers


# ============================================================================
# Full lifecycle over HTTP
# ============================================================================


class TestBountyLifecycle:
    """A bounty from draft to completion through the public API only."""

    def test_draft_to_completed(self, client, auth_headers, rail):
        funder, lab, admin = auth_headers(FUNDER), auth_headers(LAB_OWNER), auth_headers(ADMIN)

        response = client.post(
            f"{API_V1}/bounties",
            json={
                "title": "Replicate the kinase assay",
                "description": "Independent replication of published results",
                "total_budget": "1000",
                "currency": "USDC",
                "milestones": [
                    {"title": "Protocol and pilot", "payout_percentage": "30"},
                    {"title": "Full dataset", "payout_percentage": "70"},
                ],
            },
            headers=funder,
        )
        assert response.status_code == 201
        bounty = response.json()["bounty"]
        assert bounty["state"] == "draft"
        bounty_id = bounty["id"]

        assert client.post(f"{API_V1}/bounties/{bounty_id}/submit", headers=funder).json()["bounty"]["state"] == "pending_approval"
        assert client.post(f"{API_V1}/admin/bounties/{bounty_id}/approve", json={}, headers=admin).json()["bounty"]["state"] == "funding"

        # Funding
        response = client.post(
            f"{API_V1}/bounties/{bounty_id}/funding",
            json={"rail": "base_usdc", "amount": "1000", "payer_identity": PAYER_ADDRESS},
            headers=funder,
        )
        assert response.status_code == 201
        funding = response.json()["funding"]
        assert Decimal(funding["expected_amount"]) == Decimal("1050")
        escrow_id = funding["escrow_id"]

        response = client.post(f"{API_V1}/escrows/{escrow_id}/confirm", json={"reference": "0xdeposit"}, headers=funder)
        assert response.status_code == 200
        assert response.json()["funding"]["state"] == "open_for_proposals"

        # Lab onboarding
        response = client.post(
            f"{API_V1}/labs",
            json={"name": "Kinase Lab", "payout_accounts": {"base_usdc": LAB_ADDRESS}},
            headers=lab,
        )
        assert response.status_code == 201
        lab_id = response.json()["lab"]["id"]
        assert client.post(f"{API_V1}/admin/labs/{lab_id}/tier", json={"tier": "verified"}, headers=admin).status_code == 200
        assert client.post(f"{API_V1}/labs/{lab_id}/stake", json={"amount": "500"}, headers=lab).status_code == 201

        # Proposal
        response = client.post(
            f"{API_V1}/bounties/{bounty_id}/proposals",
            json={"lab_id": lab_id, "bid_amount": "900", "methodology": "Standard protocol"},
            headers=lab,
        )
        assert response.status_code == 201
        proposal_id = response.json()["proposal"]["id"]

        response = client.post(f"{API_V1}/bounties/{bounty_id}/proposals/{proposal_id}/accept", headers=funder)
        assert response.status_code == 200
        bounty = response.json()["bounty"]
        assert bounty["state"] == "research_active"
        assert Decimal(bounty["locked_stake"]) == Decimal("90")

        # Milestones
        first, second = sorted(bounty["milestones"], key=lambda m: m["sequence"])
        for milestone in (first, second):
            response = client.post(
                f"{API_V1}/milestones/{milestone['id']}/evidence",
                json={"content_hash": f"sha256:{milestone['id']}", "url": "https://data.example.org/run"},
                headers=lab,
            )
            assert response.json()["bounty"]["state"] == "milestone_review"

            response = client.post(f"{API_V1}/milestones/{milestone['id']}/verify", json={"approve": True}, headers=funder)
            assert response.status_code == 200

        assert response.json()["bounty"]["state"] == "completed"
        assert rail.releases == [
            (first["id"], Decimal("270"), LAB_ADDRESS),
            (second["id"], Decimal("630"), LAB_ADDRESS),
        ]
        assert rail.refunds == [("surplus", Decimal("100"))]

        stake = client.get(f"{API_V1}/labs/{lab_id}/stake", headers=lab).json()
        assert Decimal(stake["locked_stake"]) == 0
        assert Decimal(stake["available_stake"]) == Decimal("500")

        escrow = client.get(f"{API_V1}/escrows/{escrow_id}", headers=funder).json()["escrow"]
        assert escrow["status"] == "fully_released"
        assert Decimal(escrow["released_amount"]) == Decimal("900")
