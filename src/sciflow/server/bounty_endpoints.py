# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""REST endpoints for bounties, funding, proposals and milestones."""

from __future__ import annotations

import logging

from starlette.requests import Request
from starlette.responses import Response

from ..core.identity import Principal
from .endpoint_utils import command_endpoint, get_engine, read_json, require_fields, success

logger = logging.getLogger(__name__)

_DRAFT_FIELDS = ("title", "description", "total_budget", "milestones", "deadline", "min_verification_tier")

# Evidence uploads that are not a JSON reference are stored as raw bytes
_JSON_CONTENT_TYPES = ("application/json", "")


# =============================================================================
# BOUNTIES
# =============================================================================


@command_endpoint
async def create_bounty_endpoint(request: Request, principal: Principal) -> Response:
    """POST /api/v1/bounties - Create a draft bounty.

    Body:
        title, description, total_budget (required); currency, milestones,
        deadline, min_verification_tier (optional)

    Returns:
        201: The draft bounty
    """
    body = await read_json(request)
    require_fields(body, "title", "description", "total_budget")
    bounty = await get_engine(request).create_bounty(
        principal,
        title=body["title"],
        description=body["description"],
        total_budget=body["total_budget"],
        currency=body.get("currency", "USD"),
        milestones=body.get("milestones"),
        deadline=body.get("deadline"),
        min_verification_tier=body.get("min_verification_tier", "basic"),
    )
    return success(201, bounty=bounty.to_dict())


@command_endpoint
async def list_bounties_endpoint(request: Request, principal: Principal) -> Response:
    """GET /api/v1/bounties - List bounties, optionally by ``state`` or ``funder_id``."""
    bounties = get_engine(request).list_bounties(
        state=request.query_params.get("state"),
        funder_id=request.query_params.get("funder_id"),
    )
    return success(bounties=[b.to_dict() for b in bounties], count=len(bounties))


@command_endpoint
async def get_bounty_endpoint(request: Request, principal: Principal) -> Response:
    bounty = get_engine(request).get_bounty(request.path_params["id"])
    return success(bounty=bounty.to_dict())


@command_endpoint
async def update_bounty_endpoint(request: Request, principal: Principal) -> Response:
    """PATCH /api/v1/bounties/{id} - Edit a draft. Only the given fields change."""
    body = await read_json(request)
    changes = {name: body[name] for name in _DRAFT_FIELDS if name in body}
    bounty = await get_engine(request).update_draft(principal, request.path_params["id"], **changes)
    return success(bounty=bounty.to_dict())


@command_endpoint
async def submit_bounty_endpoint(request: Request, principal: Principal) -> Response:
    bounty = await get_engine(request).submit_bounty(principal, request.path_params["id"])
    return success(bounty=bounty.to_dict())


@command_endpoint
async def approve_bounty_endpoint(request: Request, principal: Principal) -> Response:
    """POST /api/v1/admin/bounties/{id}/approve - Approve or reject a submitted bounty.

    Body:
        action: "approve" (default) or "reject"
        reason: Required when rejecting
    """
    body = await read_json(request)
    bounty = await get_engine(request).approve_bounty(
        principal,
        request.path_params["id"],
        action=body.get("action", "approve"),
        reason=body.get("reason"),
    )
    return success(bounty=bounty.to_dict())


@command_endpoint
async def cancel_bounty_endpoint(request: Request, principal: Principal) -> Response:
    body = await read_json(request)
    bounty = await get_engine(request).cancel_bounty(principal, request.path_params["id"], reason=body.get("reason"))
    return success(bounty=bounty.to_dict())


@command_endpoint
async def settle_bounty_endpoint(request: Request, principal: Principal) -> Response:
    """POST /api/v1/bounties/{id}/settle - Carry out the stored settlement plan."""
    bounty = await get_engine(request).execute_settlement(principal, request.path_params["id"])
    return success(bounty=bounty.to_dict())


# =============================================================================
# FUNDING
# =============================================================================


@command_endpoint
async def init_funding_endpoint(request: Request, principal: Principal) -> Response:
    """POST /api/v1/bounties/{id}/funding - Open an escrow and get deposit instructions.

    Body:
        rail: card | base_usdc | solana_usdc
        amount: Budget plus platform fee
        payer_identity: Card customer or sending wallet
    """
    body = await read_json(request)
    require_fields(body, "rail", "amount", "payer_identity")
    initiated = await get_engine(request).init_funding(
        principal,
        request.path_params["id"],
        rail=body["rail"],
        amount=body["amount"],
        payer_identity=body["payer_identity"],
    )
    return success(201, funding=initiated.to_dict())


@command_endpoint
async def get_escrow_endpoint(request: Request, principal: Principal) -> Response:
    escrow = get_engine(request).get_escrow(request.path_params["id"])
    return success(escrow=escrow.to_dict())


@command_endpoint
async def confirm_funding_endpoint(request: Request, principal: Principal) -> Response:
    """POST /api/v1/escrows/{id}/confirm - Verify a deposit on its rail.

    Body:
        reference: Payment intent id or transaction hash/signature

    Returns:
        200: Verified, the bounty is open for proposals
        202: The rail has not confirmed the deposit yet
    """
    body = await read_json(request)
    require_fields(body, "reference")
    outcome = await get_engine(request).confirm_funding(principal, request.path_params["id"], body["reference"])
    return success(200 if outcome.verified else 202, funding=outcome.to_dict())


# =============================================================================
# PROPOSALS
# =============================================================================


@command_endpoint
async def submit_proposal_endpoint(request: Request, principal: Principal) -> Response:
    body = await read_json(request)
    require_fields(body, "lab_id", "bid_amount")
    proposal = await get_engine(request).submit_proposal(
        principal,
        request.path_params["id"],
        lab_id=body["lab_id"],
        bid_amount=body["bid_amount"],
        methodology=body.get("methodology", ""),
        timeline_days=body.get("timeline_days"),
    )
    return success(201, proposal=proposal.to_dict())


@command_endpoint
async def list_proposals_endpoint(request: Request, principal: Principal) -> Response:
    proposals = get_engine(request).list_proposals(request.path_params["id"])
    return success(proposals=[p.to_dict() for p in proposals], count=len(proposals))


@command_endpoint
async def accept_proposal_endpoint(request: Request, principal: Principal) -> Response:
    """POST /api/v1/bounties/{id}/proposals/{pid}/accept - Select a lab and lock its stake."""
    bounty = await get_engine(request).accept_proposal(
        principal, request.path_params["id"], request.path_params["pid"]
    )
    return success(bounty=bounty.to_dict())


@command_endpoint
async def withdraw_proposal_endpoint(request: Request, principal: Principal) -> Response:
    proposal = await get_engine(request).withdraw_proposal(principal, request.path_params["id"])
    return success(proposal=proposal.to_dict())


@command_endpoint
async def reject_proposal_endpoint(request: Request, principal: Principal) -> Response:
    """POST /api/v1/proposals/{id}/reject - Decline a pending proposal.

    Body:
        reason: Required; passed on to the lab
    """
    body = await read_json(request)
    proposal = await get_engine(request).reject_proposal(principal, request.path_params["id"], body.get("reason") or "")
    return success(proposal=proposal.to_dict())


# =============================================================================
# MILESTONES
# =============================================================================


@command_endpoint
async def submit_evidence_endpoint(request: Request, principal: Principal) -> Response:
    """POST /api/v1/milestones/{id}/evidence - Submit milestone evidence.

    A JSON body is an existing reference (``content_hash`` and ``url``).
    Any other content type is stored as the evidence itself; pass the
    original name in the ``filename`` query parameter.
    """
    engine = get_engine(request)
    milestone_id = request.path_params["id"]
    content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()

    if content_type in _JSON_CONTENT_TYPES:
        body = await read_json(request)
        require_fields(body, "content_hash", "url")
        bounty = await engine.submit_milestone_evidence(principal, milestone_id, body)
    else:
        payload = await request.body()
        bounty = await engine.attach_evidence(
            principal, milestone_id, payload, filename=request.query_params.get("filename")
        )
    return success(bounty=bounty.to_dict())


@command_endpoint
async def verify_milestone_endpoint(request: Request, principal: Principal) -> Response:
    """POST /api/v1/milestones/{id}/verify - Approve (releasing the payout) or request revision.

    Body:
        approve: bool
        feedback: Required when not approving
    """
    body = await read_json(request)
    if not isinstance(body.get("approve"), bool):
        require_fields(body, "approve")
        body["approve"] = str(body["approve"]).lower() in ("true", "1", "yes")
    bounty = await get_engine(request).verify_milestone(
        principal, request.path_params["id"], approve=body["approve"], feedback=body.get("feedback")
    )
    return success(bounty=bounty.to_dict())
