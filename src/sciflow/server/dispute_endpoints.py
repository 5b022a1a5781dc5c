# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""REST endpoints for disputes."""

from __future__ import annotations

from starlette.requests import Request
from starlette.responses import Response

from ..core.identity import Principal
from .endpoint_utils import command_endpoint, get_engine, read_json, require_fields, success


@command_endpoint
async def open_dispute_endpoint(request: Request, principal: Principal) -> Response:
    """POST /api/v1/disputes - Open a dispute on an active bounty.

    Body:
        bounty_id: Bounty in dispute
        reason: data_falsification | protocol_deviation | sample_tampering | timeline_breach | quality_failure | communication_failure
        description: At least 20 characters
        evidence_links: Optional list of URLs

    Returns:
        201: The open dispute
        409: Bounty not active, or already has an open dispute
    """
    body = await read_json(request)
    require_fields(body, "bounty_id", "reason", "description")
    dispute = await get_engine(request).open_dispute(
        principal,
        body["bounty_id"],
        reason=body["reason"],
        description=body["description"],
        evidence_links=body.get("evidence_links"),
    )
    return success(201, dispute=dispute.to_dict())


@command_endpoint
async def get_dispute_endpoint(request: Request, principal: Principal) -> Response:
    dispute = get_engine(request).get_dispute(request.path_params["id"])
    return success(dispute=dispute.to_dict())


@command_endpoint
async def escalate_dispute_endpoint(request: Request, principal: Principal) -> Response:
    dispute = await get_engine(request).escalate_dispute(principal, request.path_params["id"])
    return success(dispute=dispute.to_dict())


@command_endpoint
async def resolve_dispute_endpoint(request: Request, principal: Principal) -> Response:
    """POST /api/v1/disputes/{id}/resolve - Record an arbitrator's ruling.

    Body:
        resolution: funder_wins | lab_wins | partial_refund
        slash_percentage: Share of the locked stake to slash (funder_wins)
        refund_percentage: Share of the outstanding escrow to refund (partial_refund)
        notes: Optional

    The ruling produces a settlement plan; POST /bounties/{id}/settle
    carries it out.
    """
    body = await read_json(request)
    require_fields(body, "resolution")
    dispute = await get_engine(request).resolve_dispute(
        principal,
        request.path_params["id"],
        resolution=body["resolution"],
        slash_percentage=body.get("slash_percentage"),
        refund_percentage=body.get("refund_percentage"),
        notes=body.get("notes"),
    )
    return success(dispute=dispute.to_dict())
