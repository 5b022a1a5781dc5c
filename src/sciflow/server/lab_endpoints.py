# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""REST endpoints for labs and their stake."""

from __future__ import annotations

from typing import Any

from starlette.requests import Request
from starlette.responses import Response

from ..core.identity import Principal
from ..core.models import Lab
from .endpoint_utils import _parse_int, command_endpoint, get_engine, read_json, require_fields, success


def _lab_to_dict(lab: Lab) -> dict[str, Any]:
    data = lab.to_dict()
    data["available_stake"] = str(lab.available_stake)
    return data


@command_endpoint
async def register_lab_endpoint(request: Request, principal: Principal) -> Response:
    """POST /api/v1/labs - Register a lab owned by the caller.

    Body:
        name: Lab name
        payout_accounts: Optional map of rail name to payout account
    """
    body = await read_json(request)
    require_fields(body, "name")
    lab = await get_engine(request).register_lab(principal, body["name"], payout_accounts=body.get("payout_accounts"))
    return success(201, lab=_lab_to_dict(lab))


@command_endpoint
async def get_lab_endpoint(request: Request, principal: Principal) -> Response:
    lab = get_engine(request).get_lab(request.path_params["id"])
    return success(lab=_lab_to_dict(lab))


@command_endpoint
async def set_tier_endpoint(request: Request, principal: Principal) -> Response:
    """POST /api/v1/admin/labs/{id}/tier - Record a verification outcome (admin)."""
    body = await read_json(request)
    require_fields(body, "tier")
    lab = await get_engine(request).set_verification_tier(principal, request.path_params["id"], body["tier"])
    return success(lab=_lab_to_dict(lab))


@command_endpoint
async def get_stake_endpoint(request: Request, principal: Principal) -> Response:
    """GET /api/v1/labs/{id}/stake - Balance, locked amount and recent transactions.

    Query Parameters:
        limit: Most recent transactions to include (default 50, max 500)
    """
    engine = get_engine(request)
    lab = engine.get_lab(request.path_params["id"])
    limit = _parse_int(request.query_params.get("limit"), 50, maximum=500)
    history = engine.stake_history(lab.id)[-limit:] if limit > 0 else []
    return success(
        lab_id=lab.id,
        staking_balance=str(lab.staking_balance),
        locked_stake=str(lab.locked_stake),
        available_stake=str(lab.available_stake),
        transactions=[tx.to_dict() for tx in history],
    )


@command_endpoint
async def deposit_stake_endpoint(request: Request, principal: Principal) -> Response:
    body = await read_json(request)
    require_fields(body, "amount")
    tx = await get_engine(request).deposit_stake(principal, request.path_params["id"], body["amount"])
    return success(201, transaction=tx.to_dict())


@command_endpoint
async def withdraw_stake_endpoint(request: Request, principal: Principal) -> Response:
    """POST /api/v1/labs/{id}/stake/withdraw - Withdraw unlocked stake.

    Returns:
        201: The withdrawal transaction
        409: Amount exceeds the available (unlocked) stake
    """
    body = await read_json(request)
    require_fields(body, "amount")
    tx = await get_engine(request).withdraw_stake(principal, request.path_params["id"], body["amount"])
    return success(201, transaction=tx.to_dict())
