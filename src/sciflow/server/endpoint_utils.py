# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Shared helpers for REST endpoints: auth wrapping and body parsing."""

from __future__ import annotations

import functools
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from ..core.engine import BountyLifecycleEngine
from ..core.exceptions import SciflowError
from ..core.identity import Principal
from .auth import authenticate
from .errors import error_from_exception, internal_error, invalid_json_error, missing_field_error

logger = logging.getLogger(__name__)

Handler = Callable[[Request, Principal], Awaitable[Response]]


class BodyError(Exception):
    """Carries a ready-made 400 response out of body parsing."""

    def __init__(self, response: JSONResponse) -> None:
        super().__init__("invalid request body")
        self.response = response


def get_engine(request: Request) -> BountyLifecycleEngine:
    return request.app.state.engine


def _parse_int(value: str | None, default: int, maximum: int = 1000) -> int:
    """Parse an integer query parameter with a max cap."""
    if value is None:
        return default
    try:
        return min(int(value), maximum)
    except ValueError:
        return default


async def read_json(request: Request) -> dict[str, Any]:
    """Parse the request body as a JSON object. An empty body is ``{}``."""
    raw = await request.body()
    if not raw:
        return {}
    try:
        body = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise BodyError(invalid_json_error())
    if not isinstance(body, dict):
        raise BodyError(invalid_json_error())
    return body


def require_fields(body: dict[str, Any], *names: str) -> None:
    for name in names:
        if body.get(name) in (None, ""):
            raise BodyError(missing_field_error(name))


def command_endpoint(handler: Handler) -> Callable[[Request], Awaitable[Response]]:
    """Authenticate the caller and turn domain errors into error envelopes.

    The wrapped handler receives the request and the authenticated
    principal and may raise any SciflowError.
    """

    @functools.wraps(handler)
    async def endpoint(request: Request) -> Response:
        settings = request.app.state.settings
        principal = authenticate(request, settings)
        if isinstance(principal, JSONResponse):
            return principal
        try:
            return await handler(request, principal)
        except BodyError as e:
            return e.response
        except SciflowError as e:
            return error_from_exception(e, debug=settings.debug)
        except Exception as e:  # Intentionally broad: every failure gets the error envelope
            logger.exception(f"Unhandled error in {handler.__name__}")
            return internal_error(exc=e, debug=settings.debug)

    return endpoint


def success(status_code: int = 200, **data: Any) -> JSONResponse:
    return JSONResponse({"success": True, **data}, status_code=status_code)
