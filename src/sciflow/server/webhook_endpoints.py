# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""Inbound rail callbacks.

The endpoint authenticates the callback, queues it and acknowledges. The
queue is drained after the response is sent, so a slow rail verification
never makes the processor redeliver.
"""

from __future__ import annotations

import logging

from starlette.background import BackgroundTask
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from ..core.exceptions import SciflowError
from ..core.inbound import InboundProcessor, enqueue
from ..rails.webhooks import HANDLED_EVENT_TYPES, SIGNATURE_HEADER, parse_card_event, verify_signature
from .errors import error_from_exception, internal_error

logger = logging.getLogger(__name__)


async def card_webhook_endpoint(request: Request) -> Response:
    """POST /api/v1/webhooks/card - Signed card processor callback.

    Returns:
        200: Accepted (queued, duplicate or not relevant)
        400: Body is not a valid event
        403: Missing, invalid or stale signature
    """
    settings = request.app.state.settings
    processor: InboundProcessor = request.app.state.processor
    payload = await request.body()

    try:
        verify_signature(
            payload,
            request.headers.get(SIGNATURE_HEADER),
            settings.stripe_webhook_secret,
            tolerance_seconds=settings.webhook_tolerance_seconds,
        )
        event = parse_card_event(payload)
    except SciflowError as e:
        logger.warning(f"Rejected card webhook: {e.message}")
        return error_from_exception(e, debug=settings.debug)

    if event.event_type not in HANDLED_EVENT_TYPES:
        return JSONResponse({"received": True, "queued": False})

    try:
        _, created = enqueue(processor.store, event)
    except SciflowError as e:
        return error_from_exception(e, debug=settings.debug)
    except Exception as e:  # Intentionally broad: the processor must get an answer
        logger.exception("Failed to queue card webhook")
        return internal_error(exc=e, debug=settings.debug)

    return JSONResponse(
        {"received": True, "queued": created, "event_id": event.id},
        background=BackgroundTask(processor.process_pending) if created else None,
    )
