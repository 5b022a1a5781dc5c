"""Tests for endpoint_utils.py (body parsing and the command wrapper)."""

from __future__ import annotations

import json
from unittest.mock import MagicMock

import pytest
from starlette.requests import Request

from sciflow.core.exceptions import NotFoundError
from sciflow.server.auth import create_access_token
from sciflow.server.endpoint_utils import (
    BodyError,
    _parse_int,
    command_endpoint,
    read_json,
    require_fields,
    success,
)


def _request(body: bytes = b"", settings=None, token: str | None = None) -> Request:
    headers = [(b"authorization", f"Bearer {token}".encode())] if token else []
    app = MagicMock()
    app.state.settings = settings
    scope = {"type": "http", "method": "POST", "path": "/", "headers": headers, "app": app}

    async def receive():
        return {"type": "http.request", "body": body, "more_body": False}

    return Request(scope, receive)


def _json(response) -> dict:
    return json.loads(response.body.decode())


class TestParseInt:
    def test_parse(self):
        assert _parse_int("5", 10) == 5
        assert _parse_int(None, 10) == 10
        assert _parse_int("many", 10) == 10
        assert _parse_int("5000", 10, maximum=500) == 500


class TestReadJson:
    async def test_object(self):
        assert await read_json(_request(b'{"a": 1}')) == {"a": 1}

    async def test_empty_body(self):
        assert await read_json(_request()) == {}

    @pytest.mark.parametrize("body", [b"{", b"[1, 2]", b'"text"', b"\xff"])
    async def test_rejected(self, body):
        with pytest.raises(BodyError) as exc_info:
            await read_json(_request(body))
        assert exc_info.value.response.status_code == 400


class TestRequireFields:
    def test_present(self):
        require_fields({"a": 0, "b": False}, "a", "b")

    @pytest.mark.parametrize("body", [{}, {"name": None}, {"name": ""}])
    def test_missing(self, body):
        with pytest.raises(BodyError) as exc_info:
            require_fields(body, "name")
        assert _json(exc_info.value.response)["error"]["message"] == "name is required"


class TestSuccess:
    def test_envelope(self):
        response = success(201, bounty={"id": "b-1"})
        assert response.status_code == 201
        assert _json(response) == {"success": True, "bounty": {"id": "b-1"}}


class TestCommandEndpoint:
    """The wrapper authenticates and maps every failure to an envelope."""

    async def test_passes_principal(self, settings):
        @command_endpoint
        async def handler(request, principal):
            return success(who=principal.principal_id)

        token = create_access_token("funder-1", ["funder"], settings)
        response = await handler(_request(settings=settings, token=token))

        assert _json(response) == {"success": True, "who": "funder-1"}

    async def test_unauthenticated_never_reaches_handler(self, settings):
        inner = MagicMock()

        @command_endpoint
        async def handler(request, principal):
            inner()
            return success()

        response = await handler(_request(settings=settings))

        assert response.status_code == 401
        inner.assert_not_called()

    async def test_domain_error(self, settings):
        @command_endpoint
        async def handler(request, principal):
            raise NotFoundError("Lab", "lab-9")

        token = create_access_token("lab-owner-1", ["lab"], settings)
        response = await handler(_request(settings=settings, token=token))

        assert response.status_code == 404
        assert _json(response)["error"]["code"] == "NOT_FOUND"

    async def test_unexpected_error(self, settings):
        @command_endpoint
        async def handler(request, principal):
            raise KeyError("oops")

        token = create_access_token("lab-owner-1", ["lab"], settings)
        response = await handler(_request(settings=settings, token=token))

        assert response.status_code == 500
        error = _json(response)["error"]
        assert error["code"] == "INTERNAL_ERROR"
        assert "request_id" in error
