"""Tests for api/releases.py — ReleaseClient cancel PATCH."""
from __future__ import annotations

import json
import time
from collections.abc import Callable

import httpx
import pytest

from balena_remote_build.api.releases import (
    NOT_SUCCEEDED_FILTER,
    ReleaseCanceller,
    ReleaseClient,
)
from balena_remote_build.core.config import ClientConfig
from balena_remote_build.core.exceptions import CancellationError


def _client(
    handler: Callable[[httpx.Request], httpx.Response],
    builder_client: Callable[..., httpx.AsyncClient],
) -> ReleaseClient:
    return ReleaseClient(
        "https://api.example.test/",
        "tok_123",
        http_client=builder_client(handler),
    )


async def test_cancel_release_sends_conditional_patch(
    builder_client: Callable[..., httpx.AsyncClient],
) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, text="OK")

    before = int(time.time() * 1000)
    await _client(handler, builder_client).cancel_release(4821)
    after = int(time.time() * 1000)

    assert len(seen) == 1
    request = seen[0]
    assert request.method == "PATCH"
    assert request.url.host == "api.example.test"
    assert request.url.path == "/v7/release(4821)"
    assert request.url.params["$filter"] == "status ne 'success'"
    assert request.headers["Authorization"] == "Bearer tok_123"
    body = json.loads(request.content)
    assert body["status"] == "cancelled"
    assert before <= body["end_timestamp"] <= after


async def test_cancel_release_http_error_raises(
    builder_client: Callable[..., httpx.AsyncClient],
) -> None:
    client = _client(lambda r: httpx.Response(401, text="Unauthorized"), builder_client)
    with pytest.raises(CancellationError) as excinfo:
        await client.cancel_release(1)
    assert excinfo.value.status_code == 401
    assert excinfo.value.details == {"raw": "Unauthorized"}


async def test_cancel_release_network_error_raises(
    builder_client: Callable[..., httpx.AsyncClient],
) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("down", request=request)

    with pytest.raises(CancellationError, match="down"):
        await _client(handler, builder_client).cancel_release(1)


def test_filter_excludes_successful_releases() -> None:
    assert NOT_SUCCEEDED_FILTER == "status ne 'success'"


def test_from_config_uses_api_settings() -> None:
    cfg = ClientConfig(api_url="https://api.local/", api_version="v6", timeout=12)
    client = ReleaseClient.from_config(cfg, "tok")
    assert client.release_path(5) == "https://api.local/v6/release(5)"


def test_release_client_satisfies_protocol() -> None:
    assert isinstance(ReleaseClient("https://api.local", "tok"), ReleaseCanceller)


async def test_context_manager_closes_owned_client() -> None:
    async with ReleaseClient("https://api.local", "tok") as client:
        http_client = client._ensure_client()
    assert http_client.is_closed is True
