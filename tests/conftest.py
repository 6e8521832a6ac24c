"""Shared test fixtures."""
from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, AsyncIterator, Callable
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import httpx
import pytest

from balena_remote_build.core.config import BuildOptions, BuildRequest
from balena_remote_build.core.types import HeadlessResult

BUILDER_URL = "https://builder.example.test"


class RecordingUI:
    """ProgressUI double that records every call as ``(method, args)``."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple[Any, ...]]] = []

    def _names(self, name: str) -> list[tuple[Any, ...]]:
        return [args for method, args in self.calls if method == name]

    @property
    def lines(self) -> list[str]:
        return [args[0] for args in self._names("write_line")]

    @property
    def warnings(self) -> list[str]:
        return [args[0] for args in self._names("warning")]

    @property
    def notices(self) -> list[str]:
        return [args[0] for args in self._names("notice")]

    @property
    def cursor_moves(self) -> list[int]:
        return [args[0] for args in self._names("move_cursor")]

    def upload_started(self, origin: str) -> None:
        self.calls.append(("upload_started", (origin,)))

    def upload_finished(self) -> None:
        self.calls.append(("upload_finished", ()))

    def write_line(self, text: str, *, replace: bool = False) -> None:
        self.calls.append(("write_line", (text, replace)))

    def erase_line(self) -> None:
        self.calls.append(("erase_line", ()))

    def move_cursor(self, lines: int) -> None:
        self.calls.append(("move_cursor", (lines,)))

    def notice(self, text: str) -> None:
        self.calls.append(("notice", (text,)))

    def warning(self, text: str) -> None:
        self.calls.append(("warning", (text,)))

    def headless_result(self, result: HeadlessResult) -> None:
        self.calls.append(("headless_result", (result,)))


class StaticPackager:
    """Packager double that yields a fixed payload."""

    def __init__(self, payload: bytes = b"fake-tar-archive") -> None:
        self.payload = payload

    async def package(self, source: Path, options: BuildOptions) -> AsyncIterator[bytes]:
        yield self.payload


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll *predicate* on the running loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.005)


def make_request(**options: Any) -> BuildRequest:
    return BuildRequest(
        app_slug="gh_user/myfleet",
        source=Path("."),
        auth_token="tok_123",
        base_url=BUILDER_URL,
        options=BuildOptions(**options),
    )


@pytest.fixture
def ui() -> RecordingUI:
    return RecordingUI()


@pytest.fixture
def packager() -> StaticPackager:
    return StaticPackager()


@pytest.fixture
def release_client() -> AsyncMock:
    client = AsyncMock()
    client.cancel_release = AsyncMock(return_value=None)
    return client


@pytest.fixture
async def builder_client() -> AsyncGenerator[Callable[..., httpx.AsyncClient], None]:
    """Factory for httpx clients backed by a MockTransport handler."""
    clients: list[httpx.AsyncClient] = []

    def _make(handler: Callable[[httpx.Request], Any]) -> httpx.AsyncClient:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        clients.append(client)
        return client

    yield _make
    for client in clients:
        await client.aclose()
