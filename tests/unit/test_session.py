"""End-to-end tests for builder/session.py against a mocked builder."""
from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Callable
from typing import Any
from unittest.mock import AsyncMock

import httpx
import pytest
from conftest import RecordingUI, StaticPackager, make_request, wait_until

from balena_remote_build.builder.cancellation import CancellationToken
from balena_remote_build.builder.session import BuildSession, start_remote_build
from balena_remote_build.builder.transport import UploadTransport
from balena_remote_build.core.constants import INTERRUPTED_EXIT_CODE, SessionState
from balena_remote_build.core.exceptions import (
    BuildFailedError,
    CancellationError,
    StreamParseError,
    TransportError,
)
from balena_remote_build.core.exceptions import InterruptedError as BuildInterruptedError

LOG_ID_METADATA = {"type": "metadata", "resource": "buildLogId", "value": "4821"}


def _array(*messages: dict[str, Any]) -> bytes:
    return json.dumps(list(messages)).encode()


def _session(
    handler: Callable[[httpx.Request], Any],
    builder_client: Callable[..., httpx.AsyncClient],
    release_client: AsyncMock,
    ui: RecordingUI,
    packager: StaticPackager,
    token: CancellationToken | None = None,
    **options: Any,
) -> BuildSession:
    return BuildSession(
        make_request(**options),
        release_client=release_client,
        token=token,
        ui=ui,
        packager=packager,
        transport=UploadTransport(http_client=builder_client(handler)),
    )


# ---------------------------------------------------------------------------
# Interactive mode
# ---------------------------------------------------------------------------


async def test_interactive_success_returns_release_id(
    builder_client, release_client, ui, packager
) -> None:
    body = _array({"message": "Step 1"}, LOG_ID_METADATA, {"message": "Successfully built"})
    session = _session(
        lambda r: httpx.Response(200, content=body), builder_client, release_client, ui, packager
    )

    assert await session.run() == 4821
    assert session.status is SessionState.COMPLETED
    assert ui.lines == ["Step 1", "Successfully built"]
    release_client.cancel_release.assert_not_awaited()


async def test_interactive_stream_split_across_chunks(
    builder_client, release_client, ui, packager
) -> None:
    body = _array({"message": "Step 1"}, LOG_ID_METADATA, {"message": "Done"})

    async def chunks() -> AsyncIterator[bytes]:
        for i in range(0, len(body), 7):
            yield body[i : i + 7]

    session = _session(
        lambda r: httpx.Response(200, content=chunks()), builder_client, release_client, ui, packager
    )

    assert await session.run() == 4821
    assert ui.lines == ["Step 1", "Done"]


async def test_interactive_error_message_fails_build(
    builder_client, release_client, ui, packager
) -> None:
    body = _array({"message": "compiling"}, {"message": "gcc: error", "isError": True})
    session = _session(
        lambda r: httpx.Response(200, content=body), builder_client, release_client, ui, packager
    )

    with pytest.raises(BuildFailedError):
        await session.run()
    assert session.status is SessionState.FAILED
    assert session.had_error is True
    assert ui.lines == ["compiling", "gcc: error"]


async def test_stream_read_to_end_after_error_message(
    builder_client, release_client, ui, packager
) -> None:
    body = _array(
        {"message": "gcc: error", "isError": True},
        {"type": "metadata", "resource": "buildLogId", "value": "77"},
    )
    session = _session(
        lambda r: httpx.Response(200, content=body), builder_client, release_client, ui, packager
    )

    with pytest.raises(BuildFailedError):
        await session.run()
    assert session.release_id == 77
    assert session.status is SessionState.FAILED


async def test_interactive_without_release_id_returns_none(
    builder_client, release_client, ui, packager
) -> None:
    session = _session(
        lambda r: httpx.Response(200, content=_array({"message": "hi"})),
        builder_client,
        release_client,
        ui,
        packager,
    )
    assert await session.run() is None
    assert session.status is SessionState.COMPLETED


async def test_interactive_malformed_stream_raises(
    builder_client, release_client, ui, packager
) -> None:
    session = _session(
        lambda r: httpx.Response(200, content=b'[{"message": "Step 1"}, {"mess'),
        builder_client,
        release_client,
        ui,
        packager,
    )
    with pytest.raises(StreamParseError):
        await session.run()
    assert session.status is SessionState.FAILED


async def test_request_carries_query_headers_and_archive(
    builder_client, release_client, ui, packager
) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, content=b"[]")

    session = _session(
        handler, builder_client, release_client, ui, packager, nocache=True, dockerfile_path="Dockerfile.dev"
    )
    await session.run()

    request = seen[0]
    assert request.method == "POST"
    assert request.url.path == "/v3/build"
    params = request.url.params
    assert params["slug"] == "gh_user/myfleet"
    assert params["dockerfilePath"] == "Dockerfile.dev"
    assert params["nocache"] == "true"
    assert params["headless"] == "false"
    assert request.headers["Authorization"] == "Bearer tok_123"
    assert request.headers["Content-Encoding"] == "gzip"


async def test_upload_indicator_started_and_finished(
    builder_client, release_client, ui, packager
) -> None:
    session = _session(
        lambda r: httpx.Response(200, content=_array({"message": "a"})),
        builder_client,
        release_client,
        ui,
        packager,
    )
    await session.run()

    methods = [method for method, _ in ui.calls]
    assert methods[0] == "upload_started"
    assert ui.calls[0][1] == ("https://builder.example.test",)
    assert methods.count("upload_finished") == 1
    assert methods.index("upload_finished") < methods.index("write_line")


# ---------------------------------------------------------------------------
# Headless mode
# ---------------------------------------------------------------------------


async def test_headless_success_returns_release_id(
    builder_client, release_client, ui, packager
) -> None:
    session = _session(
        lambda r: httpx.Response(200, json={"started": True, "releaseId": 991}),
        builder_client,
        release_client,
        ui,
        packager,
        headless=True,
    )

    assert await session.run() == 991
    assert session.status is SessionState.COMPLETED
    assert session.headless_result is not None
    assert session.headless_result.started is True


async def test_headless_rejection_exposes_error(
    builder_client, release_client, ui, packager
) -> None:
    body = {"started": False, "error": "E_SLUG", "message": "fleet not found"}
    session = _session(
        lambda r: httpx.Response(200, json=body), builder_client, release_client, ui, packager, headless=True
    )

    assert await session.run() is None
    assert session.status is SessionState.FAILED
    result = session.headless_result
    assert result is not None
    assert result.error == "E_SLUG"
    assert result.message == "fleet not found"
    assert ui._names("headless_result") == [(result,)]


async def test_headless_invalid_body_raises(builder_client, release_client, ui, packager) -> None:
    session = _session(
        lambda r: httpx.Response(200, content=b"not json"),
        builder_client,
        release_client,
        ui,
        packager,
        headless=True,
    )
    with pytest.raises(StreamParseError, match="error reading the response"):
        await session.run()


# ---------------------------------------------------------------------------
# Transport errors
# ---------------------------------------------------------------------------


async def test_http_error_status_rejects_with_body(
    builder_client, release_client, ui, packager
) -> None:
    session = _session(
        lambda r: httpx.Response(502, text="gateway error"), builder_client, release_client, ui, packager
    )

    with pytest.raises(TransportError) as excinfo:
        await session.run()
    assert "502" in str(excinfo.value)
    assert "gateway error" in str(excinfo.value)
    assert session.status is SessionState.FAILED


# ---------------------------------------------------------------------------
# Interrupts
# ---------------------------------------------------------------------------


def _blocking_stream(head: bytes, gate: asyncio.Event) -> Callable[[httpx.Request], httpx.Response]:
    async def body() -> AsyncIterator[bytes]:
        yield head
        await gate.wait()
        yield b"]"

    return lambda request: httpx.Response(200, content=body())


async def test_interrupt_after_release_id_cancels_release(
    builder_client, release_client, ui, packager
) -> None:
    token = CancellationToken()
    head = b'[{"message": "Step 1"}, ' + json.dumps(LOG_ID_METADATA).encode()
    session = _session(
        _blocking_stream(head, asyncio.Event()), builder_client, release_client, ui, packager, token=token
    )

    run = asyncio.ensure_future(session.run())
    await wait_until(lambda: session.release_id == 4821)
    token.cancel()

    with pytest.raises(BuildInterruptedError):
        await run
    release_client.cancel_release.assert_awaited_once_with(4821)
    assert session.status is SessionState.CANCELLED
    assert token.exit_code == INTERRUPTED_EXIT_CODE


async def test_interrupt_before_release_id_skips_cancel_call(
    builder_client, release_client, ui, packager
) -> None:
    token = CancellationToken()
    session = _session(
        _blocking_stream(b'[{"message": "Step 1"}', asyncio.Event()),
        builder_client,
        release_client,
        ui,
        packager,
        token=token,
    )

    run = asyncio.ensure_future(session.run())
    await wait_until(lambda: ui.lines == ["Step 1"])
    token.cancel()

    with pytest.raises(BuildInterruptedError):
        await run
    release_client.cancel_release.assert_not_awaited()
    assert token.exit_code == INTERRUPTED_EXIT_CODE


async def test_interrupt_during_upload(builder_client, release_client, ui, packager) -> None:
    token = CancellationToken()
    entered = asyncio.Event()

    async def handler(request: httpx.Request) -> httpx.Response:
        entered.set()
        await asyncio.Event().wait()
        return httpx.Response(200, content=b"[]")  # pragma: no cover

    session = _session(handler, builder_client, release_client, ui, packager, token=token)

    run = asyncio.ensure_future(session.run())
    await asyncio.wait_for(entered.wait(), 5)
    token.cancel()

    with pytest.raises(BuildInterruptedError):
        await run
    assert session.status is SessionState.CANCELLED
    release_client.cancel_release.assert_not_awaited()


async def test_interrupt_with_failing_cancel_call_still_interrupts(
    builder_client, release_client, ui, packager
) -> None:
    release_client.cancel_release.side_effect = CancellationError("HTTP 500")
    token = CancellationToken()
    head = b"[" + json.dumps(LOG_ID_METADATA).encode()
    session = _session(
        _blocking_stream(head, asyncio.Event()), builder_client, release_client, ui, packager, token=token
    )

    run = asyncio.ensure_future(session.run())
    await wait_until(lambda: session.release_id == 4821)
    token.cancel()

    with pytest.raises(BuildInterruptedError):
        await run
    release_client.cancel_release.assert_awaited_once_with(4821)


async def test_interrupt_after_completion_is_ignored(
    builder_client, release_client, ui, packager
) -> None:
    token = CancellationToken()
    session = _session(
        lambda r: httpx.Response(200, content=_array(LOG_ID_METADATA)),
        builder_client,
        release_client,
        ui,
        packager,
        token=token,
    )

    assert await session.run() == 4821
    token.cancel()
    await asyncio.sleep(0)

    release_client.cancel_release.assert_not_awaited()
    assert token.exit_code is None
    assert session.status is SessionState.COMPLETED


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


async def test_run_only_once(builder_client, release_client, ui, packager) -> None:
    session = _session(
        lambda r: httpx.Response(200, content=b"[]"), builder_client, release_client, ui, packager
    )
    await session.run()
    with pytest.raises(RuntimeError):
        await session.run()


async def test_start_remote_build_runs_session(builder_client, release_client, ui, packager) -> None:
    client = builder_client(lambda r: httpx.Response(200, json={"started": True, "releaseId": 5}))
    release_id = await start_remote_build(
        make_request(headless=True),
        release_client=release_client,
        ui=ui,
        packager=packager,
        transport=UploadTransport(http_client=client),
    )
    assert release_id == 5


def test_repr_mentions_slug(release_client) -> None:
    session = BuildSession(make_request(), release_client=release_client)
    assert "gh_user/myfleet" in repr(session)
