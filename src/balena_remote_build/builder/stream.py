"""Builder response parsing.

The builder answers a ``/v3/build`` request in one of two shapes, picked by
the ``headless`` query flag:

* interactive: one long-lived top-level JSON array, each element a
  :class:`BuilderMessage` object, flushed as the build progresses;
* headless: a single JSON object (:class:`HeadlessResult`) sent once the
  build has been queued.

:class:`ResponseDemultiplexer` turns either shape into one async sequence of
domain events. :class:`InterruptibleSource` wraps the raw byte stream so that
a cancellation can end a pending read with an error of its choosing.
"""
from __future__ import annotations

import asyncio
import codecs
import json
import re
from enum import StrEnum
from typing import Any, AsyncIterator, Generic, TypeVar

import httpx
import structlog
from pydantic import ValidationError

from balena_remote_build.core.exceptions import InterruptedError as BuildInterruptedError
from balena_remote_build.core.exceptions import StreamParseError, TransportError
from balena_remote_build.core.types import BuilderMessage, HeadlessResult

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_WHITESPACE = " \t\n\r"
_LITERALS = ("true", "false", "null", "NaN", "Infinity", "-Infinity")
_PARTIAL_ESCAPE = re.compile(r"\\?u[0-9a-fA-F]{0,4}")


class InterruptibleSource(Generic[T]):
    """Async iterator over *source* that can be failed from the outside.

    :meth:`fail` makes the pending (or next) ``__anext__`` raise the given
    error instead of waiting for *source*. The failure is sticky: every later
    read raises it too.
    """

    def __init__(self, source: AsyncIterator[T]) -> None:
        self._source = source
        self._error: BaseException | None = None
        self._failed = asyncio.Event()

    @property
    def error(self) -> BaseException | None:
        return self._error

    def fail(self, error: BaseException) -> None:
        """Inject *error*. Only the first call has an effect."""
        if self._error is not None:
            return
        self._error = error
        self._failed.set()

    def __aiter__(self) -> InterruptibleSource[T]:
        return self

    async def _read(self) -> tuple[bool, T | None]:
        try:
            return True, await anext(self._source)
        except StopAsyncIteration:
            return False, None

    async def __anext__(self) -> T:
        if self._error is not None:
            raise self._error

        read = asyncio.ensure_future(self._read())
        waiter = asyncio.ensure_future(self._failed.wait())
        try:
            await asyncio.wait({read, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not read.done():
                read.cancel()

        if self._error is not None:
            # The read may have failed because the transport was torn down;
            # the injected error wins.
            await asyncio.wait({read})
            if not read.cancelled():
                read.exception()
            raise self._error

        has_value, value = read.result()
        if not has_value:
            raise StopAsyncIteration
        return value  # type: ignore[return-value]


class _ArrayState(StrEnum):
    START = "start"
    FIRST = "first"
    ELEMENT = "element"
    SEPARATOR = "separator"
    DONE = "done"


class JsonArrayDecoder:
    """Incremental decoder for the elements of one top-level JSON array.

    Feed raw bytes with :meth:`feed`; each call returns the elements that
    became complete. :meth:`close` checks that the array was terminated.
    """

    def __init__(self) -> None:
        self._decoder = json.JSONDecoder()
        self._utf8 = codecs.getincrementaldecoder("utf-8")()
        self._buffer = ""
        self._state = _ArrayState.START

    def feed(self, data: bytes) -> list[Any]:
        try:
            self._buffer += self._utf8.decode(data)
        except UnicodeDecodeError as exc:
            raise StreamParseError(f"Builder stream is not valid UTF-8: {exc}") from exc
        return self._drain()

    def close(self) -> list[Any]:
        try:
            self._buffer += self._utf8.decode(b"", final=True)
        except UnicodeDecodeError as exc:
            raise StreamParseError(f"Builder stream is not valid UTF-8: {exc}") from exc
        values = self._drain()
        if self._state is _ArrayState.DONE:
            return values
        if self._state is _ArrayState.START and not self._buffer.strip(_WHITESPACE):
            # Empty body: nothing to report.
            return values
        if self._state is _ArrayState.ELEMENT and self._buffer.strip(_WHITESPACE):
            try:
                self._decoder.raw_decode(self._buffer.lstrip(_WHITESPACE))
            except json.JSONDecodeError as exc:
                raise StreamParseError(f"Malformed builder message: {exc}") from exc
        raise StreamParseError("Builder stream ended before the JSON array was closed")

    def _drain(self) -> list[Any]:
        values: list[Any] = []
        buf = self._buffer
        pos = 0
        end = len(buf)
        while True:
            while pos < end and buf[pos] in _WHITESPACE:
                pos += 1
            if pos >= end:
                break

            char = buf[pos]
            if self._state is _ArrayState.START:
                if char != "[":
                    raise StreamParseError(
                        f"Expected a JSON array from the builder, got {char!r}"
                    )
                pos += 1
                self._state = _ArrayState.FIRST
            elif self._state is _ArrayState.FIRST:
                if char == "]":
                    pos += 1
                    self._state = _ArrayState.DONE
                else:
                    self._state = _ArrayState.ELEMENT
            elif self._state is _ArrayState.ELEMENT:
                try:
                    value, pos = self._decoder.raw_decode(buf, pos)
                except json.JSONDecodeError as exc:
                    if _is_truncated(buf, exc):
                        # The element continues in a later chunk.
                        break
                    raise StreamParseError(f"Malformed builder message: {exc}") from exc
                values.append(value)
                self._state = _ArrayState.SEPARATOR
            elif self._state is _ArrayState.SEPARATOR:
                if char == ",":
                    self._state = _ArrayState.ELEMENT
                elif char == "]":
                    self._state = _ArrayState.DONE
                else:
                    raise StreamParseError(
                        f"Unexpected {char!r} between builder messages"
                    )
                pos += 1
            else:
                raise StreamParseError("Unexpected data after the builder message array")

        self._buffer = buf[pos:]
        return values


def _is_truncated(buf: str, exc: json.JSONDecodeError) -> bool:
    """Whether *exc* only reports input cut off at the end of *buf*.

    That is the case when nothing but whitespace follows the failing
    position, when a string runs to the end of the buffer, or when the
    remaining text is the start of a literal or a ``\\u`` escape.
    """
    tail = buf[exc.pos:].rstrip(_WHITESPACE)
    if not tail or exc.msg.startswith("Unterminated string"):
        return True
    if exc.msg.startswith("Invalid \\uXXXX escape"):
        return _PARTIAL_ESCAPE.fullmatch(tail) is not None
    return any(
        literal.startswith(tail) and literal != tail for literal in _LITERALS
    )


def _to_message(value: Any) -> BuilderMessage:
    if not isinstance(value, dict):
        raise StreamParseError(
            f"Unexpected builder message: {json.dumps(value)[:200]}"
        )
    try:
        return BuilderMessage.from_wire(value)
    except ValidationError as exc:
        raise StreamParseError(f"Unexpected builder message: {exc}") from exc


class ResponseDemultiplexer:
    """Route a builder response to the parser matching the request mode.

    The mode is fixed at construction and never changes.
    """

    def __init__(self, headless: bool) -> None:
        self._headless = headless

    @property
    def headless(self) -> bool:
        return self._headless

    def events(
        self, source: AsyncIterator[bytes]
    ) -> AsyncIterator[BuilderMessage | HeadlessResult]:
        """Return the event sequence for *source*.

        Interactive mode yields one :class:`BuilderMessage` per array
        element; headless mode yields exactly one :class:`HeadlessResult`.
        """
        if self._headless:
            return self._headless_events(source)
        return self.messages(source)

    async def messages(self, source: AsyncIterator[bytes]) -> AsyncIterator[BuilderMessage]:
        decoder = JsonArrayDecoder()
        try:
            async for chunk in source:
                for value in decoder.feed(chunk):
                    yield _to_message(value)
        except httpx.HTTPError as exc:
            raise TransportError(f"Connection to the remote builder failed: {exc}") from exc
        for value in decoder.close():
            yield _to_message(value)

    async def read_headless(self, source: AsyncIterator[bytes]) -> HeadlessResult:
        """Buffer the whole body and parse it as one :class:`HeadlessResult`."""
        try:
            body = b"".join([chunk async for chunk in source])
            data = json.loads(body)
            if not isinstance(data, dict):
                raise ValueError(f"expected a JSON object, got {type(data).__name__}")
            return HeadlessResult.model_validate(data)
        except BuildInterruptedError:
            raise
        except (ValueError, httpx.HTTPError) as exc:
            raise StreamParseError(
                f"There was an error reading the response from the remote builder: {exc}"
            ) from exc

    async def _headless_events(
        self, source: AsyncIterator[bytes]
    ) -> AsyncIterator[HeadlessResult]:
        yield await self.read_headless(source)
