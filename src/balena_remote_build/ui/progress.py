"""Progress output for remote builds.

:class:`ProgressUI` is the structural type the build session talks to.
:class:`TerminalProgressUI` renders to a terminal with ANSI escape
sequences; :class:`NullProgressUI` discards everything.
"""
from __future__ import annotations

import json
import sys
from typing import Protocol, TextIO, runtime_checkable

from balena_remote_build.core.types import HeadlessResult

ERASE_LINE = "\x1b[2K\r"


@runtime_checkable
class ProgressUI(Protocol):
    """Structural type for anything that can display build progress."""

    def upload_started(self, origin: str) -> None: ...

    def upload_finished(self) -> None: ...

    def write_line(self, text: str, *, replace: bool = False) -> None: ...

    def erase_line(self) -> None: ...

    def move_cursor(self, lines: int) -> None: ...

    def notice(self, text: str) -> None: ...

    def warning(self, text: str) -> None: ...

    def headless_result(self, result: HeadlessResult) -> None: ...


class NullProgressUI:
    """ProgressUI that ignores every call."""

    def upload_started(self, origin: str) -> None:
        pass

    def upload_finished(self) -> None:
        pass

    def write_line(self, text: str, *, replace: bool = False) -> None:
        pass

    def erase_line(self) -> None:
        pass

    def move_cursor(self, lines: int) -> None:
        pass

    def notice(self, text: str) -> None:
        pass

    def warning(self, text: str) -> None:
        pass

    def headless_result(self, result: HeadlessResult) -> None:
        pass


class TerminalProgressUI:
    """Render build output to a terminal.

    Build log lines and cursor movements go to *stream*; notices about the
    client itself (interrupt handling, cancellation) go to *err_stream*.

    Args:
        stream: Output for build messages. Defaults to ``sys.stdout``.
        err_stream: Output for notices. Defaults to ``sys.stderr``.
        is_tty: Override terminal detection on *stream*.
    """

    def __init__(
        self,
        stream: TextIO | None = None,
        err_stream: TextIO | None = None,
        *,
        is_tty: bool | None = None,
    ) -> None:
        self._stream = stream or sys.stdout
        self._err_stream = err_stream or sys.stderr
        if is_tty is None:
            is_tty = self._stream.isatty()
        self._is_tty = is_tty

    @property
    def is_tty(self) -> bool:
        return self._is_tty

    def _write(self, text: str) -> None:
        self._stream.write(text)
        self._stream.flush()

    def upload_started(self, origin: str) -> None:
        if self._is_tty:
            self._write(f"Uploading source package to {origin}\n")

    def upload_finished(self) -> None:
        pass

    def write_line(self, text: str, *, replace: bool = False) -> None:
        prefix = ERASE_LINE if self._is_tty else "\r"
        if replace:
            self._write(f"{prefix}{text}")
        else:
            self._write(f"{prefix}{text}\n")

    def erase_line(self) -> None:
        self._write(ERASE_LINE)

    def move_cursor(self, lines: int) -> None:
        if lines < 0:
            self._write(f"\x1b[{-lines}A")
        elif lines > 0:
            self._write(f"\x1b[{lines}B")

    def notice(self, text: str) -> None:
        self._err_stream.write(f"{text}\n")
        self._err_stream.flush()

    def warning(self, text: str) -> None:
        self._write(f"{text}\n")

    def headless_result(self, result: HeadlessResult) -> None:
        if not self._is_tty:
            self._write(json.dumps(result.to_wire()))
            return
        if result.started:
            self._write("Build successfully started\n")
            self._write(f"  Release ID: {result.release_id}\n")
        else:
            self._write("Failed to start remote build\n")
            self._write(f"  Error: {result.error}\n")
            self._write(f"  Message: {result.message}\n")
