from __future__ import annotations

from typing import Any


class RemoteBuildError(Exception):
    """Base exception for all remote build client errors.

    Attributes:
        code: Optional machine-readable error code (e.g. ``"SIGINT"``).
        details: Arbitrary key/value context about the error.
        status_code: HTTP status code when the error originates from a
            builder / API response (``None`` when not applicable).
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        *,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.details = details or {}
        self.status_code = status_code


class ConfigurationError(RemoteBuildError): ...


class PackagingError(RemoteBuildError): ...


class StreamParseError(RemoteBuildError):
    """The builder response was not valid JSON or had an unexpected shape."""


class CancellationError(RemoteBuildError):
    """The backend refused or failed the release cancel request.

    Only ever logged by the cancellation coordinator; a session never
    surfaces it to its caller.
    """


class TransportError(RemoteBuildError):
    """The builder answered outside ``[100, 400)`` or the connection failed.

    Attributes:
        status_text: HTTP reason phrase, when a response was received.
        body: Raw response body, when one could be read.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        status_text: str | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(
            message,
            code=str(status_code) if status_code is not None else None,
            details={"status_text": status_text, "body": body},
            status_code=status_code,
        )
        self.status_text = status_text
        self.body = body

    @classmethod
    def from_response(
        cls, status_code: int, status_text: str, body: str | None
    ) -> TransportError:
        parts = [
            "Remote builder responded with HTTP error:",
            f"{status_code} {status_text}",
        ]
        if body:
            parts.append(body)
        return cls(
            "\n".join(parts),
            status_code=status_code,
            status_text=status_text,
            body=body,
        )


class BuildFailedError(RemoteBuildError):
    """The build stream completed but reported at least one error line."""

    def __init__(self, message: str = "Remote build failed") -> None:
        super().__init__(message)


class InterruptedError(RemoteBuildError):
    """The session was cancelled through its cancellation token.

    Takes precedence over any transport error caused by tearing down the
    upload connection.
    """

    def __init__(self, message: str = "Build aborted on SIGINT signal") -> None:
        super().__init__(message, code="SIGINT")
