from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator

from balena_remote_build.core.constants import CursorCommand, MessageKind


class BuilderMessage(BaseModel):
    """One element of the interactive builder stream.

    ``resource`` and ``value`` are only populated for metadata messages.
    """

    text: str | None = Field(default=None, alias="message")
    kind: MessageKind = MessageKind.PLAIN
    replace_line: bool = Field(default=False, alias="replace")
    is_error: bool = Field(default=False, alias="isError")
    resource: str | None = None
    value: str | None = None

    model_config = {"populate_by_name": True, "frozen": True}

    @field_validator("value", mode="before")
    @classmethod
    def _stringify_value(cls, v: Any) -> Any:
        if v is None or isinstance(v, str):
            return v
        return str(v)

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> BuilderMessage:
        """Create from a raw builder JSON object with camelCase keys."""
        is_metadata = data.get("type") == MessageKind.METADATA
        payload: dict[str, Any] = {
            "message": data.get("message"),
            "replace": bool(data.get("replace", False)),
            "isError": bool(data.get("isError", False)),
            "kind": MessageKind.METADATA if is_metadata else MessageKind.PLAIN,
        }
        if is_metadata:
            payload["resource"] = data.get("resource")
            payload["value"] = data.get("value")
        return cls.model_validate(payload)


class HeadlessResult(BaseModel):
    """The single status object returned by a headless build request."""

    started: bool
    error: str | None = None
    message: str | None = None
    release_id: int | None = Field(default=None, alias="releaseId")

    model_config = {"populate_by_name": True, "frozen": True}

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class CursorAction(BaseModel):
    """A parsed ``cursor`` metadata value.

    ``erase`` | ``up(amount)`` | ``down(amount)`` | ``unknown(raw)``.
    """

    command: CursorCommand
    amount: int = 1
    raw: str = ""

    model_config = {"frozen": True}
