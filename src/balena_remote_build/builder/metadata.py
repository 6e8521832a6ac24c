from __future__ import annotations

import re

import structlog

from balena_remote_build.builder.state import BuildSessionState
from balena_remote_build.core.constants import CursorCommand, MessageKind, MetadataResource
from balena_remote_build.core.types import BuilderMessage, CursorAction
from balena_remote_build.ui.progress import ProgressUI

logger = structlog.get_logger(__name__)

CURSOR_PATTERN = re.compile(r"([a-z]+)([0-9]*)")

UNKNOWN_COMMAND_WARNING = (
    "Warning: ignoring unknown builder command. You may experience odd "
    "build output. Maybe you need to update this client?"
)


def parse_cursor(value: str) -> CursorAction:
    """Parse a ``cursor`` metadata value such as ``"up3"`` or ``"erase"``.

    The amount defaults to 1 when absent (or zero). Anything that does not
    match ``[a-z]+[0-9]*`` or names an unsupported command parses to
    :attr:`CursorCommand.UNKNOWN`.
    """
    match = CURSOR_PATTERN.fullmatch(value)
    if match is None:
        return CursorAction(command=CursorCommand.UNKNOWN, raw=value)

    name, digits = match.groups()
    amount = int(digits) if digits else 1
    try:
        command = CursorCommand(name)
    except ValueError:
        command = CursorCommand.UNKNOWN
    if command is CursorCommand.UNKNOWN:
        return CursorAction(command=command, raw=value)
    return CursorAction(command=command, amount=amount or 1, raw=value)


class MetadataInterpreter:
    """Apply interactive builder messages to the session state and the UI.

    Plain messages are printed; ``isError`` lines flag the session as failed
    without stopping consumption. Metadata messages either drive the cursor
    or carry the release id (``buildLogId``).
    """

    def __init__(
        self,
        state: BuildSessionState,
        ui: ProgressUI,
        *,
        debug: bool = False,
    ) -> None:
        self._state = state
        self._ui = ui
        self._debug = debug

    def handle(self, message: BuilderMessage) -> None:
        if self._debug:
            logger.debug("builder.message", message=message.model_dump(by_alias=True))

        if message.kind is MessageKind.METADATA:
            self.handle_metadata(message)
            return

        if message.text:
            self._ui.write_line(message.text.rstrip("\n"), replace=message.replace_line)
        if message.is_error:
            self._state.mark_error()

    def handle_metadata(self, message: BuilderMessage) -> None:
        if message.value is None:
            logger.debug("builder.metadata_without_value", resource=message.resource)
            return

        if message.resource == MetadataResource.CURSOR:
            self.apply_cursor(parse_cursor(message.value))
        elif message.resource == MetadataResource.BUILD_LOG_ID:
            self._assign_release_id(message.value)
        else:
            logger.debug(
                "builder.metadata_unknown_resource",
                resource=message.resource,
                value=message.value,
            )

    def apply_cursor(self, action: CursorAction) -> None:
        match action.command:
            case CursorCommand.ERASE:
                self._ui.erase_line()
            case CursorCommand.UP:
                self._ui.move_cursor(-action.amount)
            case CursorCommand.DOWN:
                self._ui.move_cursor(action.amount)
            case _:
                logger.warning("builder.metadata_unknown_cursor", value=action.raw)
                self._ui.warning(UNKNOWN_COMMAND_WARNING)

    def _assign_release_id(self, value: str) -> None:
        try:
            release_id = int(value, 10)
        except ValueError:
            logger.warning("builder.release_id_invalid", value=value)
            return

        if self._state.assign_release_id(release_id):
            logger.debug("builder.release_id_assigned", release_id=release_id)
        else:
            logger.warning(
                "builder.release_id_reassigned",
                current=self._state.release_id,
                ignored=release_id,
            )
