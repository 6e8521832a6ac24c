from __future__ import annotations


class BuildSessionState:
    """Mutable per-session state: the assigned release id and the error flag.

    Both fields only move forward: the release id is set at most once and
    the error flag never resets.
    """

    def __init__(self) -> None:
        self._release_id: int | None = None
        self._had_error = False

    @property
    def release_id(self) -> int | None:
        return self._release_id

    @property
    def had_error(self) -> bool:
        return self._had_error

    def assign_release_id(self, release_id: int) -> bool:
        """Record the release id. Returns False if one was already assigned."""
        if self._release_id is not None:
            return False
        self._release_id = release_id
        return True

    def mark_error(self) -> None:
        self._had_error = True

    def __repr__(self) -> str:
        return (
            f"BuildSessionState(release_id={self._release_id!r}, "
            f"had_error={self._had_error!r})"
        )
