"""Cancellation tokens used as session liveness flags and per-turn abort signals."""

from typing import Optional


class OperationCancelled(Exception):
    """Raised when a continuation resumes after its token was cancelled."""


class CancellationToken:
    """Explicit liveness token checked at every resumption point.

    A token created with a parent is cancelled whenever the parent is, so a
    session's root token also aborts every turn derived from it.
    """

    def __init__(self, parent: Optional["CancellationToken"] = None) -> None:
        self._parent = parent
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        if self._cancelled:
            return True
        return self._parent is not None and self._parent.cancelled

    @property
    def alive(self) -> bool:
        return not self.cancelled

    def cancel(self) -> None:
        self._cancelled = True

    def child(self) -> "CancellationToken":
        """Create a token that is cancelled together with this one."""
        return CancellationToken(parent=self)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelled()
