"""Cooperative cancellation tokens.

Nothing in polymodo is cancelled by force. Work that may be superseded holds
a ``CancelToken`` and checks it at its own suspension points (between matcher
chunks, before committing a fan-out round). Cancelling a token cancels every
child derived from it.
"""

from __future__ import annotations

import itertools

_serials = itertools.count(1)


class Cancelled(Exception):
    """Raised by ``CancelToken.raise_if_cancelled``."""


class CancelToken:
    __slots__ = ("serial", "_cancelled", "_parent", "_reason")

    def __init__(self, parent: CancelToken | None = None) -> None:
        self.serial = next(_serials)
        self._cancelled = False
        self._parent = parent
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        if self._cancelled:
            return True
        if self._parent is not None and self._parent.cancelled:
            return True
        return False

    @property
    def reason(self) -> str | None:
        if self._reason is not None:
            return self._reason
        if self._parent is not None:
            return self._parent.reason
        return None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._cancelled:
            self._cancelled = True
            self._reason = reason

    def child(self) -> CancelToken:
        return CancelToken(parent=self)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise Cancelled(self.reason or "cancelled")

    def __repr__(self) -> str:
        state = "cancelled" if self.cancelled else "live"
        return f"<CancelToken #{self.serial} {state}>"
