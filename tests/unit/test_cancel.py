from __future__ import annotations

import pytest

from polymodo.cancel import Cancelled, CancelToken


class TestCancelToken:
    def test_fresh_token_is_live(self) -> None:
        token = CancelToken()
        assert not token.cancelled
        assert token.reason is None
        token.raise_if_cancelled()

    def test_cancel_keeps_first_reason(self) -> None:
        token = CancelToken()
        token.cancel("superseded")
        token.cancel("deadline exceeded")
        assert token.cancelled
        assert token.reason == "superseded"

    def test_parent_cancels_children(self) -> None:
        parent = CancelToken()
        child = parent.child()
        grandchild = child.child()
        parent.cancel("superseded")
        assert child.cancelled
        assert grandchild.reason == "superseded"

    def test_child_does_not_cancel_parent(self) -> None:
        parent = CancelToken()
        child = parent.child()
        child.cancel("deadline exceeded")
        assert not parent.cancelled

    def test_raise_if_cancelled(self) -> None:
        token = CancelToken()
        token.cancel("superseded")
        with pytest.raises(Cancelled, match="superseded"):
            token.raise_if_cancelled()
