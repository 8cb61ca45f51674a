import pytest

from docscan.utils.buffers import BufferTracker


def test_scope_releases_everything_once():
    tracker = BufferTracker()
    with tracker.scope() as scope:
        scope.track(object())
        scope.track(object())
        assert tracker.live == 2
    assert tracker.live == 0
    scope.release()
    assert tracker.released == 2


def test_scope_releases_on_exception():
    tracker = BufferTracker()
    with pytest.raises(ValueError):
        with tracker.scope() as scope:
            scope.track(object())
            raise ValueError("boom")
    assert tracker.live == 0


def test_closed_scope_rejects_new_buffers():
    tracker = BufferTracker()
    with tracker.scope() as scope:
        pass
    with pytest.raises(RuntimeError):
        scope.track(object())
