"""
Tests that SIGTERM/SIGINT cancel a run and that cancellation reaches open connections.
"""

import os
import signal
import time
from unittest.mock import MagicMock

import pytest

from pg_watcher import CancelledError, RunContext, install_signal_handlers


def wait_for(predicate, timeout=2.0):
    deadline = time.time() + timeout
    while not predicate() and time.time() < deadline:
        time.sleep(0.01)
    return predicate()


@pytest.mark.parametrize("signum", [signal.SIGTERM, signal.SIGINT])
def test_signal_cancels_run_context(signum):
    ctx = RunContext()
    previous = install_signal_handlers(ctx)
    try:
        os.kill(os.getpid(), signum)
        assert wait_for(lambda: ctx.cancelled)
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
    assert signal.getsignal(signum) is previous[signum]


def test_cancel_reaches_tracked_connections():
    ctx = RunContext()
    tracked, released = MagicMock(), MagicMock()
    ctx.track(tracked)
    ctx.track(released)
    ctx.untrack(released)

    ctx.cancel()
    tracked.cancel.assert_called_once_with()
    released.cancel.assert_not_called()
    with pytest.raises(CancelledError):
        ctx.check()


def test_tracking_after_cancel_cancels_immediately():
    ctx = RunContext()
    ctx.cancel()
    late = MagicMock()
    ctx.track(late)
    late.cancel.assert_called_once_with()
