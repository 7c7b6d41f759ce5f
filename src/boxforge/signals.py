"""Wire process signals to build cancellation."""

from __future__ import annotations

import signal
from collections.abc import Iterator
from contextlib import contextmanager
from types import FrameType

from boxforge.runtime.base import CancelToken

DEFAULT_SIGNALS = (signal.SIGINT, signal.SIGTERM)


@contextmanager
def interrupt_on_signal(
    token: CancelToken,
    signals: tuple[signal.Signals, ...] = DEFAULT_SIGNALS,
) -> Iterator[CancelToken]:
    """Cancel *token* when one of *signals* arrives; restore handlers on exit.

    Must be entered from the main thread, as with :func:`signal.signal`.
    """

    def handler(signum: int, _frame: FrameType | None) -> None:
        token.cancel(f"signal {signal.Signals(signum).name}")

    previous = {sig: signal.signal(sig, handler) for sig in signals}
    try:
        yield token
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)
