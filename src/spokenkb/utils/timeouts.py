"""Timeout wrapper for blocking collaborator calls.

Each timed call gets its own daemon thread, so a call that hangs past its
deadline only ties up its own thread and never delays later calls.
"""
import threading
from typing import Any, Callable, Optional

from .error_codes import ErrorCode, TransientIO
from .logger import setup_worker_logger

logger = setup_worker_logger('timeouts')

_abandoned_lock = threading.Lock()
_abandoned = 0


def abandoned_calls() -> int:
    """Timed-out calls whose threads are still running."""
    with _abandoned_lock:
        return _abandoned


def _track_abandoned(delta: int) -> int:
    global _abandoned
    with _abandoned_lock:
        _abandoned += delta
        return _abandoned


class _TimedCall:
    def __init__(self, func: Callable[..., Any], args, kwargs):
        self.func = func
        self.args = args
        self.kwargs = kwargs
        self.done = threading.Event()
        self.lock = threading.Lock()
        self.abandoned = False
        self.result = None
        self.error: Optional[BaseException] = None

    def run(self) -> None:
        try:
            self.result = self.func(*self.args, **self.kwargs)
        except BaseException as e:
            self.error = e
        finally:
            with self.lock:
                self.done.set()
                if self.abandoned:
                    _track_abandoned(-1)

    def abandon(self) -> bool:
        """Mark the call abandoned; False if it finished in the meantime."""
        with self.lock:
            if self.done.is_set():
                return False
            self.abandoned = True
            return True


def call_with_timeout(func: Callable[..., Any], timeout: Optional[float], *args,
                      description: str = 'call', **kwargs) -> Any:
    """Run func with a deadline; an expired deadline raises TransientIO.

    The underlying call is not interrupted, its result is simply abandoned.
    A timeout of None or <= 0 runs the call inline.
    """
    if not timeout or timeout <= 0:
        return func(*args, **kwargs)

    call = _TimedCall(func, args, kwargs)
    thread = threading.Thread(target=call.run, name=f"spokenkb-call-{description}", daemon=True)
    thread.start()

    if not call.done.wait(timeout) and call.abandon():
        hung = _track_abandoned(1)
        logger.warning(f"{description} timed out after {timeout}s ({hung} abandoned call(s) still running)")
        raise TransientIO(
            f"{description} timed out after {timeout}s",
            error_code=ErrorCode.TIMEOUT,
            details={'timeout': timeout, 'abandoned_calls': hung}
        )

    if call.error is not None:
        raise call.error
    return call.result
