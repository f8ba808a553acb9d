from collections.abc import Callable
from typing import TypeVar

from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt

from invoice_pipeline.logging.logger import Log

T = TypeVar("T")


class TransientError(Exception):
    """Marker base for errors that may succeed when the call is repeated."""


def is_transient(exc: BaseException) -> bool:
    return isinstance(exc, TransientError)


def call_with_retry(func: Callable[[], T], label: str) -> T:
    """Run ``func``; on a transient error run it exactly once more, without waiting.

    Non-transient errors, and a second transient failure, propagate unchanged.
    """

    def _log_retry(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        Log.warning(f"{label} failed with transient error, retrying once: {exc}")

    retrying = Retrying(
        retry=retry_if_exception(is_transient),
        stop=stop_after_attempt(2),
        before_sleep=_log_retry,
        reraise=True,
    )
    return retrying(func)
