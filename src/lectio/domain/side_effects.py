"""Best-effort side effects.

Billing state must be correct; notifications are advisory. Anything run
through best_effort() has every exception caught and logged, and never
fails the enclosing reconciliation.
"""

from __future__ import annotations

from typing import Any, Callable, TypeVar

from lectio.observability.logging import get_logger
from lectio.observability.redaction import safe_log_context

logger = get_logger(__name__)

T = TypeVar("T")


def best_effort(
    action: str,
    fn: Callable[..., T],
    *args: Any,
    **kwargs: Any,
) -> T | None:
    """Call fn(*args, **kwargs), logging and discarding any exception.

    Args:
        action: Short name of the side effect, used in logs.
        fn: The side-effect callable.

    Returns:
        fn's return value, or None if it raised.
    """
    try:
        return fn(*args, **kwargs)
    except Exception as e:
        logger.exception(
            "best-effort side effect failed",
            extra={
                "extra_fields": safe_log_context(
                    action=action,
                    error_type=type(e).__name__,
                )
            },
        )
        return None
