"""Bounded execution of calls to external collaborators."""

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Callable, Optional

from .errors import SecNetError, TransientError, wrap_unexpected

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 5.0


def call_with_timeout(
    func: Callable[..., Any],
    *args,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    operation: Optional[str] = None,
    **kwargs,
) -> Any:
    """
    Run ``func`` on a worker thread and wait at most ``timeout`` seconds.

    SecNetErrors raised by ``func`` propagate unchanged. A timeout or a
    connection failure raises TransientError; any other exception raises
    InternalError.
    """
    name = operation or getattr(func, "__name__", "external call")
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="secnet-external")
    future = executor.submit(func, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        future.cancel()
        logger.warning(f"{name} timed out after {timeout}s")
        raise TransientError(
            f"{name} timed out after {timeout}s",
            details={"operation": name, "timeout": timeout},
        )
    except SecNetError:
        raise
    except Exception as e:
        error = wrap_unexpected(e, name)
        if isinstance(error, TransientError):
            logger.warning(f"{name} unavailable: {e}")
        else:
            logger.exception(f"{name} failed unexpectedly")
        raise error from e
    finally:
        executor.shutdown(wait=False)
