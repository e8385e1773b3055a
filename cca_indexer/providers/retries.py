import logging
import time
from typing import Callable, Tuple, Type, TypeVar

import requests

T = TypeVar('T')


def with_retries(operation_to_retry: Callable[[], T], log: logging.Logger, max_attempts: int = 4, delay: float = 1,
                 retry_on: Tuple[Type[BaseException], ...] = (requests.RequestException,)) -> T:
    """
    Retry an operation with exponential backoff on transient errors.

    :param operation_to_retry: The function/operation to retry
    :param max_attempts: Maximum number of attempts
    :param delay: Initial delay between retries (doubled after each attempt)
    :param retry_on: Exception types considered transient; anything else propagates at once
    """
    for attempt in range(1, max_attempts + 1):
        try:
            return operation_to_retry()
        except retry_on as e:
            if attempt == max_attempts:
                raise
            log.warning(f"Attempt {attempt}/{max_attempts} failed: {e}")
            time.sleep(delay * 2 ** (attempt - 1))
    raise RuntimeError("unreachable")
