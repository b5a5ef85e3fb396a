from __future__ import annotations

"""Single reusable retry policy shared by generation and storage call sites."""

import logging
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

from tenacity import Retrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_exponential

logger = logging.getLogger("leadflow.retry")

T = TypeVar("T")


class RetryPolicy:
    """Exponential-backoff retry: delays are base_delay * 2**(n-1) for n = 1..retries."""

    def __init__(
        self,
        retries: int = 3,
        base_delay: float = 1.0,
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        if retries < 0:
            raise ValueError("retries must be >= 0")
        self.retries = retries
        self.base_delay = base_delay
        self.retry_on = retry_on
        self._sleep = sleep or time.sleep

    def call(self, fn: Callable[..., T], *args, **kwargs) -> T:
        """Purpose: Invoke fn, retrying on the configured exception types.
        Inputs/Outputs: Inputs are a callable and its arguments; returns fn's result.
        Side Effects / State: Sleeps between attempts; logs each retry at WARNING.
        Dependencies: tenacity Retrying with exponential wait.
        Failure Modes: Re-raises the last exception once retries are exhausted.
        If Removed: Transient generation and storage errors surface on first failure.
        Testing Notes: Inject a recording sleep and assert delays [1, 2, 4].
        """
        # First attempt plus `retries` retries, never waiting after the final failure.
        retrying = Retrying(
            stop=stop_after_attempt(self.retries + 1),
            wait=wait_exponential(multiplier=self.base_delay, exp_base=2),
            retry=retry_if_exception_type(self.retry_on),
            sleep=self._sleep,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        return retrying(fn, *args, **kwargs)
