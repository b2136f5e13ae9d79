"""Retry classification and linear backoff.

Retryable:
- ConnectionFailedError (network failure)
- RequestTimeoutError
- ServerError with status in [500, 600)

Everything else is terminal for retry purposes: cancellation, 4xx,
business rejections. A 401 never reaches this policy; the pipeline diverts
it to the credential refresh coordinator first.
"""

from .exceptions import ServerError, TransportError, is_cancellation
from .models import RequestConfig

DEFAULT_RETRY_BUDGET = 3
DEFAULT_BASE_DELAY = 1.0  # seconds


class RetryPolicy:
    """Decides whether a failed attempt is retried and after how long.

    Usage:
        policy = RetryPolicy(budget=3, base_delay=1.0)
        if policy.should_retry(error, config):
            delay = policy.next_delay(config)   # 1s, 2s, 3s ...
    """

    def __init__(
        self,
        budget: int = DEFAULT_RETRY_BUDGET,
        base_delay: float = DEFAULT_BASE_DELAY,
    ) -> None:
        if budget < 0:
            raise ValueError(f"budget must be non-negative, got {budget}")
        if base_delay < 0:
            raise ValueError(f"base_delay must be non-negative, got {base_delay}")
        self.budget = budget
        self.base_delay = base_delay

    def budget_for(self, config: RequestConfig) -> int:
        return self.budget if config.retry_budget is None else config.retry_budget

    def should_retry(self, error: BaseException, config: RequestConfig) -> bool:
        if is_cancellation(error):
            return False
        if config.retry_count >= self.budget_for(config):
            return False
        if isinstance(error, TransportError):
            return True
        if isinstance(error, ServerError):
            return error.status_code is not None and 500 <= error.status_code < 600
        return False

    def next_delay(self, config: RequestConfig) -> float:
        """Delay before the next attempt, from the attempts made so far."""
        base = self.base_delay if config.retry_delay is None else config.retry_delay
        return base * (config.retry_count + 1)
