"""Resilient request pipeline.

Wraps a Transport with bounded concurrency, priority scheduling,
debounce/throttle coalescing, retry with backoff, cooperative cancellation
and single-flight credential refresh.

Usage:
    from relay.pipeline import HttpxTransport, RequestConfig, RequestPipeline

    async with HttpxTransport("https://api.example.com") as transport:
        async with RequestPipeline(transport) as pipeline:
            outcome = await pipeline.request(
                RequestConfig(method="GET", url="/search", debounce_window=0.3)
            )

Exception Hierarchy:
    PipelineError (base)
    ├── RequestCancelledError - scope invalidated or explicit abort
    │   └── RequestSupersededError - replaced by a newer debounced request
    ├── TransportError - round trip failed (retryable)
    │   ├── ConnectionFailedError - network failure
    │   └── RequestTimeoutError - timeout
    ├── HTTPStatusError - rejected status
    │   ├── ServerError - 5xx (retryable)
    │   └── ClientError - 4xx and others (no retry)
    │       └── AuthenticationError - 401 (credential refresh)
    ├── AuthExpiredError - refresh failed (sign-out)
    └── BusinessError - application-level rejection code
"""

from .admission import AdmissionController, PriorityQueue, QueueEntry
from .cancellation import (
    INHERIT,
    CancellationScope,
    CancellationSource,
    CancellationToken,
)
from .credentials import CredentialStore, InMemoryCredentialStore
from .debounce import DebounceEngine
from .exceptions import (
    AuthenticationError,
    AuthExpiredError,
    BusinessError,
    ClientError,
    ConnectionFailedError,
    HTTPStatusError,
    PipelineError,
    RequestCancelledError,
    RequestSupersededError,
    RequestTimeoutError,
    ServerError,
    TransportError,
    TransportErrorKind,
    is_cancellation,
)
from .models import Origin, Outcome, Priority, RequestConfig, TokenResponse
from .notifier import LoggingNotifier, Notifier, describe_error
from .orchestrator import RequestPipeline
from .refresh import CredentialRefreshCoordinator, RefreshStatus
from .retry import RetryPolicy
from .throttle import ThrottleEngine
from .transport import HttpxTransport, Transport

__all__ = [
    # Orchestrator
    "RequestPipeline",
    # Mechanisms
    "AdmissionController",
    "PriorityQueue",
    "QueueEntry",
    "DebounceEngine",
    "ThrottleEngine",
    "RetryPolicy",
    "CredentialRefreshCoordinator",
    "RefreshStatus",
    # Cancellation
    "INHERIT",
    "CancellationScope",
    "CancellationSource",
    "CancellationToken",
    # Boundaries
    "Transport",
    "HttpxTransport",
    "CredentialStore",
    "InMemoryCredentialStore",
    "Notifier",
    "LoggingNotifier",
    "describe_error",
    # Models
    "Origin",
    "Outcome",
    "Priority",
    "RequestConfig",
    "TokenResponse",
    # Exceptions
    "PipelineError",
    "RequestCancelledError",
    "RequestSupersededError",
    "TransportError",
    "TransportErrorKind",
    "ConnectionFailedError",
    "RequestTimeoutError",
    "HTTPStatusError",
    "ServerError",
    "ClientError",
    "AuthenticationError",
    "AuthExpiredError",
    "BusinessError",
    "is_cancellation",
]
