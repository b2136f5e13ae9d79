"""Request pipeline data models.

RequestConfig is a mutable dataclass: one instance follows a logical
request through every retry, queue release and replay. Responses and
token payloads are Pydantic models with strict validation.
"""

import uuid
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from .cancellation import INHERIT, CancellationToken, _Inherit


# -----------------------------------------------------------------------------
# Enums
# -----------------------------------------------------------------------------


class Priority(IntEnum):
    """Admission priority. Higher values leave the queue first."""

    LOW = 0
    NORMAL = 1
    HIGH = 2


class Origin(str, Enum):
    """Why a request is entering the pipeline.

    Only EXTERNAL submissions pass the debounce/throttle gates. The other
    origins are produced by the pipeline itself.
    """

    EXTERNAL = "external"
    DEBOUNCE_FIRE = "debounce_fire"
    QUEUE_RELEASE = "queue_release"
    RETRY = "retry"
    REFRESH_REPLAY = "refresh_replay"


# -----------------------------------------------------------------------------
# Request
# -----------------------------------------------------------------------------


def _new_request_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass(eq=False)
class RequestConfig:
    """One logical request and its pipeline bookkeeping.

    Usage:
        config = RequestConfig(
            method="GET",
            url="/search",
            params={"q": "shoes"},
            debounce_window=0.3,
            priority=Priority.HIGH,
        )
    """

    method: str = "GET"
    url: str = ""
    params: dict[str, Any] | None = None
    json: Any = None
    headers: dict[str, str] = field(default_factory=dict)

    # Grouping and scheduling
    key: str | None = None
    priority: Priority = Priority.NORMAL
    debounce_window: float | None = None
    throttle_window: float | None = None

    # Retry (None falls back to pipeline defaults)
    retry_budget: int | None = None
    retry_count: int = 0
    retry_delay: float | None = None

    # INHERIT binds to the current scope; None disables auto-cancel
    cancellation: CancellationToken | _Inherit | None = INHERIT

    timeout: float | None = None
    authenticated: bool = True
    notify_errors: bool = True
    is_refresh_call: bool = False

    origin: Origin = Origin.EXTERNAL
    request_id: str = field(default_factory=_new_request_id)

    def __post_init__(self) -> None:
        self.method = self.method.upper()
        if self.key is None:
            self.key = f"{self.method} {self.url}"
        self.priority = Priority(self.priority)
        for name in ("debounce_window", "throttle_window", "retry_delay", "timeout"):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ValueError(f"{name} must be non-negative, got {value}")
        if self.retry_budget is not None and self.retry_budget < 0:
            raise ValueError(f"retry_budget must be non-negative, got {self.retry_budget}")

    @property
    def is_internal(self) -> bool:
        """True for submissions produced by the pipeline itself."""
        return self.origin is not Origin.EXTERNAL

    @property
    def token(self) -> CancellationToken | None:
        """The bound cancellation token, if any."""
        if isinstance(self.cancellation, CancellationToken):
            return self.cancellation
        return None


# -----------------------------------------------------------------------------
# Response Models
# -----------------------------------------------------------------------------


class Outcome(BaseModel):
    """Transport response: status, decoded body and headers."""

    model_config = ConfigDict(frozen=True)

    status: int
    body: Any = None
    headers: dict[str, str] = Field(default_factory=dict)

    @property
    def is_success(self) -> bool:
        return 200 <= self.status < 300


class TokenResponse(BaseModel):
    """Response from the token endpoint (password or refresh grant).

    Accepts the snake_case OAuth2 field names as well as the camelCase
    ones some backends return, optionally wrapped in a "data" envelope.
    """

    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(
        min_length=1,
        validation_alias=AliasChoices("access_token", "accessToken", "token"),
    )
    refresh_token: str | None = Field(
        default=None,
        validation_alias=AliasChoices("refresh_token", "refreshToken"),
    )
    token_type: str = "Bearer"
    expires_in: int | None = Field(default=None, description="Token lifetime in seconds")

    @classmethod
    def from_body(cls, body: Any) -> "TokenResponse":
        """Validate a response body, unwrapping a {"data": {...}} envelope."""
        if isinstance(body, dict) and isinstance(body.get("data"), dict):
            body = body["data"]
        return cls.model_validate(body)
