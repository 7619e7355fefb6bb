"""Core type definitions."""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping


PROVIDERS = ("aws", "azure")

# Resource categories enabled when the caller does not pick any
DEFAULT_TARGETS: dict[str, dict[str, bool]] = {
    "aws": {
        "users": True,
        "groups": True,
        "roles": False,
        "policies": False,
        "attachments": True,
    },
    "azure": {
        "role_definitions": True,
        "role_assignments": True,
    },
}

# Optional fields serialized only when set
_OPTIONAL_FIELDS = (
    "account_id",
    "profile",
    "assume_role_arn",
    "assume_role_session_name",
    "subscription_id",
    "tenant_id",
    "auth_method",
    "scope_type",
    "scope_value",
)


class ScanClientError(Exception):
    """Base class for scan client errors."""

    pass


class ConfigError(ScanClientError):
    """Raised when client settings are invalid."""

    pass


class ApiError(ScanClientError):
    """Raised when the scan API answers with an error."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        code: str | None = None,
        details: Any = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code
        self.details = details


class StreamUnavailableError(ScanClientError):
    """Raised when the progress stream could not be established."""

    pass


class DecodeError(ScanClientError):
    """Raised when a frame payload cannot be turned into an event."""

    def __init__(self, message: str, frame: str = ""):
        super().__init__(message)
        self.frame = frame


class StateTransitionError(ScanClientError):
    """Raised when invalid state transition is attempted."""

    pass


@dataclass(frozen=True)
class ScanConfig:
    """What to scan. Built once before a session starts, never mutated."""

    provider: str
    scan_targets: Mapping[str, bool] = field(default_factory=dict)
    filters: Mapping[str, str] = field(default_factory=dict)
    include_tags: bool = True
    # AWS
    account_id: str | None = None
    profile: str | None = None
    assume_role_arn: str | None = None
    assume_role_session_name: str | None = None
    # Azure
    subscription_id: str | None = None
    tenant_id: str | None = None
    auth_method: str | None = None  # "az_login"|"service_principal"
    scope_type: str | None = None  # "management_group"|"subscription"|"resource_group"
    scope_value: str | None = None

    def __post_init__(self) -> None:
        if self.provider not in PROVIDERS:
            raise ValueError(
                f"Unsupported provider: {self.provider!r} "
                f"(expected one of {', '.join(PROVIDERS)})"
            )
        targets = self.scan_targets or DEFAULT_TARGETS[self.provider]
        # frozen dataclass: bypass __setattr__; keep read-only copies of the caller's dicts
        object.__setattr__(self, "scan_targets", MappingProxyType(dict(targets)))
        object.__setattr__(self, "filters", MappingProxyType(dict(self.filters)))
        if not any(self.scan_targets.values()):
            raise ValueError("At least one scan target must be enabled")

    @classmethod
    def for_provider(
        cls, provider: str, name_prefix: str | None = None, **fields: Any
    ) -> "ScanConfig":
        """Build a config the way the scan form does."""
        filters = dict(fields.pop("filters", None) or {})
        if name_prefix:
            filters["name_prefix"] = name_prefix
        return cls(provider=provider, filters=filters, **fields)

    @property
    def enabled_targets(self) -> list[str]:
        return [name for name, on in self.scan_targets.items() if on]

    def to_payload(self) -> dict[str, Any]:
        """Serialize to the wire shape, omitting unset optional fields."""
        payload: dict[str, Any] = {
            "provider": self.provider,
            "scan_targets": dict(self.scan_targets),
            "filters": dict(self.filters),
            "include_tags": self.include_tags,
        }
        for name in _OPTIONAL_FIELDS:
            value = getattr(self, name)
            if value:
                payload[name] = value
        return payload


class EventKind(Enum):
    """Progress event variants."""

    PROGRESS = "progress"
    RESOURCE = "resource"
    COMPLETED = "completed"
    ERROR = "error"


TERMINAL_KINDS = frozenset({EventKind.COMPLETED, EventKind.ERROR})


@dataclass(frozen=True)
class ProgressEvent:
    """One progress report for a scan job, from either delivery mechanism."""

    kind: EventKind
    job_id: str
    percent: int = 0
    message: str = ""
    resource_type: str | None = None
    resource_count: int | None = None
    source: str = "stream"  # "stream"|"polling"

    @property
    def is_terminal(self) -> bool:
        return self.kind in TERMINAL_KINDS

    @property
    def display_message(self) -> str:
        if (
            self.kind is EventKind.RESOURCE
            and self.resource_type
            and self.resource_count is not None
        ):
            return f"{self.resource_type}: {self.resource_count} found"
        return self.message


@dataclass(frozen=True)
class StatusSnapshot:
    """Job status as returned by the status endpoint."""

    job_id: str
    status: str  # "running"|"completed"|"failed"|"error"
    percent: int = 0
    message: str = ""
    summary: dict[str, int] | None = None


class SessionState(Enum):
    """Scan session states."""

    IDLE = "idle"
    STREAMING = "streaming"
    POLLING = "polling"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset(
    {SessionState.COMPLETED, SessionState.FAILED, SessionState.CANCELLED}
)

# Valid state transitions
VALID_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.IDLE: {
        SessionState.STREAMING,
        SessionState.POLLING,  # stream disabled in settings
        SessionState.CANCELLED,
    },
    SessionState.STREAMING: {
        SessionState.POLLING,  # the only lateral move
        SessionState.COMPLETED,
        SessionState.FAILED,
        SessionState.CANCELLED,
    },
    SessionState.POLLING: {
        SessionState.COMPLETED,
        SessionState.FAILED,
        SessionState.CANCELLED,
    },
    SessionState.COMPLETED: set(),  # Terminal state
    SessionState.FAILED: set(),  # Terminal state
    SessionState.CANCELLED: set(),  # Terminal state
}
