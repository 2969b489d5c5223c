from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Mapping, Union

Scalar = Union[str, bool, int]


class JobState:
    QUEUED = "queued"
    PROCESSING = "processing"
    PROCESSED = "processed"
    ERROR = "error"

    ALL = frozenset({QUEUED, PROCESSING, PROCESSED, ERROR})
    ALIVE = frozenset({QUEUED, PROCESSING})
    TERMINAL = frozenset({PROCESSED, ERROR})


# target state -> states it may be entered from
_PREDECESSORS: dict[str, frozenset[str]] = {
    JobState.QUEUED: frozenset(),
    JobState.PROCESSING: frozenset({JobState.QUEUED}),
    JobState.PROCESSED: frozenset({JobState.PROCESSING}),
    JobState.ERROR: frozenset({JobState.QUEUED, JobState.PROCESSING}),
}


def predecessors(state: str) -> frozenset[str]:
    """Return the states from which ``state`` may be entered."""
    if state not in JobState.ALL:
        raise ValueError(f"unknown job state: {state!r}")
    return _PREDECESSORS[state]


def can_transition(current: str, target: str) -> bool:
    return current in predecessors(target)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _frozen(mapping: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping or {}))


@dataclass(frozen=True)
class JobSnapshot:
    """Immutable client-visible view of a job."""

    state: str
    error_code: int | None = None
    error_message: str | None = None
    custom_values: tuple[tuple[str, Scalar], ...] = ()

    def as_dict(self) -> dict[str, object]:
        body: dict[str, object] = {"state": self.state}
        if self.error_code is not None:
            body["errorCode"] = str(self.error_code)
            body["error"] = self.error_message or ""
        for key, value in self.custom_values:
            body[key] = value
        return body


@dataclass(frozen=True)
class JobRecord:
    """State of one conversion job.

    Records are values: stores publish a new record for every change, so a
    reader holding a record never observes a half-applied update.
    """

    id: str
    state: str = JobState.QUEUED
    created_at: datetime = field(default_factory=utcnow)
    error_code: int | None = None
    error_message: str | None = None
    custom_values: Mapping[str, Scalar] = field(default_factory=dict)
    settings: Mapping[str, str] = field(default_factory=dict)
    custom_data: Mapping[str, Any] = field(default_factory=dict)
    callback_url: str | None = None

    def __post_init__(self) -> None:
        if self.state not in JobState.ALL:
            raise ValueError(f"unknown job state: {self.state!r}")
        if (self.state == JobState.ERROR) != (self.error_code is not None):
            raise ValueError("error_code must be set exactly when state is 'error'")
        object.__setattr__(self, "custom_values", _frozen(self.custom_values))
        object.__setattr__(self, "settings", _frozen(self.settings))
        object.__setattr__(self, "custom_data", _frozen(self.custom_data))

    @property
    def alive(self) -> bool:
        return self.state in JobState.ALIVE

    def with_state(self, state: str) -> JobRecord:
        return dataclasses.replace(self, state=state)

    def with_error(self, code: int, message: str | None) -> JobRecord:
        return dataclasses.replace(
            self, state=JobState.ERROR, error_code=int(code), error_message=message or ""
        )

    def with_custom_value(self, key: str, value: Scalar) -> JobRecord:
        values = dict(self.custom_values)
        values[key] = value
        return dataclasses.replace(self, custom_values=values)

    def snapshot(self) -> JobSnapshot:
        return JobSnapshot(
            state=self.state,
            error_code=self.error_code,
            error_message=self.error_message,
            custom_values=tuple(self.custom_values.items()),
        )
