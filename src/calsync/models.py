"""Domain models shared by the sync components.

Provider payloads are normalized into ``RemoteEvent`` at the fetch boundary;
``MirrorEvent`` is the row shape persisted per ``(tenant_id, external_event_id)``.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

UNTITLED_EVENT_TITLE = "(untitled)"
EVENT_STATUS_CONFIRMED = "confirmed"
EVENT_STATUS_CANCELLED = "cancelled"


def utcnow() -> datetime:
    return datetime.now(UTC)


class SyncState(StrEnum):
    """Orchestrator state machine positions."""

    idle = "idle"
    token_resolving = "token_resolving"
    fetching = "fetching"
    reconciling = "reconciling"
    pushing = "pushing"
    checkpointing = "checkpointing"
    done = "done"
    failed = "failed"


class RunStatus(StrEnum):
    """Persisted outcome of one orchestrator invocation."""

    done = "done"
    failed = "failed"
    skipped = "skipped"


class Credential(BaseModel):
    """Stored OAuth credential and sync cursor for one tenant."""

    id: str
    tenant_id: str
    access_token: str
    refresh_token: str
    token_expires_at: datetime
    default_calendar_id: str | None = None
    is_active: bool = True
    last_sync_at: datetime | None = None

    def __repr__(self) -> str:
        return (
            f"Credential(id={self.id!r}, tenant_id={self.tenant_id!r}, "
            f"access_token=<REDACTED>, refresh_token=<REDACTED>, "
            f"token_expires_at={self.token_expires_at!r}, is_active={self.is_active!r})"
        )

    __str__ = __repr__


class TokenGrant(BaseModel):
    """Result of a refresh-token exchange."""

    access_token: str = Field(min_length=1)
    expires_in: int = Field(gt=0)

    def expires_at(self, now: datetime) -> datetime:
        return now + timedelta(seconds=self.expires_in)


def _parse_rfc3339(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"invalid dateTime value: {value}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


class EventTime(BaseModel):
    """One boundary (start or end) of a provider event.

    Exactly one of ``date_time`` or ``day`` is set.  A boundary with only a
    ``day`` is all-day; for ends, the day is exclusive per the provider.
    """

    model_config = ConfigDict(frozen=True)

    date_time: datetime | None = None
    day: date | None = None
    time_zone: str | None = None

    @model_validator(mode="after")
    def _validate_shape(self) -> EventTime:
        if (self.date_time is None) == (self.day is None):
            raise ValueError("exactly one of dateTime or date must be provided")
        return self

    @property
    def is_all_day(self) -> bool:
        return self.date_time is None and self.day is not None

    @classmethod
    def from_google(cls, payload: Any) -> EventTime | None:
        if not isinstance(payload, dict):
            return None
        time_zone = _optional_text(payload.get("timeZone"))
        date_time_raw = _optional_text(payload.get("dateTime"))
        if date_time_raw is not None:
            return cls(date_time=_parse_rfc3339(date_time_raw), time_zone=time_zone)
        date_raw = _optional_text(payload.get("date"))
        if date_raw is not None:
            try:
                parsed = date.fromisoformat(date_raw)
            except ValueError as exc:
                raise ValueError(f"invalid date value: {date_raw}") from exc
            return cls(day=parsed, time_zone=time_zone)
        return None

    def sort_key(self) -> datetime:
        if self.day is not None:
            return datetime(self.day.year, self.day.month, self.day.day, tzinfo=UTC)
        return self.date_time


class RemoteEvent(BaseModel):
    """Normalized provider event, including cancelled (soft-deleted) ones."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    status: str = EVENT_STATUS_CONFIRMED
    summary: str | None = None
    description: str | None = None
    location: str | None = None
    start: EventTime | None = None
    end: EventTime | None = None
    etag: str | None = None
    html_link: str | None = None
    hangout_link: str | None = None
    attendees: tuple[dict[str, Any], ...] = ()
    recurrence: tuple[str, ...] = ()
    recurring_event_id: str | None = None

    @property
    def is_cancelled(self) -> bool:
        return self.status == EVENT_STATUS_CANCELLED

    @classmethod
    def from_google(cls, payload: dict[str, Any]) -> RemoteEvent:
        """Build from a Google ``events`` resource; raises ``ValueError`` on bad shape."""
        event_id = _optional_text(payload.get("id"))
        if event_id is None:
            raise ValueError("event payload is missing a non-empty id")

        status = (_optional_text(payload.get("status")) or EVENT_STATUS_CONFIRMED).lower()

        attendees_raw = payload.get("attendees")
        attendees = (
            tuple(entry for entry in attendees_raw if isinstance(entry, dict))
            if isinstance(attendees_raw, list)
            else ()
        )
        recurrence_raw = payload.get("recurrence")
        recurrence = (
            tuple(line.strip() for line in recurrence_raw if isinstance(line, str) and line.strip())
            if isinstance(recurrence_raw, list)
            else ()
        )

        return cls(
            id=event_id,
            status=status,
            summary=_optional_text(payload.get("summary")),
            description=_optional_text(payload.get("description")),
            location=_optional_text(payload.get("location")),
            start=EventTime.from_google(payload.get("start")),
            end=EventTime.from_google(payload.get("end")),
            etag=_optional_text(payload.get("etag")),
            html_link=_optional_text(payload.get("htmlLink")),
            hangout_link=_optional_text(payload.get("hangoutLink")),
            attendees=attendees,
            recurrence=recurrence,
            recurring_event_id=_optional_text(payload.get("recurringEventId")),
        )


class MirrorEvent(BaseModel):
    """Local cached copy of a remote event, keyed by ``(tenant_id, external_event_id)``."""

    tenant_id: str
    external_event_id: str
    integration_id: str | None = None
    calendar_id: str
    title: str
    description: str | None = None
    location: str | None = None
    start_time: datetime
    end_time: datetime
    is_all_day: bool = False
    timezone: str
    status: str = EVENT_STATUS_CONFIRMED
    etag: str | None = None
    html_link: str | None = None
    meet_link: str | None = None
    attendees: list[dict[str, Any]] = Field(default_factory=list)
    recurrence_rule: str | None = None
    recurring_event_id: str | None = None
    last_synced_at: datetime

    @property
    def key(self) -> tuple[str, str]:
        return (self.tenant_id, self.external_event_id)


class Appointment(BaseModel):
    """Locally-created appointment owned by the booking collaborator."""

    id: str
    tenant_id: str
    start_time: datetime
    end_time: datetime
    status: str
    service_name: str | None = None
    client_name: str | None = None
    client_phone: str | None = None
    notes: str | None = None
    location: str | None = None
    timezone: str | None = None
    external_event_id: str | None = None


class CreatedEvent(BaseModel):
    """Provider response to an event-create call."""

    id: str = Field(min_length=1)
    html_link: str | None = None
    meet_link: str | None = None


class SyncRunRecord(BaseModel):
    """Append-only audit row, one per orchestrator invocation."""

    tenant_id: str
    started_at: datetime
    finished_at: datetime
    status: RunStatus
    synced_count: int = 0
    deleted_count: int = 0
    pushed_count: int = 0
    push_failures: int = 0
    requires_reconnect: bool = False
    error: str | None = None


class SyncOutcome(BaseModel):
    """Terminal result of ``sync_now`` for one tenant."""

    tenant_id: str
    state: SyncState
    status: RunStatus
    synced_events: int = 0
    deleted_events: int = 0
    appointments_pushed: int = 0
    total_events: int = 0
    push_failures: int = 0
    error: str | None = None
    requires_reconnect: bool = False
    skip_reason: str | None = None

    def to_payload(self) -> dict[str, Any]:
        """Render the trigger-surface response shape."""
        if self.status is RunStatus.failed:
            return {"error": self.error, "requires_reconnect": self.requires_reconnect}
        if self.status is RunStatus.skipped:
            return {"success": True, "skipped": True, "reason": self.skip_reason}
        return {
            "success": True,
            "synced_events": self.synced_events,
            "deleted_events": self.deleted_events,
            "appointments_pushed": self.appointments_pushed,
            "total_events": self.total_events,
            "push_failures": self.push_failures,
        }
