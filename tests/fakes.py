"""In-memory doubles for the storage contracts and the Google client.

The repositories implement the same contracts as the asyncpg ones, including
the conditional semantics (delete reports whether a row existed, the
appointment id write only succeeds once), so domain tests exercise the real
components end to end without a database or network.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from typing import Any

from calsync.config import GoogleConfig, SyncConfig, SyncSettings
from calsync.errors import ProviderUnavailableError
from calsync.models import (
    Appointment,
    CreatedEvent,
    Credential,
    MirrorEvent,
    RunStatus,
    SyncRunRecord,
    TokenGrant,
)
from calsync.storage import (
    AppointmentRepository,
    CredentialRepository,
    EventMirrorRepository,
    StorageError,
    SyncRunRepository,
)

NOW = datetime(2026, 3, 10, 12, 0, 0, tzinfo=UTC)


class FixedClock:
    """Callable clock that tests can move forward."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


def make_config(**sync_overrides: Any) -> SyncConfig:
    return SyncConfig(
        google=GoogleConfig(client_id="client-id", client_secret="client-secret"),
        sync=SyncSettings(**sync_overrides),
    )


def make_credential(
    tenant_id: str = "tenant-a",
    *,
    expires_at: datetime | None = None,
    refresh_token: str = "refresh-token",
    is_active: bool = True,
    last_sync_at: datetime | None = None,
    default_calendar_id: str | None = "primary",
) -> Credential:
    return Credential(
        id=f"cred-{tenant_id}",
        tenant_id=tenant_id,
        access_token="cached-token",
        refresh_token=refresh_token,
        token_expires_at=expires_at or NOW + timedelta(hours=1),
        default_calendar_id=default_calendar_id,
        is_active=is_active,
        last_sync_at=last_sync_at,
    )


def google_event(
    event_id: str,
    *,
    status: str = "confirmed",
    summary: str | None = "Meeting",
    start: datetime | None = None,
    minutes: int = 30,
    **extra: Any,
) -> dict[str, Any]:
    """Build a Google ``events`` resource payload."""
    payload: dict[str, Any] = {"id": event_id, "status": status}
    if summary is not None:
        payload["summary"] = summary
    if start is not None or status != "cancelled":
        begin = start or NOW + timedelta(days=1)
        payload["start"] = {"dateTime": begin.isoformat(), "timeZone": "UTC"}
        payload["end"] = {
            "dateTime": (begin + timedelta(minutes=minutes)).isoformat(),
            "timeZone": "UTC",
        }
    payload.update(extra)
    return payload


def make_appointment(
    appointment_id: str = "appt-1",
    tenant_id: str = "tenant-a",
    *,
    start: datetime | None = None,
    status: str = "scheduled",
    external_event_id: str | None = None,
    **extra: Any,
) -> Appointment:
    begin = start or NOW + timedelta(days=1)
    return Appointment(
        id=appointment_id,
        tenant_id=tenant_id,
        start_time=begin,
        end_time=begin + timedelta(hours=1),
        status=status,
        service_name=extra.pop("service_name", "Haircut"),
        client_name=extra.pop("client_name", "Ana"),
        external_event_id=external_event_id,
        **extra,
    )


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------


class InMemoryCredentialRepository(CredentialRepository):
    def __init__(self, *credentials: Credential) -> None:
        self.rows: dict[str, Credential] = {c.tenant_id: c for c in credentials}
        self.token_updates: list[tuple[str, str, datetime]] = []
        self.deactivated: list[str] = []
        self.synced: list[tuple[str, datetime]] = []
        self.fail_mark_synced = False

    def _by_id(self, credential_id: str) -> Credential | None:
        return next((c for c in self.rows.values() if c.id == credential_id), None)

    async def get_active(self, tenant_id: str) -> Credential | None:
        credential = self.rows.get(tenant_id)
        if credential is None or not credential.is_active:
            return None
        return credential

    async def update_access_token(
        self, credential_id: str, access_token: str, expires_at: datetime
    ) -> None:
        self.token_updates.append((credential_id, access_token, expires_at))
        credential = self._by_id(credential_id)
        if credential is not None:
            self.rows[credential.tenant_id] = credential.model_copy(
                update={"access_token": access_token, "token_expires_at": expires_at}
            )

    async def deactivate(self, credential_id: str) -> None:
        self.deactivated.append(credential_id)
        credential = self._by_id(credential_id)
        if credential is not None:
            self.rows[credential.tenant_id] = credential.model_copy(update={"is_active": False})

    async def mark_synced(self, credential_id: str, synced_at: datetime) -> None:
        if self.fail_mark_synced:
            raise StorageError("credential.mark_synced", "connection reset")
        self.synced.append((credential_id, synced_at))
        credential = self._by_id(credential_id)
        if credential is not None:
            self.rows[credential.tenant_id] = credential.model_copy(
                update={"last_sync_at": synced_at}
            )

    async def delete(self, tenant_id: str) -> bool:
        return self.rows.pop(tenant_id, None) is not None

    async def list_active_tenants(self) -> list[str]:
        return sorted(t for t, c in self.rows.items() if c.is_active)


class InMemoryEventMirror(EventMirrorRepository):
    def __init__(self, *rows: MirrorEvent) -> None:
        self.rows: dict[tuple[str, str], MirrorEvent] = {row.key: row for row in rows}
        self.fail_on: set[str] = set()
        self.upserts = 0

    async def upsert(self, event: MirrorEvent) -> None:
        if event.external_event_id in self.fail_on:
            raise StorageError("event_mirror.upsert", "value too long for type")
        self.upserts += 1
        self.rows[event.key] = event

    async def delete(self, tenant_id: str, external_event_id: str) -> bool:
        return self.rows.pop((tenant_id, external_event_id), None) is not None

    async def list_for_tenant(self, tenant_id: str) -> list[MirrorEvent]:
        rows = [row for (tenant, _), row in self.rows.items() if tenant == tenant_id]
        return sorted(rows, key=lambda r: (r.start_time, r.external_event_id))


class InMemoryAppointments(AppointmentRepository):
    def __init__(self, *appointments: Appointment) -> None:
        self.rows: dict[str, Appointment] = {a.id: a for a in appointments}
        self.fail_set_for: set[str] = set()

    async def list_unmirrored(
        self,
        tenant_id: str,
        *,
        statuses: Iterable[str],
        starts_after: datetime,
    ) -> list[Appointment]:
        wanted = set(statuses)
        return sorted(
            (
                a
                for a in self.rows.values()
                if a.tenant_id == tenant_id
                and a.external_event_id is None
                and a.status in wanted
                and a.start_time >= starts_after
            ),
            key=lambda a: (a.start_time, a.id),
        )

    async def set_external_event_id(self, appointment_id: str, external_event_id: str) -> bool:
        if appointment_id in self.fail_set_for:
            raise StorageError("appointment.set_external_event_id", "connection reset")
        appointment = self.rows[appointment_id]
        if appointment.external_event_id is not None:
            return False
        self.rows[appointment_id] = appointment.model_copy(
            update={"external_event_id": external_event_id}
        )
        return True


class InMemorySyncRuns(SyncRunRepository):
    def __init__(self) -> None:
        self.records: list[SyncRunRecord] = []
        self.fail_record = False

    async def record(self, run: SyncRunRecord) -> None:
        if self.fail_record:
            raise StorageError("sync_run.record", "relation does not exist")
        self.records.append(run)

    async def last_started_at(self, tenant_id: str) -> datetime | None:
        started = [
            r.started_at
            for r in self.records
            if r.tenant_id == tenant_id and r.status is not RunStatus.skipped
        ]
        return max(started) if started else None


# ---------------------------------------------------------------------------
# Google client
# ---------------------------------------------------------------------------


class FakeCalendarClient:
    """Scripted stand-in for ``GoogleCalendarClient``.

    ``pages`` are returned in order by ``list_events_page``; ``refresh_error``
    and ``create_errors`` (keyed by summary) are raised when set.
    """

    def __init__(
        self,
        *,
        pages: list[dict[str, Any]] | None = None,
        grant: TokenGrant | None = None,
        refresh_error: Exception | None = None,
        list_error: Exception | None = None,
    ) -> None:
        self.pages = list(pages or [{"items": []}])
        self.grant = grant or TokenGrant(access_token="fresh-token", expires_in=3600)
        self.refresh_error = refresh_error
        self.list_error = list_error
        self.create_errors: dict[str, Exception] = {}
        self.refresh_calls: list[str] = []
        self.list_calls: list[dict[str, Any]] = []
        self.created: list[dict[str, Any]] = []
        self.closed = False
        self._next_id = 9

    async def aclose(self) -> None:
        self.closed = True

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        self.refresh_calls.append(refresh_token)
        if self.refresh_error is not None:
            raise self.refresh_error
        return self.grant

    async def list_events_page(self, **kwargs: Any) -> dict[str, Any]:
        self.list_calls.append(kwargs)
        if self.list_error is not None:
            raise self.list_error
        index = min(len(self.list_calls) - 1, len(self.pages) - 1)
        return self.pages[index]

    async def create_event(
        self, *, access_token: str, calendar_id: str, body: dict[str, Any]
    ) -> CreatedEvent:
        error = self.create_errors.get(body.get("summary", ""))
        if error is not None:
            raise error
        self.created.append({"access_token": access_token, "calendar_id": calendar_id, **body})
        event_id = f"e{self._next_id}"
        self._next_id += 1
        return CreatedEvent(id=event_id)


def provider_down(status_code: int = 503) -> ProviderUnavailableError:
    return ProviderUnavailableError("Backend Error", status_code=status_code)
