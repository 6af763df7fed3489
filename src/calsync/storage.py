"""Persistence contracts and their asyncpg implementations.

Four tables back the engine (see ``alembic/versions/calsync``):

- ``calendar_integrations``: one credential per tenant plus the sync checkpoint.
- ``calendar_events``: the remote event mirror, unique on
  ``(tenant_id, external_event_id)``.
- ``appointments``: collaborator-owned; only ``external_event_id`` is written here.
- ``calendar_sync_runs``: append-only audit trail of orchestrator runs.

The uniqueness invariant of the mirror is enforced by the database: upserts are
a single ``INSERT ... ON CONFLICT`` statement and deletes report whether a row
was actually removed.
"""

from __future__ import annotations

import abc
import json
import logging
from collections.abc import AsyncIterator, Iterable, Mapping
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import asyncpg

from calsync.errors import CalendarSyncError
from calsync.models import Appointment, Credential, MirrorEvent, RunStatus, SyncRunRecord

if TYPE_CHECKING:
    from asyncpg.pool import Pool

logger = logging.getLogger(__name__)


class StorageError(CalendarSyncError):
    """Raised when a storage operation fails."""

    def __init__(self, operation: str, message: str) -> None:
        self.operation = operation
        self.message = message
        super().__init__(f"Storage operation '{operation}' failed: {message}")


# ---------------------------------------------------------------------------
# Contracts
# ---------------------------------------------------------------------------


class CredentialRepository(abc.ABC):
    """Credential Store collaborator."""

    @abc.abstractmethod
    async def get_active(self, tenant_id: str) -> Credential | None:
        """Return the tenant's active credential, or ``None``."""

    @abc.abstractmethod
    async def update_access_token(
        self, credential_id: str, access_token: str, expires_at: datetime
    ) -> None:
        """Persist a refreshed access token and its expiry together."""

    @abc.abstractmethod
    async def deactivate(self, credential_id: str) -> None:
        """Mark a credential inactive after its refresh token was rejected."""

    @abc.abstractmethod
    async def mark_synced(self, credential_id: str, synced_at: datetime) -> None:
        """Advance the ``last_sync_at`` checkpoint."""

    @abc.abstractmethod
    async def delete(self, tenant_id: str) -> bool:
        """Remove the tenant's credential (disconnect); True if a row was removed."""

    @abc.abstractmethod
    async def list_active_tenants(self) -> list[str]:
        """Return tenant ids that have an active credential."""


class EventMirrorRepository(abc.ABC):
    """Remote Event Mirror table."""

    @abc.abstractmethod
    async def upsert(self, event: MirrorEvent) -> None:
        """Insert or replace the row keyed by ``(tenant_id, external_event_id)``."""

    @abc.abstractmethod
    async def delete(self, tenant_id: str, external_event_id: str) -> bool:
        """Delete the keyed row; True only if a row was actually removed."""

    @abc.abstractmethod
    async def list_for_tenant(self, tenant_id: str) -> list[MirrorEvent]:
        """Return all mirror rows for a tenant ordered by start time."""


class AppointmentRepository(abc.ABC):
    """Read/annotate access to the collaborator's appointments."""

    @abc.abstractmethod
    async def list_unmirrored(
        self,
        tenant_id: str,
        *,
        statuses: Iterable[str],
        starts_after: datetime,
    ) -> list[Appointment]:
        """Appointments with no external id, an active status, and a future start."""

    @abc.abstractmethod
    async def set_external_event_id(self, appointment_id: str, external_event_id: str) -> bool:
        """Record the remote id once; False if the appointment already had one."""


class SyncRunRepository(abc.ABC):
    """Append-only Sync Run Record trail."""

    @abc.abstractmethod
    async def record(self, run: SyncRunRecord) -> None:
        """Append one run record."""

    @abc.abstractmethod
    async def last_started_at(self, tenant_id: str) -> datetime | None:
        """Start time of the most recent non-skipped run for the tenant."""


# ---------------------------------------------------------------------------
# asyncpg implementations
# ---------------------------------------------------------------------------


@asynccontextmanager
async def _translate_errors(operation: str) -> AsyncIterator[None]:
    try:
        yield
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
        raise StorageError(operation, f"{type(exc).__name__}: {exc}") from exc


def _ensure_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _decode_jsonb(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return []
    return value


def _row_to_credential(row: Mapping[str, Any]) -> Credential:
    return Credential(
        id=str(row["id"]),
        tenant_id=row["tenant_id"],
        access_token=row["access_token"],
        refresh_token=row["refresh_token"],
        token_expires_at=_ensure_utc(row["token_expires_at"]),
        default_calendar_id=row["default_calendar_id"],
        is_active=row["is_active"],
        last_sync_at=_ensure_utc(row["last_sync_at"]),
    )


def _row_to_mirror_event(row: Mapping[str, Any]) -> MirrorEvent:
    attendees = _decode_jsonb(row["attendees"])
    return MirrorEvent(
        tenant_id=row["tenant_id"],
        external_event_id=row["external_event_id"],
        integration_id=str(row["integration_id"]) if row["integration_id"] is not None else None,
        calendar_id=row["calendar_id"],
        title=row["title"],
        description=row["description"],
        location=row["location"],
        start_time=_ensure_utc(row["start_time"]),
        end_time=_ensure_utc(row["end_time"]),
        is_all_day=row["is_all_day"],
        timezone=row["timezone"],
        status=row["status"],
        etag=row["etag"],
        html_link=row["html_link"],
        meet_link=row["meet_link"],
        attendees=attendees if isinstance(attendees, list) else [],
        recurrence_rule=row["recurrence_rule"],
        recurring_event_id=row["recurring_event_id"],
        last_synced_at=_ensure_utc(row["last_synced_at"]),
    )


def _row_to_appointment(row: Mapping[str, Any]) -> Appointment:
    return Appointment(
        id=str(row["id"]),
        tenant_id=row["tenant_id"],
        start_time=_ensure_utc(row["start_time"]),
        end_time=_ensure_utc(row["end_time"]),
        status=row["status"],
        service_name=row["service_name"],
        client_name=row["client_name"],
        client_phone=row["client_phone"],
        notes=row["notes"],
        location=row["location"],
        timezone=row["timezone"],
        external_event_id=row["external_event_id"],
    )


class PostgresCredentialRepository(CredentialRepository):
    def __init__(self, pool: Pool) -> None:
        self._pool = pool

    async def get_active(self, tenant_id: str) -> Credential | None:
        async with _translate_errors("credential.get_active"):
            row = await self._pool.fetchrow(
                """
                SELECT id, tenant_id, access_token, refresh_token, token_expires_at,
                       default_calendar_id, is_active, last_sync_at
                FROM calendar_integrations
                WHERE tenant_id = $1 AND is_active = true
                """,
                tenant_id,
            )
        return _row_to_credential(row) if row is not None else None

    async def update_access_token(
        self, credential_id: str, access_token: str, expires_at: datetime
    ) -> None:
        async with _translate_errors("credential.update_access_token"):
            await self._pool.execute(
                """
                UPDATE calendar_integrations
                SET access_token = $2, token_expires_at = $3, updated_at = now()
                WHERE id = $1::uuid
                """,
                credential_id,
                access_token,
                expires_at,
            )

    async def deactivate(self, credential_id: str) -> None:
        async with _translate_errors("credential.deactivate"):
            await self._pool.execute(
                """
                UPDATE calendar_integrations
                SET is_active = false, updated_at = now()
                WHERE id = $1::uuid
                """,
                credential_id,
            )

    async def mark_synced(self, credential_id: str, synced_at: datetime) -> None:
        async with _translate_errors("credential.mark_synced"):
            await self._pool.execute(
                """
                UPDATE calendar_integrations
                SET last_sync_at = $2, updated_at = now()
                WHERE id = $1::uuid
                """,
                credential_id,
                synced_at,
            )

    async def delete(self, tenant_id: str) -> bool:
        async with _translate_errors("credential.delete"):
            row = await self._pool.fetchrow(
                "DELETE FROM calendar_integrations WHERE tenant_id = $1 RETURNING id",
                tenant_id,
            )
        return row is not None

    async def list_active_tenants(self) -> list[str]:
        async with _translate_errors("credential.list_active_tenants"):
            rows = await self._pool.fetch(
                """
                SELECT tenant_id FROM calendar_integrations
                WHERE is_active = true
                ORDER BY tenant_id
                """
            )
        return [row["tenant_id"] for row in rows]


class PostgresEventMirrorRepository(EventMirrorRepository):
    def __init__(self, pool: Pool) -> None:
        self._pool = pool

    async def upsert(self, event: MirrorEvent) -> None:
        async with _translate_errors("event_mirror.upsert"):
            await self._pool.execute(
                """
                INSERT INTO calendar_events (
                    tenant_id, external_event_id, integration_id, calendar_id,
                    title, description, location, start_time, end_time,
                    is_all_day, timezone, status, etag, html_link, meet_link,
                    attendees, recurrence_rule, recurring_event_id, last_synced_at
                )
                VALUES (
                    $1, $2, $3::uuid, $4,
                    $5, $6, $7, $8, $9,
                    $10, $11, $12, $13, $14, $15,
                    $16::jsonb, $17, $18, $19
                )
                ON CONFLICT (tenant_id, external_event_id) DO UPDATE SET
                    integration_id = EXCLUDED.integration_id,
                    calendar_id = EXCLUDED.calendar_id,
                    title = EXCLUDED.title,
                    description = EXCLUDED.description,
                    location = EXCLUDED.location,
                    start_time = EXCLUDED.start_time,
                    end_time = EXCLUDED.end_time,
                    is_all_day = EXCLUDED.is_all_day,
                    timezone = EXCLUDED.timezone,
                    status = EXCLUDED.status,
                    etag = EXCLUDED.etag,
                    html_link = EXCLUDED.html_link,
                    meet_link = EXCLUDED.meet_link,
                    attendees = EXCLUDED.attendees,
                    recurrence_rule = EXCLUDED.recurrence_rule,
                    recurring_event_id = EXCLUDED.recurring_event_id,
                    last_synced_at = EXCLUDED.last_synced_at,
                    updated_at = now()
                """,
                event.tenant_id,
                event.external_event_id,
                event.integration_id,
                event.calendar_id,
                event.title,
                event.description,
                event.location,
                event.start_time,
                event.end_time,
                event.is_all_day,
                event.timezone,
                event.status,
                event.etag,
                event.html_link,
                event.meet_link,
                json.dumps(event.attendees),
                event.recurrence_rule,
                event.recurring_event_id,
                event.last_synced_at,
            )

    async def delete(self, tenant_id: str, external_event_id: str) -> bool:
        async with _translate_errors("event_mirror.delete"):
            row = await self._pool.fetchrow(
                """
                DELETE FROM calendar_events
                WHERE tenant_id = $1 AND external_event_id = $2
                RETURNING id
                """,
                tenant_id,
                external_event_id,
            )
        return row is not None

    async def list_for_tenant(self, tenant_id: str) -> list[MirrorEvent]:
        async with _translate_errors("event_mirror.list_for_tenant"):
            rows = await self._pool.fetch(
                """
                SELECT tenant_id, external_event_id, integration_id, calendar_id,
                       title, description, location, start_time, end_time,
                       is_all_day, timezone, status, etag, html_link, meet_link,
                       attendees, recurrence_rule, recurring_event_id, last_synced_at
                FROM calendar_events
                WHERE tenant_id = $1
                ORDER BY start_time, external_event_id
                """,
                tenant_id,
            )
        return [_row_to_mirror_event(row) for row in rows]


class PostgresAppointmentRepository(AppointmentRepository):
    def __init__(self, pool: Pool) -> None:
        self._pool = pool

    async def list_unmirrored(
        self,
        tenant_id: str,
        *,
        statuses: Iterable[str],
        starts_after: datetime,
    ) -> list[Appointment]:
        async with _translate_errors("appointment.list_unmirrored"):
            rows = await self._pool.fetch(
                """
                SELECT id, tenant_id, start_time, end_time, status, service_name,
                       client_name, client_phone, notes, location, timezone,
                       external_event_id
                FROM appointments
                WHERE tenant_id = $1
                  AND external_event_id IS NULL
                  AND status = ANY($2::text[])
                  AND start_time >= $3
                ORDER BY start_time, id
                """,
                tenant_id,
                list(statuses),
                starts_after,
            )
        return [_row_to_appointment(row) for row in rows]

    async def set_external_event_id(self, appointment_id: str, external_event_id: str) -> bool:
        async with _translate_errors("appointment.set_external_event_id"):
            row = await self._pool.fetchrow(
                """
                UPDATE appointments
                SET external_event_id = $2, updated_at = now()
                WHERE id = $1::uuid AND external_event_id IS NULL
                RETURNING id
                """,
                appointment_id,
                external_event_id,
            )
        return row is not None


class PostgresSyncRunRepository(SyncRunRepository):
    def __init__(self, pool: Pool) -> None:
        self._pool = pool

    async def record(self, run: SyncRunRecord) -> None:
        async with _translate_errors("sync_run.record"):
            await self._pool.execute(
                """
                INSERT INTO calendar_sync_runs (
                    tenant_id, started_at, finished_at, status, synced_count,
                    deleted_count, pushed_count, push_failures, requires_reconnect, error
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                """,
                run.tenant_id,
                run.started_at,
                run.finished_at,
                run.status.value,
                run.synced_count,
                run.deleted_count,
                run.pushed_count,
                run.push_failures,
                run.requires_reconnect,
                run.error,
            )

    async def last_started_at(self, tenant_id: str) -> datetime | None:
        async with _translate_errors("sync_run.last_started_at"):
            value = await self._pool.fetchval(
                """
                SELECT max(started_at) FROM calendar_sync_runs
                WHERE tenant_id = $1 AND status <> $2
                """,
                tenant_id,
                RunStatus.skipped.value,
            )
        return _ensure_utc(value)
