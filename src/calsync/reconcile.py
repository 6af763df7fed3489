"""Reconciliation Engine: merge fetched remote events into the local mirror.

Per remote event:

- cancelled: delete the mirror row keyed by ``(tenant_id, event.id)``; count it
  only when a row was actually removed.
- otherwise: upsert the row with the normalized fields; always counted.

Every write is keyed by the external id, so the final table state does not
depend on the order events are processed in.  The first failure aborts the
whole batch; nothing is skipped silently.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from calsync.errors import ReconciliationConflictError
from calsync.metrics import events_deleted_total, events_synced_total
from calsync.models import UNTITLED_EVENT_TITLE, EventTime, MirrorEvent, RemoteEvent, utcnow
from calsync.storage import EventMirrorRepository, StorageError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcileResult:
    synced: int
    deleted: int


def _coerce_zoneinfo(timezone: str) -> ZoneInfo | tzinfo:
    try:
        return ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        return UTC


def _boundary_to_datetime(boundary: EventTime, timezone: str) -> datetime:
    if boundary.day is None:
        return boundary.date_time
    # All-day boundaries are kept on the provider's date; an exclusive end stays exclusive.
    return datetime(
        boundary.day.year,
        boundary.day.month,
        boundary.day.day,
        tzinfo=_coerce_zoneinfo(timezone),
    )


def to_mirror_event(
    tenant_id: str,
    event: RemoteEvent,
    *,
    calendar_id: str,
    default_timezone: str,
    synced_at: datetime,
    integration_id: str | None = None,
) -> MirrorEvent:
    """Normalize a non-cancelled remote event into a mirror row."""
    if event.start is None or event.end is None:
        raise ReconciliationConflictError(event.id, "event is missing start or end")

    timezone = event.start.time_zone or event.end.time_zone or default_timezone
    start_time = _boundary_to_datetime(event.start, timezone)
    end_time = _boundary_to_datetime(event.end, timezone)
    if end_time < start_time:
        raise ReconciliationConflictError(event.id, "event ends before it starts")

    return MirrorEvent(
        tenant_id=tenant_id,
        external_event_id=event.id,
        integration_id=integration_id,
        calendar_id=calendar_id,
        title=event.summary or UNTITLED_EVENT_TITLE,
        description=event.description,
        location=event.location,
        start_time=start_time,
        end_time=end_time,
        is_all_day=event.start.is_all_day,
        timezone=timezone,
        status=event.status,
        etag=event.etag,
        html_link=event.html_link,
        meet_link=event.hangout_link,
        attendees=[dict(attendee) for attendee in event.attendees],
        recurrence_rule=event.recurrence[0] if event.recurrence else None,
        recurring_event_id=event.recurring_event_id,
        last_synced_at=synced_at,
    )


class Reconciler:
    def __init__(
        self,
        events: EventMirrorRepository,
        *,
        default_timezone: str,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._events = events
        self._default_timezone = default_timezone
        self._clock = clock

    async def reconcile(
        self,
        tenant_id: str,
        remote_events: Iterable[RemoteEvent],
        *,
        calendar_id: str,
        integration_id: str | None = None,
    ) -> ReconcileResult:
        """Apply *remote_events* to the tenant's mirror.

        Raises
        ------
        ReconciliationConflictError
            A record is malformed or the store rejected a write.  Rows written
            before the failure stay in place; they are idempotent and the
            unchanged checkpoint makes the next run cover them again.
        """
        synced = 0
        deleted = 0
        synced_at = self._clock()

        for event in remote_events:
            try:
                if event.is_cancelled:
                    if await self._events.delete(tenant_id, event.id):
                        deleted += 1
                        logger.info("Removed cancelled event %s for tenant %s", event.id, tenant_id)
                    continue

                row = to_mirror_event(
                    tenant_id,
                    event,
                    calendar_id=calendar_id,
                    default_timezone=self._default_timezone,
                    synced_at=synced_at,
                    integration_id=integration_id,
                )
                await self._events.upsert(row)
                synced += 1
            except ReconciliationConflictError:
                logger.error(
                    "Reconciliation aborted for tenant %s at event %s", tenant_id, event.id
                )
                raise
            except StorageError as exc:
                logger.error(
                    "Reconciliation aborted for tenant %s at event %s: %s",
                    tenant_id,
                    event.id,
                    exc.message,
                )
                raise ReconciliationConflictError(event.id, exc.message) from exc

        events_synced_total.inc(synced)
        events_deleted_total.inc(deleted)
        return ReconcileResult(synced=synced, deleted=deleted)
