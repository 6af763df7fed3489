"""Appointment Pusher: mirror never-pushed local appointments to the remote calendar.

The returned external id is written onto the appointment immediately after each
successful create, before the next appointment is attempted.  A failure on one
appointment is logged and the loop moves on.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from calsync.errors import ProviderUnavailableError, PushFailureError
from calsync.google import GoogleCalendarClient, google_rfc3339
from calsync.metrics import appointments_pushed_total
from calsync.models import Appointment, utcnow
from calsync.storage import AppointmentRepository, StorageError

logger = logging.getLogger(__name__)

DEFAULT_SERVICE_TITLE = "Appointment"


@dataclass
class PushResult:
    pushed: int = 0
    failures: list[PushFailureError] = field(default_factory=list)


def build_event_body(appointment: Appointment, *, default_timezone: str) -> dict[str, Any]:
    """Build the provider event-create payload for *appointment*."""
    service = (appointment.service_name or "").strip() or DEFAULT_SERVICE_TITLE
    client = (appointment.client_name or "").strip()
    summary = f"{service} - {client}" if client else service

    description_lines = [
        f"{label}: {value.strip()}"
        for label, value in (
            ("Client", appointment.client_name),
            ("Phone", appointment.client_phone),
            ("Notes", appointment.notes),
        )
        if value and value.strip()
    ]
    timezone = appointment.timezone or default_timezone

    body: dict[str, Any] = {
        "summary": summary,
        "description": "\n".join(description_lines),
        "start": {"dateTime": google_rfc3339(appointment.start_time), "timeZone": timezone},
        "end": {"dateTime": google_rfc3339(appointment.end_time), "timeZone": timezone},
    }
    if appointment.location and appointment.location.strip():
        body["location"] = appointment.location.strip()
    return body


class AppointmentPusher:
    def __init__(
        self,
        appointments: AppointmentRepository,
        client: GoogleCalendarClient,
        *,
        active_statuses: Iterable[str],
        default_timezone: str,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._appointments = appointments
        self._client = client
        self._active_statuses = tuple(active_statuses)
        self._default_timezone = default_timezone
        self._clock = clock

    async def push_unmirrored(
        self,
        tenant_id: str,
        access_token: str,
        calendar_id: str,
    ) -> PushResult:
        """Create a remote event for each unmirrored active future appointment.

        Listing the candidates is a step-level failure and propagates as
        ``StorageError``; per-appointment failures are collected in the result.
        """
        candidates = await self._appointments.list_unmirrored(
            tenant_id,
            statuses=self._active_statuses,
            starts_after=self._clock(),
        )
        result = PushResult()

        for appointment in candidates:
            if appointment.external_event_id:
                continue
            try:
                await self._push_one(appointment, access_token, calendar_id)
            except PushFailureError as exc:
                logger.warning(
                    "Push failed for appointment %s (tenant %s): %s",
                    appointment.id,
                    tenant_id,
                    exc.message,
                )
                appointments_pushed_total.labels(result="failed").inc()
                result.failures.append(exc)
                continue
            result.pushed += 1
            appointments_pushed_total.labels(result="success").inc()

        if candidates:
            logger.info(
                "Pushed %d of %d appointment(s) for tenant %s",
                result.pushed,
                len(candidates),
                tenant_id,
            )
        return result

    async def _push_one(self, appointment: Appointment, access_token: str, calendar_id: str) -> None:
        body = build_event_body(appointment, default_timezone=self._default_timezone)
        try:
            created = await self._client.create_event(
                access_token=access_token,
                calendar_id=calendar_id,
                body=body,
            )
        except ProviderUnavailableError as exc:
            raise PushFailureError(appointment.id, exc.message) from exc

        try:
            recorded = await self._appointments.set_external_event_id(appointment.id, created.id)
        except StorageError as exc:
            logger.error(
                "Remote event %s created but not recorded on appointment %s",
                created.id,
                appointment.id,
            )
            raise PushFailureError(appointment.id, exc.message) from exc

        if not recorded:
            logger.warning(
                "Appointment %s was mirrored concurrently; remote event %s is a duplicate",
                appointment.id,
                created.id,
            )
            raise PushFailureError(appointment.id, "appointment already has an external event id")
        logger.debug("Appointment %s mirrored as remote event %s", appointment.id, created.id)
