"""Sync Orchestrator: the per-tenant entry point.

Sequences one run as a small state machine::

    idle -> token_resolving -> fetching -> reconciling -> pushing -> checkpointing -> done
                 \\______________\\_____________\\____________\\____________\\-> failed

The checkpoint (``last_sync_at``) only advances after reconciliation and push
both complete, so a failed or interrupted run leaves the next run to cover the
same window again; idempotent upserts and single-use pushes make that safe.
Every invocation appends one Sync Run Record.

There is no run-level lock.  Runs for the same tenant are cooperatively
skipped while one is in flight in this process, or when a run started less
than ``cooldown_s`` ago.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING

import httpx

from calsync.config import SyncConfig
from calsync.errors import CalendarSyncError, CredentialNotFoundError, ReauthorizationRequiredError
from calsync.fetcher import EventFetcher, compute_sync_window
from calsync.google import GoogleCalendarClient, sanitize_error_message
from calsync.logging import tenant_context
from calsync.metrics import sync_duration_seconds, sync_runs_total
from calsync.models import RunStatus, SyncOutcome, SyncRunRecord, SyncState, utcnow
from calsync.pusher import AppointmentPusher
from calsync.reconcile import Reconciler
from calsync.storage import (
    AppointmentRepository,
    CredentialRepository,
    EventMirrorRepository,
    PostgresAppointmentRepository,
    PostgresCredentialRepository,
    PostgresEventMirrorRepository,
    PostgresSyncRunRepository,
    StorageError,
    SyncRunRepository,
)
from calsync.telemetry import SYNC_RUN_SPAN_NAME, get_tracer, tag_sync_span
from calsync.tokens import TokenManager

if TYPE_CHECKING:
    from asyncpg.pool import Pool

logger = logging.getLogger(__name__)

SKIP_NO_INTEGRATION = "no_active_integration"
SKIP_IN_PROGRESS = "run_in_progress"
SKIP_COOLDOWN = "recently_synced"


class SyncOrchestrator:
    def __init__(
        self,
        config: SyncConfig,
        *,
        credentials: CredentialRepository,
        events: EventMirrorRepository,
        appointments: AppointmentRepository,
        runs: SyncRunRepository,
        client: GoogleCalendarClient,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        settings = config.sync
        self._settings = settings
        self._credentials = credentials
        self._runs = runs
        self._client = client
        self._clock = clock
        self._in_flight: dict[str, datetime] = {}

        self._tokens = TokenManager(credentials, client, settings, clock=clock)
        self._fetcher = EventFetcher(client, settings)
        self._reconciler = Reconciler(
            events, default_timezone=settings.default_timezone, clock=clock
        )
        self._pusher = AppointmentPusher(
            appointments,
            client,
            active_statuses=settings.active_appointment_statuses,
            default_timezone=settings.default_timezone,
            clock=clock,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def sync_now(self, tenant_id: str, *, force: bool = False) -> SyncOutcome:
        """Run one full sync for *tenant_id* and return its terminal outcome.

        Never raises for sync failures; they are reported as a ``failed``
        outcome (with ``requires_reconnect`` set when the user must re-authorize).
        ``force`` skips the cooldown check only; a run already in flight for
        the same tenant in this process is never doubled.
        """
        started_at = self._clock()
        tracer = get_tracer()
        with tenant_context(tenant_id), tracer.start_as_current_span(SYNC_RUN_SPAN_NAME) as span:
            # Check and claim happen with no await in between.
            if tenant_id in self._in_flight:
                skip_reason: str | None = SKIP_IN_PROGRESS
            else:
                self._in_flight[tenant_id] = started_at
                try:
                    skip_reason = None if force else await self._cooldown_reason(
                        tenant_id, started_at
                    )
                    if skip_reason is None:
                        outcome = await self._run(tenant_id, started_at)
                finally:
                    self._in_flight.pop(tenant_id, None)

            if skip_reason is not None:
                logger.info("Skipping sync for tenant %s: %s", tenant_id, skip_reason)
                outcome = SyncOutcome(
                    tenant_id=tenant_id,
                    state=SyncState.idle,
                    status=RunStatus.skipped,
                    skip_reason=skip_reason,
                )

            finished_at = self._clock()
            await self._record_run(outcome, started_at, finished_at)

            sync_runs_total.labels(status=outcome.status.value).inc()
            sync_duration_seconds.labels(status=outcome.status.value).observe(
                max((finished_at - started_at).total_seconds(), 0.0)
            )
            tag_sync_span(
                span,
                tenant_id=tenant_id,
                state=outcome.state.value,
                synced=outcome.synced_events,
                deleted=outcome.deleted_events,
                pushed=outcome.appointments_pushed,
            )
            self._log_outcome(outcome)
        return outcome

    async def sync_all(self) -> list[SyncOutcome]:
        """Run ``sync_now`` for every tenant with an active credential."""
        tenants = await self._credentials.list_active_tenants()
        semaphore = asyncio.Semaphore(self._settings.max_parallel_tenants)

        async def _one(tenant_id: str) -> SyncOutcome:
            async with semaphore:
                return await self.sync_now(tenant_id)

        return list(await asyncio.gather(*(_one(tenant_id) for tenant_id in tenants)))

    async def _cooldown_reason(self, tenant_id: str, now: datetime) -> str | None:
        if self._settings.cooldown_s <= 0:
            return None
        try:
            last_started = await self._runs.last_started_at(tenant_id)
        except StorageError as exc:
            logger.warning("Could not read last run for tenant %s: %s", tenant_id, exc.message)
            return None
        if last_started is None:
            return None
        if (now - last_started).total_seconds() < self._settings.cooldown_s:
            return SKIP_COOLDOWN
        return None

    def _transition(self, tenant_id: str, current: SyncState, target: SyncState) -> SyncState:
        logger.debug("Sync state for tenant %s: %s -> %s", tenant_id, current, target)
        return target

    async def _run(self, tenant_id: str, started_at: datetime) -> SyncOutcome:
        state = self._transition(tenant_id, SyncState.idle, SyncState.token_resolving)
        synced = deleted = pushed = push_failures = total = 0

        def _failed(error: str, *, requires_reconnect: bool = False) -> SyncOutcome:
            return SyncOutcome(
                tenant_id=tenant_id,
                state=SyncState.failed,
                status=RunStatus.failed,
                synced_events=synced,
                deleted_events=deleted,
                appointments_pushed=pushed,
                total_events=total,
                push_failures=push_failures,
                error=error,
                requires_reconnect=requires_reconnect,
            )

        try:
            resolved = await self._tokens.resolve(tenant_id)
            credential = resolved.credential
            calendar_id = credential.default_calendar_id or self._settings.default_calendar_id

            state = self._transition(tenant_id, state, SyncState.fetching)
            window = compute_sync_window(started_at, self._settings, credential.last_sync_at)
            remote_events = await self._fetcher.fetch_events(
                resolved.access_token, calendar_id, window.start, window.end
            )
            total = len(remote_events)

            state = self._transition(tenant_id, state, SyncState.reconciling)
            reconciled = await self._reconciler.reconcile(
                tenant_id,
                remote_events,
                calendar_id=calendar_id,
                integration_id=credential.id,
            )
            synced, deleted = reconciled.synced, reconciled.deleted

            state = self._transition(tenant_id, state, SyncState.pushing)
            push_result = await self._pusher.push_unmirrored(
                tenant_id, resolved.access_token, calendar_id
            )
            pushed, push_failures = push_result.pushed, len(push_result.failures)

            state = self._transition(tenant_id, state, SyncState.checkpointing)
            await self._credentials.mark_synced(credential.id, started_at)
        except CredentialNotFoundError:
            return SyncOutcome(
                tenant_id=tenant_id,
                state=SyncState.done,
                status=RunStatus.skipped,
                skip_reason=SKIP_NO_INTEGRATION,
            )
        except ReauthorizationRequiredError as exc:
            logger.warning("Tenant %s must reconnect the calendar integration", tenant_id)
            return _failed(sanitize_error_message(str(exc)), requires_reconnect=True)
        except CalendarSyncError as exc:
            logger.error("Sync failed for tenant %s during %s: %s", tenant_id, state, exc)
            return _failed(sanitize_error_message(str(exc)))
        except Exception as exc:
            logger.exception("Unexpected sync failure for tenant %s during %s", tenant_id, state)
            return _failed(sanitize_error_message(f"{type(exc).__name__}: {exc}"))

        state = self._transition(tenant_id, state, SyncState.done)
        return SyncOutcome(
            tenant_id=tenant_id,
            state=state,
            status=RunStatus.done,
            synced_events=synced,
            deleted_events=deleted,
            appointments_pushed=pushed,
            total_events=total,
            push_failures=push_failures,
        )

    async def _record_run(
        self, outcome: SyncOutcome, started_at: datetime, finished_at: datetime
    ) -> None:
        record = SyncRunRecord(
            tenant_id=outcome.tenant_id,
            started_at=started_at,
            finished_at=finished_at,
            status=outcome.status,
            synced_count=outcome.synced_events,
            deleted_count=outcome.deleted_events,
            pushed_count=outcome.appointments_pushed,
            push_failures=outcome.push_failures,
            requires_reconnect=outcome.requires_reconnect,
            error=outcome.error or outcome.skip_reason,
        )
        try:
            await self._runs.record(record)
        except StorageError:
            logger.warning(
                "Failed to write sync run record for tenant %s", outcome.tenant_id, exc_info=True
            )

    @staticmethod
    def _log_outcome(outcome: SyncOutcome) -> None:
        if outcome.status is RunStatus.done:
            logger.info(
                "Sync complete for tenant %s. Events: %d, Deleted: %d, Appointments: %d, "
                "Push failures: %d",
                outcome.tenant_id,
                outcome.synced_events,
                outcome.deleted_events,
                outcome.appointments_pushed,
                outcome.push_failures,
            )
        elif outcome.status is RunStatus.failed:
            logger.warning(
                "Sync failed for tenant %s (requires_reconnect=%s): %s",
                outcome.tenant_id,
                outcome.requires_reconnect,
                outcome.error,
            )


def build_orchestrator(
    config: SyncConfig,
    pool: Pool,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> SyncOrchestrator:
    """Wire the asyncpg-backed repositories and Google client into an orchestrator."""
    return SyncOrchestrator(
        config,
        credentials=PostgresCredentialRepository(pool),
        events=PostgresEventMirrorRepository(pool),
        appointments=PostgresAppointmentRepository(pool),
        runs=PostgresSyncRunRepository(pool),
        client=GoogleCalendarClient(config.google, http_client=http_client),
    )
