"""Error taxonomy for the calendar sync engine.

Each failure kind maps to one orchestrator branch:

- ``CredentialNotFoundError``: no active integration for the tenant, nothing to do.
- ``ReauthorizationRequiredError``: refresh token revoked; terminal, user must reconnect.
- ``ProviderUnavailableError``: network failure or non-2xx from the provider.
- ``ReconciliationConflictError``: malformed remote record or storage constraint
  violation while mirroring; aborts the run.
- ``PushFailureError``: a single appointment could not be mirrored outward; the
  pusher logs it and moves on.
"""

from __future__ import annotations


class CalendarSyncError(RuntimeError):
    """Base error raised by calendar sync components."""


class CredentialNotFoundError(CalendarSyncError):
    """Raised when a tenant has no active calendar integration."""

    def __init__(self, tenant_id: str) -> None:
        self.tenant_id = tenant_id
        super().__init__(f"No active calendar integration for tenant '{tenant_id}'")


class ReauthorizationRequiredError(CalendarSyncError):
    """Raised when the provider rejects the stored refresh token."""

    def __init__(self, tenant_id: str, message: str) -> None:
        self.tenant_id = tenant_id
        self.message = message
        super().__init__(f"Reauthorization required for tenant '{tenant_id}': {message}")


class ProviderUnavailableError(CalendarSyncError):
    """Raised when the calendar provider cannot be reached or returns non-2xx."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        self.message = message
        if status_code is None:
            super().__init__(f"Calendar provider unavailable: {message}")
        else:
            super().__init__(f"Calendar provider request failed ({status_code}): {message}")


class ReconciliationConflictError(CalendarSyncError):
    """Raised when a remote event cannot be mirrored into the local table."""

    def __init__(self, event_id: str | None, message: str) -> None:
        self.event_id = event_id
        self.message = message
        super().__init__(f"Cannot reconcile remote event '{event_id or '<unknown>'}': {message}")


class PushFailureError(CalendarSyncError):
    """Raised when a local appointment cannot be created on the remote calendar."""

    def __init__(self, appointment_id: str, message: str) -> None:
        self.appointment_id = appointment_id
        self.message = message
        super().__init__(f"Failed to push appointment '{appointment_id}': {message}")
