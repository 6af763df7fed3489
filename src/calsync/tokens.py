"""Token Lifecycle Manager.

Returns a currently-valid access token for a tenant, refreshing it through the
provider's token endpoint when the stored one is expired or inside the safety
margin.  A refresh performs exactly one credential write; a cached token
performs none.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from calsync.config import SyncSettings
from calsync.errors import CredentialNotFoundError, ReauthorizationRequiredError
from calsync.google import GoogleCalendarClient, TokenRevokedError
from calsync.metrics import token_refreshes_total
from calsync.models import Credential, utcnow
from calsync.storage import CredentialRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedToken:
    """A usable access token plus the credential it belongs to."""

    access_token: str
    credential: Credential
    refreshed: bool


class TokenManager:
    def __init__(
        self,
        credentials: CredentialRepository,
        client: GoogleCalendarClient,
        settings: SyncSettings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._credentials = credentials
        self._client = client
        self._margin = timedelta(seconds=settings.token_refresh_margin_s)
        self._clock = clock

    def is_fresh(self, credential: Credential, now: datetime) -> bool:
        return bool(credential.access_token) and now < credential.token_expires_at - self._margin

    async def resolve(self, tenant_id: str) -> ResolvedToken:
        """Load the tenant's credential and return a valid token for it.

        Raises
        ------
        CredentialNotFoundError
            No credential, or the credential is inactive.
        ReauthorizationRequiredError
            The provider rejected the refresh token; the credential is deactivated.
        ProviderUnavailableError
            The token endpoint could not be reached or failed transiently.
        """
        credential = await self._credentials.get_active(tenant_id)
        if credential is None or not credential.is_active:
            raise CredentialNotFoundError(tenant_id)

        now = self._clock()
        if self.is_fresh(credential, now):
            return ResolvedToken(credential.access_token, credential, refreshed=False)

        if not credential.refresh_token.strip():
            await self._credentials.deactivate(credential.id)
            token_refreshes_total.labels(result="revoked").inc()
            raise ReauthorizationRequiredError(tenant_id, "no refresh token stored")

        logger.info("Access token expired for tenant %s; refreshing", tenant_id)
        try:
            grant = await self._client.refresh_access_token(credential.refresh_token)
        except TokenRevokedError as exc:
            logger.warning(
                "Refresh token rejected for tenant %s (%s); deactivating integration",
                tenant_id,
                exc.error_code,
            )
            await self._credentials.deactivate(credential.id)
            token_refreshes_total.labels(result="revoked").inc()
            raise ReauthorizationRequiredError(tenant_id, exc.message) from exc
        except Exception:
            token_refreshes_total.labels(result="error").inc()
            raise

        expires_at = grant.expires_at(now)
        await self._credentials.update_access_token(credential.id, grant.access_token, expires_at)
        token_refreshes_total.labels(result="success").inc()

        refreshed = credential.model_copy(
            update={"access_token": grant.access_token, "token_expires_at": expires_at}
        )
        return ResolvedToken(grant.access_token, refreshed, refreshed=True)

    async def get_valid_access_token(self, tenant_id: str) -> str:
        return (await self.resolve(tenant_id)).access_token
