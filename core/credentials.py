"""
OAuth credential refresh for calendar connections.

Credential states: valid -> (near expiry) -> refreshing -> valid | transient failure | revoked.
Only a revoked grant disables a connection; transient failures leave it enabled
so the next scheduled run can try again.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, Protocol

from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request as GoogleAuthRequest
from google.oauth2.credentials import Credentials

from core.database import Store, CALENDAR_CONNECTIONS, load_records
from core.errors import CredentialRefreshError, PermanentAuthError
from core.time_utils import get_current_time, to_utc
from models.credential import OAuthCredential, TokenGrant, TokenRefreshSummary

logger = logging.getLogger(__name__)

REFRESH_BUFFER = timedelta(minutes=5)
MAX_ATTEMPTS = 3
BASE_DELAY_SECONDS = 1.0
DEFAULT_TOKEN_LIFETIME = timedelta(hours=1)

_AUTH_ERROR_MARKERS = (
    "invalid_grant",
    "token has been expired or revoked",
    "token has been revoked",
)

class OAuthProvider(Protocol):
    async def refresh(self, refresh_token: str) -> TokenGrant:
        ...

class GoogleOAuthProvider:
    def __init__(self, client_id: str, client_secret: str, token_uri: str):
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_uri = token_uri

    @classmethod
    def from_settings(cls, settings) -> "GoogleOAuthProvider":
        return cls(settings.GOOGLE_CLIENT_ID, settings.GOOGLE_CLIENT_SECRET, settings.GOOGLE_TOKEN_URI)

    async def refresh(self, refresh_token: str) -> TokenGrant:
        creds = Credentials(
            token=None,
            refresh_token=refresh_token,
            token_uri=self.token_uri,
            client_id=self.client_id,
            client_secret=self.client_secret,
        )
        # google-auth is blocking; RefreshError propagates to the caller
        await asyncio.to_thread(creds.refresh, GoogleAuthRequest())
        rotated = creds.refresh_token if creds.refresh_token and creds.refresh_token != refresh_token else None
        return TokenGrant(
            access_token=creds.token,
            refresh_token=rotated,
            expires_at=to_utc(creds.expiry) if creds.expiry else None,
        )

def is_auth_error(error: Exception) -> bool:
    """True for revoked / invalid-grant / 401-class failures."""
    message = str(error).lower()
    if any(marker in message for marker in _AUTH_ERROR_MARKERS):
        return True
    for attr in ("code", "status_code", "status"):
        if getattr(error, attr, None) in (401, "invalid_grant"):
            return True
    if isinstance(error, RefreshError):
        for arg in error.args:
            if isinstance(arg, dict) and arg.get("error") == "invalid_grant":
                return True
    return False

class CredentialRefresher:
    def __init__(
        self,
        store: Store,
        provider: OAuthProvider,
        clock: Callable[[], datetime] = get_current_time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        buffer: timedelta = REFRESH_BUFFER,
        max_attempts: int = MAX_ATTEMPTS,
        base_delay: float = BASE_DELAY_SECONDS,
    ):
        self.store = store
        self.provider = provider
        self.clock = clock
        self.sleep = sleep
        self.buffer = buffer
        self.max_attempts = max_attempts
        self.base_delay = base_delay

    @classmethod
    def from_settings(cls, store: Store, provider: OAuthProvider, settings, **kwargs) -> "CredentialRefresher":
        return cls(
            store,
            provider,
            buffer=timedelta(minutes=settings.TOKEN_REFRESH_BUFFER_MINUTES),
            max_attempts=settings.TOKEN_REFRESH_MAX_ATTEMPTS,
            base_delay=settings.TOKEN_REFRESH_BASE_DELAY_SECONDS,
            **kwargs,
        )

    def needs_refresh(self, credential: OAuthCredential, now: datetime) -> bool:
        if credential.expires_at is None:
            return True
        return credential.expires_at - now <= self.buffer

    async def refresh_if_needed(self, credential: OAuthCredential) -> OAuthCredential:
        """
        Returns a credential whose access token is good for at least the buffer.

        Raises PermanentAuthError when the grant is revoked (the connection is
        disabled first) and CredentialRefreshError when every attempt failed
        for another reason (the connection stays enabled).
        """
        if not credential.enabled:
            raise PermanentAuthError("Calendar authorization revoked. Please reconnect your calendar.")

        now = self.clock()
        if not self.needs_refresh(credential, now):
            return credential

        user_id = credential.user_id
        logger.info(f"[token-refresh] Token for user {user_id} expires at {credential.expires_at}, refreshing proactively")

        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                grant = await self.provider.refresh(credential.refresh_token)
            except Exception as e:
                last_error = e
                logger.warning(f"[token-refresh] Attempt {attempt}/{self.max_attempts} failed for user {user_id}: {e}")

                if is_auth_error(e):
                    logger.error(f"[token-refresh] Permanent auth error for user {user_id}, disabling connection")
                    await self.store.update(
                        CALENDAR_CONNECTIONS,
                        {"user_id": user_id},
                        {"enabled": False, "updated_at": self.clock()},
                    )
                    raise PermanentAuthError("Calendar authorization revoked. Please reconnect your calendar.") from e

                if attempt < self.max_attempts:
                    delay = self.base_delay * (2 ** (attempt - 1))
                    logger.info(f"[token-refresh] Retrying in {delay}s...")
                    await self.sleep(delay)
            else:
                return await self._save(credential, grant)

        logger.error(
            f"[token-refresh] All {self.max_attempts} refresh attempts failed for user {user_id}, "
            f"but NOT disabling connection (transient error)"
        )
        raise CredentialRefreshError(
            f"Token refresh failed after {self.max_attempts} attempts: {last_error}. Please try again."
        ) from last_error

    async def _save(self, credential: OAuthCredential, grant: TokenGrant) -> OAuthCredential:
        now = self.clock()
        fields = {
            "access_token": grant.access_token,
            "expires_at": grant.expires_at or now + DEFAULT_TOKEN_LIFETIME,
            "updated_at": now,
        }
        # Save rotated refresh token if the provider issued a new one
        if grant.refresh_token:
            fields["refresh_token"] = grant.refresh_token

        await self.store.update(CALENDAR_CONNECTIONS, {"user_id": credential.user_id}, fields)
        logger.info(f"[token-refresh] Token refreshed successfully for user {credential.user_id}")
        return credential.model_copy(update=fields)

async def get_valid_credential(store: Store, refresher: CredentialRefresher, user_id: str) -> Optional[OAuthCredential]:
    """Loads a user's calendar connection and makes sure its token is fresh."""
    rows = await store.find(CALENDAR_CONNECTIONS, {"user_id": user_id})
    connections = load_records(OAuthCredential, rows)
    if not connections:
        return None
    return await refresher.refresh_if_needed(connections[0])

async def run_token_refresh(store: Store, refresher: CredentialRefresher) -> TokenRefreshSummary:
    """Proactively refreshes every enabled connection that is close to expiry."""
    summary = TokenRefreshSummary(checked=refresher.clock())
    rows = await store.find(CALENDAR_CONNECTIONS, {"enabled": True})
    connections = load_records(OAuthCredential, rows)
    summary.connections = len(connections)

    for credential in connections:
        if not refresher.needs_refresh(credential, refresher.clock()):
            continue
        try:
            await refresher.refresh_if_needed(credential)
            summary.refreshed += 1
        except PermanentAuthError:
            summary.revoked += 1
        except CredentialRefreshError:
            summary.failed += 1

    logger.info(
        f"[token-refresh] Checked {summary.connections} connections: "
        f"{summary.refreshed} refreshed, {summary.revoked} revoked, {summary.failed} failed"
    )
    return summary
