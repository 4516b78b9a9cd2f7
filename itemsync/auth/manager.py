"""Token lifecycle manager.

Owns OAuth authorization, refresh and revocation for every registered
provider behind a uniform ``get_token`` / ``is_authenticated`` contract.

Refresh discipline:

- at most one refresh timer is pending per provider; scheduling a new one
  cancels the previous timer
- at most one refresh is in flight per provider; concurrent callers of
  ``refresh_token`` / ``get_token`` await the same refresh
- a failed refresh leaves the stored tokens untouched
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

import httpx

from itemsync.auth.errors import (
    AuthError,
    AuthErrorType,
    AuthorizationCancelled,
    TokenEndpointError,
)
from itemsync.auth.models import AuthEvent, AuthEventType, AuthState, AuthTokens
from itemsync.auth.oauth_client import (
    OAuthTokenClient,
    build_authorization_url,
    generate_state,
    parse_redirect,
)
from itemsync.auth.store import InMemoryAuthStateStore
from itemsync.core.events import EventListener, EventSink
from itemsync.core.time_utils import utc_now

if TYPE_CHECKING:
    from itemsync.auth.models import OAuthConfig
    from itemsync.auth.protocols import AuthorizationFlow, AuthStateStore, RefreshCallback

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_MARGIN = timedelta(minutes=5)

# OAuth error codes (RFC 6749 section 4.1.2.1) that mean the user declined consent.
_CANCEL_ERROR_CODES = frozenset({"access_denied", "consent_required", "interaction_required"})


def _error_from_endpoint(exc: TokenEndpointError, provider_id: str, *, refresh: bool) -> AuthError:
    if exc.status_code >= 500:
        error_type = AuthErrorType.NETWORK_ERROR
    elif refresh:
        error_type = AuthErrorType.REFRESH_FAILED
    else:
        error_type = AuthErrorType.INVALID_CREDENTIALS
    return AuthError(error_type, str(exc), provider_id, details=exc)


class TokenLifecycleManager:
    """OAuth authorize / refresh / revoke for all providers."""

    def __init__(
        self,
        store: AuthStateStore | None = None,
        *,
        flow: AuthorizationFlow | None = None,
        token_client: OAuthTokenClient | None = None,
        refresh_margin: timedelta = DEFAULT_REFRESH_MARGIN,
        events: EventSink[AuthEvent] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the manager.

        Args:
            store: Persistence for ``AuthState`` (in-memory when omitted)
            flow: Host interactive authorization flow used by ``authenticate``
            token_client: Token endpoint client
            refresh_margin: Tokens expiring within this margin are refreshed first
            events: Event sink for auth events (a private one when omitted)
            clock: Current-time source
        """
        self._store: AuthStateStore = store or InMemoryAuthStateStore()
        self._flow = flow
        self._token_client = token_client or OAuthTokenClient()
        self._refresh_margin = refresh_margin
        self._events: EventSink[AuthEvent] = events or EventSink("auth")
        self._clock = clock

        self._configs: dict[str, OAuthConfig] = {}
        self._refresh_callbacks: dict[str, RefreshCallback] = {}
        self._timers: dict[str, asyncio.Task[None]] = {}
        self._inflight: dict[str, asyncio.Task[AuthTokens]] = {}
        # Bumped on authenticate/revoke so a refresh started earlier cannot
        # overwrite state written after it began.
        self._generations: dict[str, int] = {}

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_config(self, provider_id: str, config: OAuthConfig) -> None:
        """Register (or replace) the OAuth configuration for a provider."""
        logger.debug("oauth_config_registered", extra={"provider_id": provider_id})
        self._configs[provider_id] = config

    def register_refresh_callback(self, provider_id: str, callback: RefreshCallback) -> None:
        """Use ``callback`` instead of the refresh-token grant for this provider."""
        logger.debug("refresh_callback_registered", extra={"provider_id": provider_id})
        self._refresh_callbacks[provider_id] = callback

    def get_config(self, provider_id: str) -> OAuthConfig | None:
        return self._configs.get(provider_id)

    def add_listener(self, provider_id: str, listener: EventListener[AuthEvent]) -> None:
        self._events.subscribe(provider_id, listener)

    def remove_listener(self, provider_id: str, listener: EventListener[AuthEvent]) -> None:
        self._events.unsubscribe(provider_id, listener)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Schedule refresh timers for every persisted, authenticated provider."""
        scheduled = 0
        for provider_id in await self._store.list_provider_ids():
            state = await self._store.get(provider_id)
            if state and state.authenticated and state.tokens:
                if self._schedule_refresh(provider_id, state.tokens):
                    scheduled += 1
        logger.info("token_manager_initialized", extra={"timers_scheduled": scheduled})

    async def close(self) -> None:
        """Cancel every pending refresh timer and in-flight refresh."""
        tasks = [*self._timers.values(), *self._inflight.values()]
        self._timers.clear()
        self._inflight.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task

    def has_pending_refresh(self, provider_id: str) -> bool:
        task = self._timers.get(provider_id)
        return task is not None and not task.done()

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    async def authenticate(
        self,
        provider_id: str,
        *,
        flow: AuthorizationFlow | None = None,
    ) -> AuthState:
        """Run the interactive authorization-code flow for a provider.

        Raises:
            AuthError: with a type telling cancellation, bad credentials,
                network trouble and misconfiguration apart
        """
        logger.info("auth_started", extra={"provider_id": provider_id})
        try:
            state = await self._authenticate(provider_id, flow or self._flow)
        except AuthError as exc:
            logger.warning(
                "auth_failed",
                extra={"provider_id": provider_id, "error_type": exc.type.value, "error": exc.message},
            )
            self._emit(AuthEventType.AUTH_FAILURE, provider_id, error=exc.to_dict())
            raise

        self._emit(AuthEventType.AUTH_SUCCESS, provider_id)
        logger.info("auth_succeeded", extra={"provider_id": provider_id})
        return state

    async def _authenticate(
        self, provider_id: str, flow: AuthorizationFlow | None
    ) -> AuthState:
        config = self._configs.get(provider_id)
        if config is None:
            raise AuthError(
                AuthErrorType.INVALID_CONFIG,
                f"No OAuth config for provider: {provider_id}",
                provider_id,
            )
        if flow is None:
            raise AuthError(
                AuthErrorType.INVALID_CONFIG,
                "No interactive authorization flow configured",
                provider_id,
            )

        expected_state = generate_state()
        auth_url = build_authorization_url(config, expected_state)
        logger.debug("auth_flow_launching", extra={"provider_id": provider_id})

        try:
            redirect_url = await flow.launch_authorization(auth_url)
        except AuthorizationCancelled as exc:
            raise AuthError(
                AuthErrorType.USER_CANCELLED, "User cancelled authentication", provider_id
            ) from exc
        except (httpx.TransportError, ConnectionError) as exc:
            raise AuthError(
                AuthErrorType.NETWORK_ERROR, f"Authorization flow failed: {exc}", provider_id, exc
            ) from exc
        except Exception as exc:
            raise AuthError(
                AuthErrorType.UNKNOWN, f"Authorization flow failed: {exc}", provider_id, exc
            ) from exc

        params = parse_redirect(redirect_url)
        if params.get("state") != expected_state:
            raise AuthError(
                AuthErrorType.INVALID_CREDENTIALS,
                "Invalid state parameter - possible CSRF attack",
                provider_id,
            )
        if error_code := params.get("error"):
            error_type = (
                AuthErrorType.USER_CANCELLED
                if error_code in _CANCEL_ERROR_CODES
                else AuthErrorType.INVALID_CREDENTIALS
            )
            raise AuthError(error_type, params.get("error_description") or error_code, provider_id)
        code = params.get("code")
        if not code:
            raise AuthError(
                AuthErrorType.INVALID_CREDENTIALS,
                "Authorization response did not include a code",
                provider_id,
            )

        try:
            tokens = await self._token_client.exchange_code(config, code)
        except TokenEndpointError as exc:
            raise _error_from_endpoint(exc, provider_id, refresh=False) from exc
        except httpx.TransportError as exc:
            raise AuthError(
                AuthErrorType.NETWORK_ERROR, f"Token exchange failed: {exc}", provider_id, exc
            ) from exc
        except ValueError as exc:
            raise AuthError(
                AuthErrorType.UNKNOWN, f"Invalid token response: {exc}", provider_id, exc
            ) from exc

        now = self._clock()
        auth_state = AuthState(
            provider_id=provider_id,
            authenticated=True,
            tokens=tokens,
            last_auth=now,
        )
        self._bump_generation(provider_id)
        try:
            await self._store.save(auth_state)
        except Exception as exc:
            raise AuthError(
                AuthErrorType.UNKNOWN, f"Failed to save auth state: {exc}", provider_id, exc
            ) from exc

        self._schedule_refresh(provider_id, tokens)
        return auth_state

    # ------------------------------------------------------------------
    # Token access
    # ------------------------------------------------------------------

    async def get_auth_state(self, provider_id: str) -> AuthState | None:
        return await self._store.get(provider_id)

    async def is_authenticated(self, provider_id: str) -> bool:
        state = await self._store.get(provider_id)
        if not state or not state.authenticated or not state.tokens:
            return False
        if state.tokens.is_expired(self._clock()):
            logger.debug("token_expired", extra={"provider_id": provider_id})
            return False
        return True

    async def get_token(self, provider_id: str, *, force_refresh: bool = False) -> str | None:
        """Return a usable access token, refreshing first when it is about to expire.

        Returns ``None`` when the provider has never been authenticated.

        Raises:
            AuthError: when a required refresh fails, or the refreshed token
                is already expired
        """
        state = await self._store.get(provider_id)
        if not state or not state.authenticated or not state.tokens:
            return None

        tokens = state.tokens
        if force_refresh or tokens.expires_within(self._refresh_margin, self._clock()):
            logger.debug(
                "token_refresh_before_use",
                extra={"provider_id": provider_id, "forced": force_refresh},
            )
            tokens = await self.refresh_token(provider_id)
            if tokens.is_expired(self._clock()):
                raise AuthError(
                    AuthErrorType.TOKEN_EXPIRED,
                    "Refreshed token is already expired",
                    provider_id,
                )
        return tokens.access_token

    async def refresh_token(self, provider_id: str) -> AuthTokens:
        """Refresh tokens for a provider, sharing any refresh already in flight.

        Raises:
            AuthError: ``refresh_failed`` (or ``invalid_config`` /
                ``network_error``); the stored tokens are left untouched
        """
        task = self._inflight.get(provider_id)
        if task is None:
            task = asyncio.create_task(
                self._refresh(provider_id), name=f"token-refresh-{provider_id}"
            )
            self._inflight[provider_id] = task
            task.add_done_callback(lambda done, pid=provider_id: self._refresh_done(pid, done))
        return await asyncio.shield(task)

    def _refresh_done(self, provider_id: str, task: asyncio.Task[AuthTokens]) -> None:
        if self._inflight.get(provider_id) is task:
            del self._inflight[provider_id]
        if not task.cancelled():
            # Marks the exception as retrieved when every waiter went away.
            task.exception()

    async def _refresh(self, provider_id: str) -> AuthTokens:
        logger.info("token_refresh_started", extra={"provider_id": provider_id})
        generation = self._generations.get(provider_id, 0)
        try:
            tokens = await self._perform_refresh(provider_id, generation)
        except AuthError as exc:
            logger.warning(
                "token_refresh_failed",
                extra={"provider_id": provider_id, "error_type": exc.type.value, "error": exc.message},
            )
            self._emit(
                AuthEventType.AUTH_FAILURE, provider_id, stage="refresh", error=exc.to_dict()
            )
            raise

        self._emit(AuthEventType.TOKEN_REFRESH, provider_id)
        logger.info("token_refresh_succeeded", extra={"provider_id": provider_id})
        return tokens

    async def _perform_refresh(self, provider_id: str, generation: int) -> AuthTokens:
        state = await self._store.get(provider_id)
        if not state or not state.tokens:
            raise AuthError(AuthErrorType.REFRESH_FAILED, "No tokens to refresh", provider_id)
        current = state.tokens

        callback = self._refresh_callbacks.get(provider_id)
        try:
            if callback is not None:
                logger.debug("token_refresh_custom_callback", extra={"provider_id": provider_id})
                new_tokens = await callback(provider_id, current)
            else:
                new_tokens = await self._standard_refresh(provider_id, current)
        except AuthError:
            raise
        except TokenEndpointError as exc:
            raise _error_from_endpoint(exc, provider_id, refresh=True) from exc
        except httpx.TransportError as exc:
            raise AuthError(
                AuthErrorType.NETWORK_ERROR, f"Token refresh failed: {exc}", provider_id, exc
            ) from exc
        except Exception as exc:
            raise AuthError(
                AuthErrorType.REFRESH_FAILED, f"Failed to refresh token: {exc}", provider_id, exc
            ) from exc

        if self._generations.get(provider_id, 0) != generation:
            raise AuthError(
                AuthErrorType.REFRESH_FAILED,
                "Authentication changed while refreshing",
                provider_id,
            )

        if new_tokens.expires_at < current.expires_at:
            # Keeps expires_at non-decreasing; a regressing refresh is stale.
            logger.warning(
                "token_refresh_expiry_regressed",
                extra={
                    "provider_id": provider_id,
                    "current_expires_at": current.expires_at.isoformat(),
                    "new_expires_at": new_tokens.expires_at.isoformat(),
                },
            )
            new_tokens = current

        updated = state.model_copy(
            update={"tokens": new_tokens, "authenticated": True, "last_refresh": self._clock()}
        )
        try:
            await self._store.save(updated)
        except Exception as exc:
            raise AuthError(
                AuthErrorType.REFRESH_FAILED, f"Failed to save tokens: {exc}", provider_id, exc
            ) from exc

        if new_tokens.expires_within(self._refresh_margin, self._clock()):
            # A timer would fire immediately and refresh again; get_token refreshes on demand.
            self._cancel_timer(provider_id)
            logger.warning(
                "token_refresh_short_lived",
                extra={"provider_id": provider_id, "expires_at": new_tokens.expires_at.isoformat()},
            )
        else:
            self._schedule_refresh(provider_id, new_tokens)
        return new_tokens

    async def _standard_refresh(self, provider_id: str, current: AuthTokens) -> AuthTokens:
        if not current.refresh_token:
            raise AuthError(
                AuthErrorType.REFRESH_FAILED, "No refresh token available", provider_id
            )
        config = self._configs.get(provider_id)
        if config is None:
            raise AuthError(
                AuthErrorType.INVALID_CONFIG,
                f"No OAuth config for provider: {provider_id}",
                provider_id,
            )
        return await self._token_client.refresh(config, current.refresh_token)

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    async def revoke_auth(self, provider_id: str) -> None:
        """Forget a provider's tokens and cancel its refresh timer."""
        logger.info("auth_revoking", extra={"provider_id": provider_id})
        self._cancel_timer(provider_id)
        self._bump_generation(provider_id)
        try:
            await self._store.delete(provider_id)
        except Exception as exc:
            raise AuthError(
                AuthErrorType.UNKNOWN, f"Failed to delete auth: {exc}", provider_id, exc
            ) from exc
        self._emit(AuthEventType.AUTH_REVOKED, provider_id)
        logger.info("auth_revoked", extra={"provider_id": provider_id})

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def _can_refresh(self, provider_id: str, tokens: AuthTokens) -> bool:
        if provider_id in self._refresh_callbacks:
            return True
        return bool(tokens.refresh_token) and provider_id in self._configs

    def _schedule_refresh(self, provider_id: str, tokens: AuthTokens) -> bool:
        self._cancel_timer(provider_id)
        if not self._can_refresh(provider_id, tokens):
            logger.debug("token_refresh_not_schedulable", extra={"provider_id": provider_id})
            return False

        refresh_at = tokens.expires_at - self._refresh_margin
        delay = max(0.0, (refresh_at - self._clock()).total_seconds())
        self._timers[provider_id] = asyncio.create_task(
            self._refresh_after(provider_id, delay), name=f"token-refresh-timer-{provider_id}"
        )
        logger.debug(
            "token_refresh_scheduled",
            extra={
                "provider_id": provider_id,
                "refresh_at": refresh_at.isoformat(),
                "delay_seconds": round(delay, 3),
            },
        )
        return True

    async def _refresh_after(self, provider_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        # Detach before refreshing: a successful refresh reschedules, and
        # rescheduling must not cancel the task that is doing the refresh.
        if self._timers.get(provider_id) is asyncio.current_task():
            del self._timers[provider_id]
        try:
            await self.refresh_token(provider_id)
        except AuthError as exc:
            logger.error(
                "scheduled_token_refresh_failed",
                extra={"provider_id": provider_id, "error_type": exc.type.value},
            )

    def _cancel_timer(self, provider_id: str) -> None:
        task = self._timers.pop(provider_id, None)
        if task is not None and not task.done():
            task.cancel()

    def _bump_generation(self, provider_id: str) -> None:
        self._generations[provider_id] = self._generations.get(provider_id, 0) + 1

    def _emit(self, event_type: AuthEventType, provider_id: str, **data: Any) -> None:
        self._events.emit(
            AuthEvent(type=event_type.value, provider_id=provider_id, timestamp=self._clock(), data=data)
        )
