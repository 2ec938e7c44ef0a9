"""Per-provider OAuth 2.0 connection lifecycle.

One ``ConnectionEngine`` exists per configured provider.  It owns the flow

    build_authorization_url → handle_callback → (persist tokens)
        → get_valid_access_token (proactive refresh) → adapter fetch

and delegates everything vendor-specific to a ``ProviderAdapter``.

Connection states for a (subject, provider) pair:

    DISCONNECTED   no TokenRecord
    PENDING        a live registry entry exists (in-memory only)
    ACTIVE         TokenRecord whose expiry is outside the refresh buffer
    EXPIRED        TokenRecord at or inside the refresh buffer → refreshed on use
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any
from urllib.parse import quote, urlencode

import httpx

from src.wearables.base import (
    AuthMethod,
    AuthorizationContext,
    AuthUrlResult,
    CallbackResult,
    ConnectionHealth,
    DateRange,
    NormalizedActivity,
    NormalizedDaily,
    NormalizedSleep,
    ProviderAdapter,
    ProviderConfig,
    TokenRecord,
    safe_int,
    utcnow,
)
from src.wearables.errors import (
    InvalidStateError,
    MissingTokenError,
    OAuthError,
    TokenRefreshError,
    WearableSDKError,
)
from src.wearables.http_client import ContentType, RetryingHttpClient
from src.wearables.pkce import PKCE_METHOD, new_verifier_challenge_pair
from src.wearables.state_registry import DEFAULT_STATE_TTL_SECONDS, PendingStateRegistry
from src.wearables.token_store import TokenStore, connection_health

logger = logging.getLogger("wearables.engine")

# Tokens expiring within this window are refreshed before use
REFRESH_BUFFER = timedelta(minutes=5)

# Used when a token response omits expires_in
DEFAULT_EXPIRES_IN = 3600


def normalize_token_response(
    raw: Any, provider_id: str, now: datetime | None = None
) -> TokenRecord:
    """Convert a raw token-endpoint JSON body into a ``TokenRecord``.

    ``expires_at`` is issuance time plus the provider-reported lifetime.
    Absent refresh_token / scope stay None; empty strings are treated as absent.

    Args:
        raw:         Decoded token endpoint response.
        provider_id: Provider slug, for error reporting.
        now:         Issuance time (defaults to the current UTC time).

    Returns:
        Normalized TokenRecord.

    Raises:
        OAuthError: If the body is not a mapping or lacks an access_token.
    """
    if not isinstance(raw, dict) or not raw.get("access_token"):
        raise OAuthError(
            "Token endpoint response did not include an access_token.",
            provider_id=provider_id,
        )

    expires_in = safe_int(raw.get("expires_in"))
    if expires_in is None:
        expires_in = DEFAULT_EXPIRES_IN

    issued_at = now or utcnow()
    return TokenRecord(
        access_token=raw["access_token"],
        refresh_token=raw.get("refresh_token") or None,
        expires_at=issued_at + timedelta(seconds=expires_in),
        scope=raw.get("scope") or None,
        token_type=raw.get("token_type") or "Bearer",
    )


class ConnectionEngine:
    """OAuth connection engine for a single provider.

    Safe for concurrent use from one event loop.  Token persistence
    consistency is delegated to the ``TokenStore``; concurrent refreshes of
    the same pair race and the last write wins.
    """

    def __init__(
        self,
        adapter: ProviderAdapter,
        config: ProviderConfig,
        token_store: TokenStore,
        http: RetryingHttpClient,
        registry: PendingStateRegistry | None = None,
        state_ttl_seconds: float = DEFAULT_STATE_TTL_SECONDS,
    ) -> None:
        """Initialize the engine.

        Args:
            adapter:           Vendor capability record.
            config:            Client registration for this provider.
            token_store:       Token persistence backend.
            http:              HTTP client used for token endpoint calls.
            registry:          Pending-authorization registry (one is created if omitted).
            state_ttl_seconds: TTL for a created registry.
        """
        self._adapter = adapter
        self._config = config
        self._store = token_store
        self._http = http
        self._registry = registry or PendingStateRegistry(ttl_seconds=state_ttl_seconds)

    @property
    def provider_id(self) -> str:
        return self._adapter.PROVIDER_ID

    @property
    def adapter(self) -> ProviderAdapter:
        return self._adapter

    @property
    def registry(self) -> PendingStateRegistry:
        return self._registry

    def scopes(self) -> list[str]:
        """Effective scopes: explicit config override, else adapter defaults."""
        if self._config.scopes is not None:
            return list(self._config.scopes)
        return list(self._adapter.default_scopes)

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    def build_authorization_url(self, subject_id: str) -> AuthUrlResult:
        """Start an authorization flow for ``subject_id``.

        Pure URL construction plus one registry write; no network I/O.

        Args:
            subject_id: Caller-supplied identity of the end user.

        Returns:
            AuthUrlResult with the provider URL and the request id
            (which is also the ``state`` parameter).
        """
        verifier: str | None = None
        challenge: str | None = None
        if self._adapter.use_pkce:
            verifier, challenge = new_verifier_challenge_pair()

        request_id = self._registry.put(
            AuthorizationContext(
                subject_id=subject_id,
                provider_id=self.provider_id,
                redirect_target=self._config.redirect_uri,
                pkce_verifier=verifier,
            )
        )

        params = {
            "response_type": "code",
            "client_id": self._config.client_id,
            "redirect_uri": self._config.redirect_uri,
            "state": request_id,
            "scope": " ".join(self.scopes()),
        }
        if challenge is not None:
            params["code_challenge"] = challenge
            params["code_challenge_method"] = PKCE_METHOD

        base = self._adapter.authorize_url
        separator = "&" if "?" in base else "?"
        url = f"{base}{separator}{urlencode(params, quote_via=quote)}"

        logger.debug("Issued %s authorization URL for %s", self.provider_id, subject_id)
        return AuthUrlResult(url=url, request_id=request_id)

    async def handle_callback(self, code: str, request_id: str) -> CallbackResult:
        """Finish an authorization flow.

        Consumes the registry entry, exchanges the code, persists the tokens
        and then looks up the provider's user id.  The lookup is best-effort:
        its failure is logged and ``external_user_id`` is left None.

        Args:
            code:       Authorization code from the provider redirect.
            request_id: The ``state`` value from the provider redirect.

        Returns:
            CallbackResult for the connected subject.

        Raises:
            InvalidStateError: Unknown, expired or replayed request id.
            OAuthError:        Missing code or unusable token response.
            ProviderAPIError:  Token endpoint rejected the exchange.
        """
        context = self._registry.take_if_valid(request_id)
        if context is None or context.provider_id != self.provider_id:
            raise InvalidStateError(self.provider_id)
        if not code:
            raise OAuthError("Callback is missing the authorization code.", provider_id=self.provider_id)

        tokens = await self._exchange_code(code, context)
        await self._store.save(context.subject_id, self.provider_id, tokens)

        external_user_id: str | None = None
        try:
            external_user_id = await self._adapter.fetch_external_user_id(tokens.access_token)
        except Exception as exc:
            logger.warning(
                "Failed to fetch %s user id for %s: %s",
                self.provider_id, context.subject_id, exc,
                extra={
                    "reason": "external_user_id_lookup_failed",
                    "provider_id": self.provider_id,
                    "subject_id": context.subject_id,
                },
            )

        logger.info(
            "Subject %s connected to %s (external_user_id=%s)",
            context.subject_id, self.provider_id, external_user_id,
        )
        return CallbackResult(
            subject_id=context.subject_id,
            provider_id=self.provider_id,
            tokens=tokens,
            external_user_id=external_user_id,
        )

    # ------------------------------------------------------------------
    # Token exchange + refresh
    # ------------------------------------------------------------------

    def _client_credentials(self, body: dict[str, str]) -> httpx.Auth | None:
        """Attach client credentials per the adapter's transmission mode."""
        if self._adapter.auth_method is AuthMethod.BASIC:
            return httpx.BasicAuth(self._config.client_id, self._config.client_secret)
        body["client_id"] = self._config.client_id
        body["client_secret"] = self._config.client_secret
        return None

    async def _token_request(self, body: dict[str, str]) -> TokenRecord:
        auth = self._client_credentials(body)
        response = await self._http.post(
            self._adapter.token_url,
            body=body,
            content_type=ContentType.FORM,
            auth=auth,
            headers={"Accept": "application/json"},
        )
        return normalize_token_response(response.data, self.provider_id)

    async def _exchange_code(self, code: str, context: AuthorizationContext) -> TokenRecord:
        body = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": context.redirect_target,
        }
        if context.pkce_verifier:
            body["code_verifier"] = context.pkce_verifier
        return await self._token_request(body)

    async def refresh(self, subject_id: str) -> TokenRecord:
        """Run the refresh grant and persist the result.

        If the provider omits a new refresh token the previous one is kept.

        Args:
            subject_id: Subject whose tokens to refresh.

        Returns:
            The persisted TokenRecord.

        Raises:
            TokenRefreshError: No record / no refresh token, or the grant failed
                               (the underlying error is chained).
        """
        current = await self._store.get(subject_id, self.provider_id)
        if current is None or not current.refresh_token:
            raise TokenRefreshError(self.provider_id, subject_id, reason="no refresh token stored")

        try:
            tokens = await self._token_request(
                {"grant_type": "refresh_token", "refresh_token": current.refresh_token}
            )
        except WearableSDKError as exc:
            logger.warning("Token refresh failed for %s/%s: %s", self.provider_id, subject_id, exc)
            raise TokenRefreshError(self.provider_id, subject_id, reason=exc.code) from exc

        if tokens.refresh_token is None:
            tokens.refresh_token = current.refresh_token

        await self._store.save(subject_id, self.provider_id, tokens)
        logger.info("Refreshed tokens for %s (subject: %s)", self.provider_id, subject_id)
        return tokens

    async def get_valid_access_token(self, subject_id: str) -> str:
        """Return an access token that stays valid for at least the refresh buffer.

        Raises:
            MissingTokenError: The subject has not connected this provider.
            TokenRefreshError: A needed refresh failed.
        """
        tokens = await self._store.get(subject_id, self.provider_id)
        if tokens is None:
            raise MissingTokenError(self.provider_id, subject_id)

        if tokens.expires_within(REFRESH_BUFFER):
            logger.debug(
                "Token expiring soon for %s (subject: %s), refreshing",
                self.provider_id, subject_id,
            )
            refreshed = await self.refresh(subject_id)
            return refreshed.access_token

        return tokens.access_token

    # ------------------------------------------------------------------
    # Data fetching (auto-refresh)
    # ------------------------------------------------------------------

    async def get_activities(
        self, subject_id: str, date_range: DateRange | None = None
    ) -> list[NormalizedActivity]:
        token = await self.get_valid_access_token(subject_id)
        return await self._adapter.fetch_activities(token, date_range or DateRange.default())

    async def get_sleep(
        self, subject_id: str, date_range: DateRange | None = None
    ) -> list[NormalizedSleep]:
        token = await self.get_valid_access_token(subject_id)
        return await self._adapter.fetch_sleep(token, date_range or DateRange.default())

    async def get_dailies(
        self, subject_id: str, date_range: DateRange | None = None
    ) -> list[NormalizedDaily]:
        token = await self.get_valid_access_token(subject_id)
        return await self._adapter.fetch_dailies(token, date_range or DateRange.default())

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    async def connection_health(self, subject_id: str) -> ConnectionHealth:
        tokens = await self._store.get(subject_id, self.provider_id)
        return connection_health(tokens, self.provider_id, subject_id)

    async def is_connected(self, subject_id: str) -> bool:
        return await self._store.has(subject_id, self.provider_id)

    async def disconnect(self, subject_id: str) -> None:
        """Delete stored tokens.  Idempotent."""
        await self._store.delete(subject_id, self.provider_id)
        logger.info("Disconnected %s for subject %s", self.provider_id, subject_id)
