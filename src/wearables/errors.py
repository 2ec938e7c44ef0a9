"""Exception taxonomy for the wearable connection engine.

Every failure the engine surfaces to callers is a ``WearableSDKError``
subclass carrying a stable ``code`` string, the provider it concerns (when
known) and a small ``meta`` dict for diagnostics.  Callers are expected to
branch on the class (or ``code``), never on the message text.

Grouping by the UX a caller should show:

    reconnect:  InvalidStateError, MissingTokenError, TokenRefreshError
    transient:  ProviderAPIError, RateLimitedError, ProviderUnavailableError
    setup:      ProviderNotConfiguredError, OAuthError
"""

from __future__ import annotations

from typing import Any


class WearableSDKError(Exception):
    """Base class for all engine failures.

    Attributes:
        code:        Stable machine-readable error code.
        provider_id: Provider slug the failure relates to, if any.
        meta:        Extra diagnostic fields (never secrets).
    """

    code: str = "WEARABLE_SDK_ERROR"

    def __init__(
        self,
        message: str,
        *,
        provider_id: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.provider_id = provider_id
        self.meta = meta or {}

    @property
    def reconnect_required(self) -> bool:
        """True when the only remedy is to restart the authorization flow."""
        return False

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, provider_id={self.provider_id!r})"


# ---------------------------------------------------------------------------
# Authorization / token lifecycle
# ---------------------------------------------------------------------------


class InvalidStateError(WearableSDKError):
    """Callback presented an unknown, expired or already-consumed request id.

    The three cases are deliberately indistinguishable to the caller.
    """

    code = "INVALID_STATE"

    def __init__(self, provider_id: str | None = None) -> None:
        super().__init__(
            "OAuth state parameter is invalid or expired. "
            "The user may need to restart the auth flow.",
            provider_id=provider_id,
        )

    @property
    def reconnect_required(self) -> bool:
        return True


class MissingTokenError(WearableSDKError):
    """No token record exists for the (subject, provider) pair."""

    code = "MISSING_TOKEN"

    def __init__(self, provider_id: str, subject_id: str) -> None:
        super().__init__(
            f"No tokens found for {provider_id} (subject: {subject_id}). "
            "Has the user connected?",
            provider_id=provider_id,
            meta={"subject_id": subject_id},
        )
        self.subject_id = subject_id

    @property
    def reconnect_required(self) -> bool:
        return True


class TokenRefreshError(WearableSDKError):
    """The refresh grant was rejected or no refresh token was available.

    The underlying failure, when there is one, is chained as ``__cause__``.
    """

    code = "TOKEN_REFRESH_FAILED"

    def __init__(self, provider_id: str, subject_id: str, reason: str | None = None) -> None:
        message = (
            f"Failed to refresh token for {provider_id} (subject: {subject_id}). "
            "User needs to reconnect."
        )
        if reason:
            message = f"{message} Reason: {reason}"
        super().__init__(
            message,
            provider_id=provider_id,
            meta={"subject_id": subject_id},
        )
        self.subject_id = subject_id

    @property
    def reconnect_required(self) -> bool:
        return True


class OAuthError(WearableSDKError):
    """The token endpoint answered 2xx but the payload is not a usable token set."""

    code = "OAUTH_ERROR"


# ---------------------------------------------------------------------------
# Provider API
# ---------------------------------------------------------------------------


class ProviderAPIError(WearableSDKError):
    """A provider endpoint returned a non-2xx status.

    Attributes:
        status_code:   HTTP status returned by the provider.
        response_body: Decoded JSON body, raw text, or None.
    """

    code = "PROVIDER_API_ERROR"

    def __init__(
        self,
        provider_id: str,
        status_code: int,
        response_body: Any = None,
        message: str | None = None,
    ) -> None:
        super().__init__(
            message or f"{provider_id} API returned HTTP {status_code}.",
            provider_id=provider_id,
            meta={"status_code": status_code, "response_body": response_body},
        )
        self.status_code = status_code
        self.response_body = response_body


class RateLimitedError(ProviderAPIError):
    """HTTP 429 from a provider.  Never retried by the HTTP layer."""

    code = "RATE_LIMITED"

    def __init__(
        self,
        provider_id: str,
        retry_after_seconds: int | None = None,
        response_body: Any = None,
    ) -> None:
        super().__init__(
            provider_id,
            429,
            response_body,
            message=f"Rate limited by {provider_id}. Retry after backoff.",
        )
        self.retry_after_seconds = retry_after_seconds
        self.meta["retry_after_seconds"] = retry_after_seconds


class ProviderUnavailableError(WearableSDKError):
    """Network-level failures persisted through every retry attempt."""

    code = "PROVIDER_UNAVAILABLE"

    def __init__(self, provider_id: str, attempts: int) -> None:
        super().__init__(
            f"{provider_id} did not respond after {attempts} attempt(s).",
            provider_id=provider_id,
            meta={"attempts": attempts},
        )
        self.attempts = attempts


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ProviderNotConfiguredError(WearableSDKError):
    """The facade was asked for a provider that has no registered engine."""

    code = "PROVIDER_NOT_CONFIGURED"

    def __init__(self, provider_id: str) -> None:
        super().__init__(
            f'Provider "{provider_id}" is not configured. '
            "Pass its credentials when constructing WearableSDK.",
            provider_id=provider_id,
        )
