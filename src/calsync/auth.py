"""Bearer-token collaborators for the calendar API.

The sync engine never performs a login flow itself; it asks an
:class:`AccessTokenProvider` for a token and calls :meth:`invalidate` when the
provider answers 401 so the next request re-authenticates.
"""

from __future__ import annotations

import abc
import asyncio
import json
import os
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from calsync.errors import (
    CalendarCredentialError,
    CalendarTokenRefreshError,
    classify_error,
)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"


class AccessTokenProvider(abc.ABC):
    """Source of bearer tokens for remote calls."""

    @abc.abstractmethod
    async def get_access_token(self, *, force_refresh: bool = False) -> str: ...

    def invalidate(self) -> None:
        """Drop any cached token; the next call must re-authenticate."""


class StaticTokenProvider(AccessTokenProvider):
    """Fixed token, e.g. injected through an environment variable."""

    def __init__(self, token: str) -> None:
        normalized = token.strip()
        if not normalized:
            raise CalendarCredentialError("Access token must be a non-empty string")
        self._token = normalized

    async def get_access_token(self, *, force_refresh: bool = False) -> str:
        return self._token


def _extract_credential_value(payload: dict[str, Any], key: str) -> Any:
    if key in payload:
        return payload[key]

    for nested_key in ("installed", "web"):
        nested = payload.get(nested_key)
        if isinstance(nested, dict) and key in nested:
            return nested[key]
    return None


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return 3600
    if isinstance(value, int | float):
        return int(value) if value > 0 else 3600
    return 3600


class GoogleOAuthCredentials(BaseModel):
    """OAuth client credentials required for refresh-token exchange."""

    model_config = ConfigDict(extra="forbid")

    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)

    @field_validator("client_id", "client_secret", "refresh_token")
    @classmethod
    def _normalize_non_empty(cls, value: str, info: ValidationInfo) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be a non-empty string")
        return normalized

    @classmethod
    def from_json(cls, raw_value: str) -> GoogleOAuthCredentials:
        try:
            payload = json.loads(raw_value)
        except json.JSONDecodeError as exc:
            raise CalendarCredentialError(f"Credential JSON must be valid JSON: {exc.msg}") from exc

        if not isinstance(payload, dict):
            raise CalendarCredentialError("Credential JSON must decode to a JSON object")

        credential_data = {
            key: _extract_credential_value(payload, key)
            for key in ("client_id", "client_secret", "refresh_token")
        }

        missing = sorted(key for key, value in credential_data.items() if value is None)
        if missing:
            raise CalendarCredentialError(
                f"Credential JSON is missing required field(s): {', '.join(missing)}"
            )

        invalid = sorted(
            key
            for key, value in credential_data.items()
            if not isinstance(value, str) or not value.strip()
        )
        if invalid:
            raise CalendarCredentialError(
                f"Credential JSON must contain non-empty string field(s): {', '.join(invalid)}"
            )

        return cls(**credential_data)


class GoogleOAuthTokenProvider(AccessTokenProvider):
    """Refresh-token OAuth helper with access-token caching."""

    def __init__(
        self,
        credentials: GoogleOAuthCredentials,
        http_client: httpx.AsyncClient,
        *,
        token_url: str = GOOGLE_OAUTH_TOKEN_URL,
    ) -> None:
        self._credentials = credentials
        self._http_client = http_client
        self._token_url = token_url
        self._access_token: str | None = None
        self._access_token_expires_at: datetime | None = None
        self._refresh_lock = asyncio.Lock()

    async def get_access_token(self, *, force_refresh: bool = False) -> str:
        if not force_refresh and self._token_is_fresh():
            assert self._access_token is not None
            return self._access_token

        async with self._refresh_lock:
            if not force_refresh and self._token_is_fresh():
                assert self._access_token is not None
                return self._access_token

            await self._refresh_access_token()
            assert self._access_token is not None
            return self._access_token

    def invalidate(self) -> None:
        self._access_token = None
        self._access_token_expires_at = None

    def _token_is_fresh(self) -> bool:
        if self._access_token is None or self._access_token_expires_at is None:
            return False
        return datetime.now(UTC) < self._access_token_expires_at

    async def _refresh_access_token(self) -> None:
        try:
            response = await self._http_client.post(
                self._token_url,
                data={
                    "client_id": self._credentials.client_id,
                    "client_secret": self._credentials.client_secret,
                    "refresh_token": self._credentials.refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            error = classify_error(exc)
            raise CalendarTokenRefreshError(
                f"OAuth token refresh failed ({error.code}): {error.message}"
            ) from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarTokenRefreshError("OAuth token endpoint returned invalid JSON") from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise CalendarTokenRefreshError(
                "OAuth token response is missing a non-empty access_token"
            )

        expires_in_seconds = _coerce_expires_in_seconds(payload.get("expires_in"))
        # Refresh early to avoid edge-of-expiration failures.
        refresh_ttl_seconds = max(expires_in_seconds - 60, 30)

        self._access_token = access_token.strip()
        self._access_token_expires_at = datetime.now(UTC) + timedelta(seconds=refresh_ttl_seconds)


def token_provider_from_env(
    http_client: httpx.AsyncClient,
    *,
    credentials_env: str,
    access_token_env: str,
) -> AccessTokenProvider:
    """Build a token provider from environment variables.

    OAuth credential JSON in ``credentials_env`` wins over a raw token in
    ``access_token_env``.
    """
    raw_credentials = os.environ.get(credentials_env, "").strip()
    if raw_credentials:
        credentials = GoogleOAuthCredentials.from_json(raw_credentials)
        return GoogleOAuthTokenProvider(credentials, http_client)

    raw_token = os.environ.get(access_token_env, "").strip()
    if raw_token:
        return StaticTokenProvider(raw_token)

    raise CalendarCredentialError(
        f"No calendar credentials found; set {credentials_env} or {access_token_env}"
    )
