"""Client-credentials token cache.

Tokens are fetched from an OAuth2 token endpoint (Keycloak) with the
``client_credentials`` grant and kept in memory until they expire.
"""

import threading
import time
from collections.abc import Callable
from types import TracebackType
from typing import Literal

import httpx
from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError

from .exceptions import AuthError, CredentialError, DecodeError
from .logging import get_logger
from .utils import mask_sensitive_data, sanitize_log_data

logger = get_logger(__name__)

Clock = Callable[[], float]


class ClientCredentials(BaseModel):
    """OAuth2 client identifier and secret."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    client_id: str = Field(min_length=1)
    client_secret: SecretStr


class Credential(BaseModel):
    """A bearer token and the POSIX time it expires at."""

    model_config = ConfigDict(frozen=True)

    raw: str = Field(min_length=1)
    expires_at: float
    issued_at: float | None = None

    def is_valid(self, now: float | None = None) -> bool:
        """True while the expiration is strictly in the future."""
        if now is None:
            now = time.time()
        return self.expires_at > now

    @property
    def born_expired(self) -> bool:
        """Issued with a zero lifetime (``expires_in`` of 0)."""
        return self.issued_at is not None and self.expires_at <= self.issued_at

    def __repr__(self) -> str:
        return f"Credential(raw={mask_sensitive_data(self.raw)!r}, expires_at={self.expires_at})"

    __str__ = __repr__


class TokenResponse(BaseModel):
    """The part of the token endpoint response we rely on."""

    access_token: str = Field(min_length=1)
    expires_in: int = Field(ge=0, description="Lifetime in seconds")


class CredentialManager:
    """Hands out a valid bearer token, refreshing it when it has expired.

    Concurrent callers that find the token expired share a single refresh:
    whoever takes the lock first performs the exchange, the others wait and
    receive its token, or its error. Callers holding a valid token never
    touch the lock.
    """

    def __init__(
        self,
        credentials: ClientCredentials,
        token_url: str,
        http_client: httpx.Client | None = None,
        timeout: float | None = None,
        clock: Clock = time.time,
    ):
        """Initialize the credential manager.

        Args:
            credentials: Client id and secret for the exchange
            token_url: Token endpoint URL
            http_client: Client to post with; one is created when omitted
            timeout: Request timeout for a created client, None waits forever
            clock: Source of the current POSIX time
        """
        self.credentials = credentials
        self.token_url = token_url
        self._owns_client = http_client is None
        self._http = http_client or httpx.Client(timeout=timeout)
        self._clock = clock

        self._credential: Credential | None = None
        self._refresh_lock = threading.Lock()
        self._generation = 0
        self._last_error: CredentialError | None = None
        self.exchange_count = 0

    @property
    def credential(self) -> Credential | None:
        """Currently cached credential, valid or not."""
        return self._credential

    def has_valid_token(self) -> bool:
        credential = self._credential
        return credential is not None and credential.is_valid(self._clock())

    def get_valid_token(self) -> str:
        """Return a valid token, exchanging client credentials if needed.

        Raises:
            AuthError: If the endpoint refuses the exchange or is unreachable
            DecodeError: If the response payload cannot be read
        """
        # read before the validity check so a refresh finishing in between
        # is seen as a new generation below
        generation = self._generation
        credential = self._credential
        if credential is not None and credential.is_valid(self._clock()):
            return credential.raw

        with self._refresh_lock:
            if self._generation != generation:
                if self._last_error is not None:
                    raise self._last_error
                # None after invalidate(), stale if this caller stalled past
                # its lifetime; both exchange below
                shared = self._credential
                if shared is not None and (
                    shared.is_valid(self._clock()) or shared.born_expired
                ):
                    return shared.raw

            try:
                credential = self._fetch()
            except CredentialError as e:
                self._last_error = e
                self._generation += 1
                raise

            self._credential = credential
            self._last_error = None
            self._generation += 1
            return credential.raw

    def invalidate(self) -> None:
        """Drop the cached credential so the next call exchanges again."""
        with self._refresh_lock:
            self._credential = None
            self._generation += 1
            self._last_error = None
        logger.debug("Credential invalidated")

    def _fetch(self) -> Credential:
        form = {
            "grant_type": "client_credentials",
            "client_id": self.credentials.client_id,
            "client_secret": self.credentials.client_secret.get_secret_value(),
        }

        logger.debug("Requesting token", token_url=self.token_url, **sanitize_log_data(form))
        self.exchange_count += 1
        try:
            response = self._http.post(
                self.token_url,
                data=form,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as e:
            logger.error("Token request failed", token_url=self.token_url, error=str(e))
            raise AuthError(f"Failed to get token: {e}") from e

        if response.status_code != httpx.codes.OK:
            logger.error(
                "Token endpoint refused client credentials",
                status_code=response.status_code,
            )
            raise AuthError(
                f"Failed to get token: {response.text}",
                status_code=response.status_code,
                body=response.text,
            )

        try:
            payload = TokenResponse.model_validate_json(response.content)
        except ValidationError as e:
            raise DecodeError(f"Malformed token response: {e}") from e

        fetched_at = self._clock()
        credential = Credential(
            raw=payload.access_token,
            expires_at=fetched_at + payload.expires_in,
            issued_at=fetched_at,
        )
        logger.info(
            "Token refreshed",
            token=mask_sensitive_data(payload.access_token),
            expires_in=payload.expires_in,
        )
        return credential

    def close(self) -> None:
        """Close the HTTP client if this manager created it."""
        if self._owns_client:
            self._http.close()

    def __enter__(self) -> "CredentialManager":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> Literal[False]:
        self.close()
        return False
