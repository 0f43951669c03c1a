"""Client for the provider's user transfer endpoints.

**Only works once the provider has opened the transfer period for the team.**

Flow:
  1. ``authenticate()`` trades a signed client assertion for a bearer token
     (client_credentials grant, ``user.migration`` scope).
  2. ``exchange()`` trades a team-scoped user identifier for a
     ``transfer_sub`` the receiving team can redeem.

The bearer token is kept for the rest of the run. The provider's sample
response suggests about an hour of validity; rerun the migration from the
last logged cursor if a very long run outlives it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import requests

from scripts.sso_transfer.client_secret import ClientSecretSigner
from scripts.sso_transfer.config import TransferApiConfig

logger = logging.getLogger("sso_transfer.transfer_client")

MAX_BACKOFF_SECONDS = 60.0


class TransferAuthenticationError(Exception):
    """The token endpoint refused the client assertion. Fatal for the run."""


class TransferProtocolError(Exception):
    """A successful response did not carry the expected field.

    This is an API contract break, not a transient fault, so it is never
    retried.
    """

    def __init__(self, message: str, body: object = None):
        super().__init__(message)
        self.body = body


class TransferClient:
    def __init__(
        self,
        config: TransferApiConfig,
        signer: ClientSecretSigner,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.config = config
        self.signer = signer
        self.retry_count = config.retry_count
        self._session = session or requests.Session()
        self._session.headers.update(
            {"Content-Type": "application/x-www-form-urlencoded"}
        )
        self._bearer: Optional[str] = None
        self._auth_lock = asyncio.Lock()

    @property
    def authenticated(self) -> bool:
        return self._bearer is not None

    def close(self) -> None:
        self._session.close()

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def _request_token(self) -> requests.Response:
        return self._session.post(
            self.config.token_url,
            data={
                "grant_type": "client_credentials",
                "scope": self.config.scope,
                "client_id": self.config.client_id,
                "client_secret": self.signer.issue(),
            },
            timeout=self.config.request_timeout,
        )

    async def authenticate(self) -> None:
        """Fetch and cache the bearer token. Concurrent callers share one request."""
        async with self._auth_lock:
            if self._bearer is not None:
                return

            resp = await asyncio.to_thread(self._request_token)
            if not resp.ok:
                raise TransferAuthenticationError(
                    f"Authentication failed: status {resp.status_code}, "
                    f"response: {resp.text}"
                )

            try:
                body = resp.json()
            except ValueError:
                body = None
            if not isinstance(body, dict) or not body.get("access_token"):
                raise TransferAuthenticationError(
                    f"Unexpected authentication response: {body!r}"
                )

            if body.get("expires_in"):
                logger.info(
                    "Transfer client authenticated, token expires in %s seconds",
                    body["expires_in"],
                )
            self._bearer = f"Bearer {body['access_token']}"

    # ------------------------------------------------------------------
    # Transfer token exchange
    # ------------------------------------------------------------------

    def _request_transfer_sub(self, provider_user_ref: str) -> requests.Response:
        return self._session.post(
            self.config.migration_url,
            data={
                "sub": provider_user_ref,
                "target": self.config.target_team_id,
                "client_id": self.config.client_id,
                "client_secret": self.signer.issue(),
            },
            headers={"Authorization": self._bearer},
            timeout=self.config.request_timeout,
        )

    async def _backoff(self, attempt: int) -> None:
        base = self.config.retry_backoff_seconds
        if base <= 0:
            return
        await asyncio.sleep(min(base * (2 ** (attempt - 1)), MAX_BACKOFF_SECONDS))

    async def exchange(
        self, provider_user_ref: str, log_context: Optional[dict] = None
    ) -> Optional[str]:
        """Get a transfer_sub for one user, retrying up to ``retry_count`` times.

        Returns None once every attempt has failed. Raises
        TransferProtocolError if the provider answers 2xx without a
        transfer_sub.
        """
        if self._bearer is None:
            raise RuntimeError("TransferClient.exchange() called before authenticate()")

        context = dict(log_context or {})
        last_error = ""
        for attempt in range(1, self.retry_count + 1):
            log = logger.error if attempt == self.retry_count else logger.info
            try:
                resp = await asyncio.to_thread(
                    self._request_transfer_sub, provider_user_ref
                )
            except requests.RequestException as exc:
                # requests only raises for transport problems, never for HTTP status
                last_error = f"{type(exc).__name__}: {exc}"
                log(
                    "Transfer exchange attempt %d/%d raised %s",
                    attempt,
                    self.retry_count,
                    last_error,
                    extra={**context, "attempt": attempt},
                )
            else:
                if resp.ok:
                    return self._read_transfer_sub(resp)
                last_error = f"status {resp.status_code}: {resp.text}"
                log(
                    "Transfer exchange attempt %d/%d failed with %s",
                    attempt,
                    self.retry_count,
                    last_error,
                    extra={**context, "attempt": attempt},
                )

            if attempt < self.retry_count:
                await self._backoff(attempt)

        logger.error(
            "Giving up on transfer exchange after %d attempts, last error: %s",
            self.retry_count,
            last_error,
            extra=context,
        )
        return None

    @staticmethod
    def _read_transfer_sub(resp: requests.Response) -> str:
        try:
            body = resp.json()
        except ValueError as exc:
            raise TransferProtocolError(
                f"Transfer exchange returned non-JSON body: {resp.text!r}"
            ) from exc
        if not isinstance(body, dict) or not body.get("transfer_sub"):
            raise TransferProtocolError(
                f"Transfer exchange response has no transfer_sub: {body!r}", body
            )
        return body["transfer_sub"]
