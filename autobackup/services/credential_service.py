"""OAuth credential lifecycle for the remote storage account."""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol
from urllib.parse import urlencode

import httpx
from sqlalchemy import select

from autobackup.exceptions import CredentialError
from autobackup.models.credential import AuthInfo
from autobackup.schemas.token import DriveUser, TokenResponse
from autobackup.services.crypto_service import TokenCipher
from autobackup.services.rwlock import ReadWriteLock

if TYPE_CHECKING:
    from collections.abc import Callable

    from sqlalchemy.orm import Session, sessionmaker

    from autobackup.config import Settings

logger = logging.getLogger(__name__)

AUTHORIZE_URL = "https://login.live.com/oauth20_authorize.srf"
TOKEN_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/token"
GRAPH_ME_URL = "https://graph.microsoft.com/v1.0/me"
REFRESH_MARGIN = timedelta(minutes=5)
HTTP_TIMEOUT = 30.0


def _utcnow() -> datetime:
    return datetime.now(UTC)


def build_authorization_url(client_id: str, scope: str, redirect_uri: str) -> str:
    """URL the account owner opens to grant access and obtain a code."""
    query = urlencode(
        {
            "client_id": client_id,
            "scope": scope,
            "response_type": "code",
            "redirect_uri": redirect_uri,
        }
    )
    return f"{AUTHORIZE_URL}?{query}"


@dataclass(frozen=True)
class Credential:
    """Access/refresh token pair of one linked identity."""

    access_token: str
    refresh_token: str
    expires_at: datetime
    user_id: str

    def is_fresh(self, now: datetime) -> bool:
        """True while more than the refresh margin of validity remains."""
        return now < self.expires_at - REFRESH_MARGIN


class AuthEventKind(StrEnum):
    NEW_CODE = "newCode"
    REFRESH = "refresh"


@dataclass(frozen=True)
class AuthorizationEvent:
    """Message delivered by the authorization callback collaborator."""

    kind: AuthEventKind
    code: str = ""


class CredentialStore(Protocol):
    def load_credential(self) -> Credential | None: ...

    def save_credential(self, credential: Credential) -> None: ...


class SqlCredentialStore:
    """Credential store backed by the ``auth_info`` table, tokens Fernet-encrypted."""

    def __init__(self, session_factory: sessionmaker[Session], secret_key: str) -> None:
        self._session_factory = session_factory
        self._cipher = TokenCipher(secret_key)

    def load_credential(self) -> Credential | None:
        stmt = select(AuthInfo).order_by(AuthInfo.updated_at.desc()).limit(1)
        with self._session_factory() as session:
            row = session.scalars(stmt).first()
        if row is None:
            return None
        return Credential(
            access_token=self._cipher.open(row.access_token, "access_token"),
            refresh_token=self._cipher.open(row.refresh_token, "refresh_token"),
            expires_at=datetime.fromisoformat(row.expires_at),
            user_id=row.user_id,
        )

    def save_credential(self, credential: Credential) -> None:
        """Insert or update the row keyed by the credential's user id."""
        row = AuthInfo(
            user_id=credential.user_id,
            access_token=self._cipher.seal(credential.access_token),
            refresh_token=self._cipher.seal(credential.refresh_token),
            expires_at=credential.expires_at.isoformat(),
            updated_at=_utcnow().isoformat(),
        )
        with self._session_factory() as session, session.begin():
            session.merge(row)


class CredentialManager:
    """Owns the live credential: bootstrap, refresh, and concurrent reads.

    Reads take the shared side of a read/write lock, refreshes the exclusive
    side, so an upload never observes a half-replaced token pair. Authorization
    codes arrive as ``AuthorizationEvent`` messages through :meth:`deliver`.
    """

    def __init__(
        self,
        settings: Settings,
        store: CredentialStore,
        *,
        http_client: httpx.Client | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._client_id = settings.client_id
        self._client_secret = settings.client_secret
        self._redirect_uri = settings.redirect_uri
        self._scope = settings.scope
        self._refresh_interval = float(settings.token_refresh_interval_seconds)
        self._store = store
        self._owns_client = http_client is None
        self._http = http_client or httpx.Client(timeout=HTTP_TIMEOUT)
        self._clock = clock
        self._lock = ReadWriteLock()
        self._credential: Credential | None = None
        self._events: queue.Queue[AuthorizationEvent] = queue.Queue()
        self._stop = threading.Event()
        self._worker: threading.Thread | None = None

    def authorization_url(self) -> str:
        return build_authorization_url(self._client_id, self._scope, self._redirect_uri)

    def deliver(self, event: AuthorizationEvent) -> None:
        """Hand an authorization event to whoever is waiting for it."""
        self._events.put(event)

    def bootstrap(
        self,
        timeout: float | None = None,
        on_authorization_required: Callable[[str], None] | None = None,
    ) -> Credential:
        """Load the stored credential or wait for an authorization code.

        Blocks until a ``newCode`` event has been exchanged successfully. A failed
        exchange is logged and the next code is awaited. Raises CredentialError
        when *timeout* seconds pass without a usable code.
        *on_authorization_required* is called with the authorize URL before waiting.
        """
        stored = self._store.load_credential()
        if stored is not None:
            with self._lock.write_locked():
                self._credential = stored
            logger.info("Loaded stored credential for user %s", stored.user_id)
            return stored

        url = self.authorization_url()
        logger.warning("No linked storage account. Authorize at: %s", url)
        if on_authorization_required is not None:
            on_authorization_required(url)
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            try:
                event = self._events.get(timeout=remaining)
            except queue.Empty:
                raise CredentialError(
                    "Timed out waiting for an authorization code", timeout=timeout
                ) from None
            if event.kind != AuthEventKind.NEW_CODE or not event.code:
                logger.debug("Ignoring %s event while waiting for authorization", event.kind)
                continue
            try:
                return self._exchange_code(event.code)
            except CredentialError as exc:
                logger.error("Authorization code exchange failed: %s", exc)

    def get_access_token(self) -> str:
        """Return the current access token without refreshing it."""
        with self._lock.read_locked():
            if self._credential is None:
                raise CredentialError("No credential available; authorization is required")
            return self._credential.access_token

    def fresh_access_token(self) -> str:
        """Refresh if close to expiry, then return the access token."""
        self.refresh_access_token()
        return self.get_access_token()

    def refresh_access_token(self) -> bool:
        """Exchange the refresh token when less than 5 minutes of validity remain.

        Returns True when a new token pair was obtained and persisted.
        """
        with self._lock.write_locked():
            current = self._credential
            if current is None:
                raise CredentialError("No credential available; authorization is required")
            if current.is_fresh(self._clock()):
                return False
            token = self._request_token(
                {"refresh_token": current.refresh_token, "grant_type": "refresh_token"}
            )
            credential = self._credential_from(token, token.user_id or current.user_id)
            self._store.save_credential(credential)
            self._credential = credential
        logger.info("Access token refreshed, valid until %s", credential.expires_at.isoformat())
        return True

    def start_background_refresh(self) -> None:
        """Start the worker that refreshes periodically and handles late events."""
        if self._worker is not None and self._worker.is_alive():
            return
        self._stop.clear()
        self._worker = threading.Thread(
            target=self._run_worker, name="credential-refresh", daemon=True
        )
        self._worker.start()

    def shutdown(self, grace: float = 5.0) -> None:
        """Stop the background worker, waiting up to *grace* seconds for it.

        The HTTP client is only closed once the worker has exited; a worker still
        inside a token request keeps using it.
        """
        self._stop.set()
        self._events.put(AuthorizationEvent(AuthEventKind.REFRESH))
        worker, self._worker = self._worker, None
        if worker is not None:
            worker.join(grace)
            if worker.is_alive():
                logger.warning(
                    "Credential worker did not stop within %.1fs; leaving HTTP client open", grace
                )
                return
        if self._owns_client:
            self._http.close()

    def _run_worker(self) -> None:
        while not self._stop.is_set():
            try:
                event = self._events.get(timeout=self._refresh_interval)
            except queue.Empty:
                event = AuthorizationEvent(AuthEventKind.REFRESH)
            if self._stop.is_set():
                break
            try:
                if event.kind == AuthEventKind.NEW_CODE and event.code:
                    self._exchange_code(event.code)
                else:
                    self.refresh_access_token()
            except CredentialError as exc:
                logger.error("Background credential update failed: %s", exc)

    def _exchange_code(self, code: str) -> Credential:
        # A new code may link a different account, so the identity is never inherited.
        with self._lock.write_locked():
            token = self._request_token({"code": code, "grant_type": "authorization_code"})
            user_id = token.user_id or self._fetch_user_id(token.access_token)
            credential = self._credential_from(token, user_id)
            self._store.save_credential(credential)
            self._credential = credential
        logger.info("Linked storage account %s", user_id)
        return credential

    def _credential_from(self, token: TokenResponse, user_id: str) -> Credential:
        return Credential(
            access_token=token.access_token,
            refresh_token=token.refresh_token,
            expires_at=self._clock() + timedelta(seconds=token.expires_in),
            user_id=user_id,
        )

    def _request_token(self, grant: dict[str, str]) -> TokenResponse:
        data = {
            "client_id": self._client_id,
            "redirect_uri": self._redirect_uri,
            "client_secret": self._client_secret,
            **grant,
        }
        grant_type = grant["grant_type"]
        try:
            resp = self._http.post(TOKEN_URL, data=data)
        except httpx.HTTPError as exc:
            raise CredentialError("Token endpoint unreachable", grant_type=grant_type) from exc
        if resp.status_code != 200:
            raise CredentialError(
                "Token request rejected",
                grant_type=grant_type,
                status_code=resp.status_code,
                body=resp.text[:500],
            )
        try:
            return TokenResponse.model_validate(resp.json())
        except ValueError as exc:
            raise CredentialError("Malformed token response", grant_type=grant_type) from exc

    def _fetch_user_id(self, access_token: str) -> str:
        try:
            resp = self._http.get(
                GRAPH_ME_URL, headers={"Authorization": f"Bearer {access_token}"}
            )
        except httpx.HTTPError as exc:
            raise CredentialError("User lookup failed") from exc
        if resp.status_code != 200:
            raise CredentialError("User lookup failed", status_code=resp.status_code)
        try:
            return DriveUser.model_validate(resp.json()).id
        except ValueError as exc:
            raise CredentialError("Malformed user response") from exc
