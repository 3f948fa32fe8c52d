"""
Async adapters for the hosted Supabase project (auth, profiles table, storage).

SupabaseClient owns one aiohttp session and the retry policy; the three
service classes below translate the collaborator interfaces from
``fxportal.services`` into GoTrue, PostgREST and Storage HTTP calls.

Usage:
    async with SupabaseClient(url, anon_key) as client:
        identity = SupabaseIdentityService(client)
        profiles = SupabaseProfileStore(client, identity.access_token)
        session = await identity.sign_in_with_password(email, password)
"""
import asyncio
import itertools
import json
import random
import time
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

import aiohttp

from .logging_setup import logger
from .models import AuthEvent, Profile, Session, User
from .secrets import clear_session, load_session, save_session
from .services import (
    AuthError,
    AvatarStorage,
    ChangeHandler,
    IdentityService,
    NotFoundError,
    ProfileStore,
    ServiceError,
    Subscription,
    TransientError,
)

TokenProvider = Callable[[], Optional[str]]

PGRST_NO_ROWS = "PGRST116"
OBJECT_ACCEPT = "application/vnd.pgrst.object+json"


def _jsonable(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {k: str(v) if isinstance(v, Decimal) else v for k, v in fields.items()}


class SupabaseClient:
    """Thin HTTP client with rate-limit-aware retry.

    Features:
    - ``apikey`` + bearer headers on every request (user token when given).
    - 429 handling: honours ``Retry-After``, else jittered exponential backoff.
    - Error mapping: timeouts/connection errors -> TransientError, PostgREST
      "no rows" -> NotFoundError, rejected auth calls -> AuthError, anything
      else non-2xx -> ServiceError.
    """

    def __init__(
        self,
        url: str,
        anon_key: str,
        *,
        timeout: int = 10,
        max_retries: int = 5,
        max_backoff_seconds: float = 30.0,
    ):
        self.url = url.rstrip("/")
        self.anon_key = anon_key
        self.timeout = timeout
        self.max_retries = max_retries
        self.max_backoff_seconds = max_backoff_seconds
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def open(self) -> None:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession()

    async def close(self) -> None:
        if self.session and not self.session.closed:
            await self.session.close()

    @staticmethod
    def _jittered_backoff(attempt: int, base: float = 0.5, max_backoff: float = 30.0) -> float:
        """Compute jittered exponential backoff."""
        delay = min(base * (2 ** attempt), max_backoff)
        jitter = delay * 0.25 * (2 * random.random() - 1)
        return max(0, delay + jitter)

    @staticmethod
    def _get_retry_after(headers) -> Optional[float]:
        """Extract Retry-After (seconds) if present and numeric."""
        if "Retry-After" in headers:
            try:
                return max(0.0, float(headers["Retry-After"]))
            except (ValueError, TypeError):
                return None
        return None

    @staticmethod
    def _error_from_response(path: str, status: int, text: str) -> ServiceError:
        try:
            payload = json.loads(text) if text else {}
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}
        message = (
            payload.get("msg")
            or payload.get("message")
            or payload.get("error_description")
            or payload.get("error")
            or text
            or f"HTTP {status}"
        )
        code = payload.get("error_code") or payload.get("code")
        code = str(code) if code is not None else None

        if code == PGRST_NO_ROWS or status == 404:
            return NotFoundError(message, status=status, code=code)
        if path.startswith("/auth/") and status in (400, 401, 403, 422):
            return AuthError(message, status=status, code=code)
        return ServiceError(message, status=status, code=code)

    def _headers(self, access_token: Optional[str], extra: Optional[Dict[str, str]]) -> Dict[str, str]:
        headers = {
            "apikey": self.anon_key,
            "Authorization": f"Bearer {access_token or self.anon_key}",
        }
        if extra:
            headers.update(extra)
        return headers

    async def request(
        self,
        method: str,
        path: str,
        *,
        json_body: Optional[Any] = None,
        data: Optional[bytes] = None,
        params: Optional[Dict[str, str]] = None,
        access_token: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        """Execute a request with retry on 429 and return the decoded JSON body."""
        if not self.session:
            raise ServiceError("Session not initialized; use 'async with' or open()")

        request_path = path if path.startswith("/") else f"/{path}"
        url = f"{self.url}{request_path}"
        req_headers = self._headers(access_token, headers)

        for attempt in range(self.max_retries + 1):
            try:
                async with self.session.request(
                    method,
                    url,
                    headers=req_headers,
                    json=json_body,
                    data=data,
                    params=params,
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                ) as resp:
                    status = resp.status
                    text = await resp.text()
                    retry_after = self._get_retry_after(resp.headers)
            except asyncio.TimeoutError as e:
                raise TransientError(f"Request timeout: {method} {request_path}") from e
            except aiohttp.ClientError as e:
                raise TransientError(f"Request failed: {method} {request_path}: {e}") from e

            if status == 429:
                if attempt >= self.max_retries:
                    raise TransientError("Rate limited and max retry attempts exceeded")
                delay = retry_after
                if delay is None:
                    delay = self._jittered_backoff(attempt, max_backoff=self.max_backoff_seconds)
                delay = min(delay, self.max_backoff_seconds)
                logger.warning(f"Rate limited | path={request_path} attempt={attempt} retry_in={delay:.2f}s")
                await asyncio.sleep(delay)
                continue

            if not (200 <= status < 300):
                raise self._error_from_response(request_path, status, text)

            return json.loads(text) if text else None

        raise TransientError("Rate limited and max retry attempts exceeded")


class SupabaseIdentityService(IdentityService):
    """GoTrue-backed identity service.

    The current session lives in memory and, when ``session_file`` is given,
    in that file as well, so a later process starts signed in. Change events
    are emitted locally after each successful state-changing call, in call
    order.
    """

    def __init__(
        self,
        client: SupabaseClient,
        *,
        session: Optional[Session] = None,
        session_file: Optional[str] = None,
    ):
        self.client = client
        self.session_file = session_file
        if session is None and session_file:
            session = load_session(session_file)
            if session is not None:
                logger.info(f"Session restored | user_id={session.user.id}")
        self._session = session
        self._handlers: Dict[int, ChangeHandler] = {}
        self._ids = itertools.count(1)

    def access_token(self) -> Optional[str]:
        return self._session.access_token if self._session else None

    def _emit(self, event: AuthEvent, session: Optional[Session]) -> None:
        for handler in list(self._handlers.values()):
            try:
                handler(event, session)
            except Exception:
                logger.exception(f"Auth change handler raised | event={event.value}")

    def subscribe_to_changes(self, handler: ChangeHandler) -> Subscription:
        key = next(self._ids)
        self._handlers[key] = handler
        return Subscription(lambda: self._handlers.pop(key, None))

    @staticmethod
    def _session_from_payload(data: Dict[str, Any]) -> Session:
        expires_at = data.get("expires_at")
        if expires_at is None and data.get("expires_in") is not None:
            expires_at = int(time.time()) + int(data["expires_in"])
        return Session(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=int(expires_at) if expires_at is not None else None,
            user=User.from_dict(data["user"]),
        )

    def _store_session(self, session: Optional[Session]) -> None:
        self._session = session
        if not self.session_file:
            return
        if session is None:
            clear_session(self.session_file)
        else:
            save_session(self.session_file, session)

    def _start_session(self, data: Dict[str, Any], event: AuthEvent) -> Session:
        self._store_session(self._session_from_payload(data))
        logger.info(f"Session started | event={event.value} user_id={self._session.user.id}")
        self._emit(event, self._session)
        return self._session

    def _end_session(self) -> None:
        self._store_session(None)
        self._emit(AuthEvent.SIGNED_OUT, None)

    async def get_session(self) -> Optional[Session]:
        session = self._session
        if session is None:
            return None
        if not session.is_expired(time.time()):
            return session
        if not session.refresh_token:
            self._end_session()
            return None
        try:
            data = await self.client.request(
                "POST",
                "/auth/v1/token",
                params={"grant_type": "refresh_token"},
                json_body={"refresh_token": session.refresh_token},
            )
        except AuthError as e:
            logger.warning(f"Session refresh rejected; signing out locally | error={e}")
            self._end_session()
            return None
        return self._start_session(data, AuthEvent.TOKEN_REFRESHED)

    async def sign_up(self, email, password, *, metadata, redirect_to=None) -> User:
        params = {"redirect_to": redirect_to} if redirect_to else None
        data = await self.client.request(
            "POST",
            "/auth/v1/signup",
            params=params,
            json_body={"email": email, "password": password, "data": metadata},
        )
        if data and data.get("access_token"):
            return self._start_session(data, AuthEvent.SIGNED_IN).user
        if data and "user" in data and data["user"]:
            return User.from_dict(data["user"])
        if not data or "id" not in data:
            raise ServiceError("Signup returned no user")
        return User.from_dict(data)

    async def sign_in_with_password(self, email, password) -> Session:
        data = await self.client.request(
            "POST",
            "/auth/v1/token",
            params={"grant_type": "password"},
            json_body={"email": email, "password": password},
        )
        if not data or not data.get("access_token"):
            raise AuthError("Authentication failed - no session created")
        return self._start_session(data, AuthEvent.SIGNED_IN)

    async def exchange_code_for_session(self, code, code_verifier=None) -> Session:
        data = await self.client.request(
            "POST",
            "/auth/v1/token",
            params={"grant_type": "pkce"},
            json_body={"auth_code": code, "code_verifier": code_verifier or ""},
        )
        if not data or not data.get("access_token"):
            raise AuthError("Code exchange returned no session")
        return self._start_session(data, AuthEvent.SIGNED_IN)

    async def resend_confirmation(self, email, *, redirect_to=None) -> None:
        params = {"redirect_to": redirect_to} if redirect_to else None
        await self.client.request(
            "POST", "/auth/v1/resend", params=params, json_body={"type": "signup", "email": email}
        )

    async def get_user(self) -> Optional[User]:
        token = self.access_token()
        if token is None:
            return None
        try:
            data = await self.client.request("GET", "/auth/v1/user", access_token=token)
        except AuthError as e:
            logger.info(f"Access token rejected | error={e}")
            return None
        return User.from_dict(data)

    async def update_user(self, *, email=None, metadata=None) -> User:
        token = self.access_token()
        if token is None:
            raise AuthError("Not authenticated", status=401)
        body: Dict[str, Any] = {}
        if email:
            body["email"] = email
        if metadata is not None:
            body["data"] = metadata
        data = await self.client.request("PUT", "/auth/v1/user", json_body=body, access_token=token)
        user = User.from_dict(data)
        if self._session is not None:
            self._store_session(Session(
                access_token=self._session.access_token,
                refresh_token=self._session.refresh_token,
                expires_at=self._session.expires_at,
                user=user,
            ))
            self._emit(AuthEvent.USER_UPDATED, self._session)
        return user

    async def sign_out(self) -> None:
        token = self.access_token()
        if token is not None:
            try:
                await self.client.request("POST", "/auth/v1/logout", access_token=token)
            except AuthError as e:
                # token already revoked/expired on the server: nothing left to end
                if e.status not in (401, 403, 404):
                    raise
                logger.info(f"Session already ended on provider | status={e.status}")
        self._end_session()


class SupabaseProfileStore(ProfileStore):
    """PostgREST access to the ``profiles`` table."""

    def __init__(self, client: SupabaseClient, token_provider: TokenProvider, *, table: str = "profiles"):
        self.client = client
        self.token_provider = token_provider
        self.path = f"/rest/v1/{table}"

    async def get_by_id(self, user_id: str) -> Optional[Profile]:
        data = await self.client.request(
            "GET",
            self.path,
            params={"id": f"eq.{user_id}", "select": "*"},
            access_token=self.token_provider(),
            headers={"Accept": OBJECT_ACCEPT},
        )
        return Profile.from_dict(data) if data else None

    async def upsert(self, profile: Profile) -> Profile:
        body = {k: v for k, v in profile.to_dict().items() if v is not None}
        data = await self.client.request(
            "POST",
            self.path,
            json_body=body,
            access_token=self.token_provider(),
            headers={
                "Accept": OBJECT_ACCEPT,
                "Prefer": "resolution=merge-duplicates,return=representation",
            },
        )
        return Profile.from_dict(data)

    async def update(self, user_id: str, fields: Dict[str, Any]) -> Profile:
        data = await self.client.request(
            "PATCH",
            self.path,
            params={"id": f"eq.{user_id}"},
            json_body=_jsonable(fields),
            access_token=self.token_provider(),
            headers={"Accept": OBJECT_ACCEPT, "Prefer": "return=representation"},
        )
        return Profile.from_dict(data)


class SupabaseAvatarStorage(AvatarStorage):
    """Storage API access to a public avatars bucket."""

    def __init__(self, client: SupabaseClient, token_provider: TokenProvider, *, bucket: str = "avatars"):
        self.client = client
        self.token_provider = token_provider
        self.bucket = bucket

    async def upload(self, path: str, data: bytes, content_type: str) -> str:
        await self.client.request(
            "POST",
            f"/storage/v1/object/{self.bucket}/{path}",
            data=data,
            access_token=self.token_provider(),
            headers={
                "Content-Type": content_type,
                "x-upsert": "true",
                "cache-control": "max-age=3600",
            },
        )
        return path

    def public_url(self, path: str) -> str:
        return f"{self.client.url}/storage/v1/object/public/{self.bucket}/{path}"
