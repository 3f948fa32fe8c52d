"""
Collaborator interfaces consumed by the session store and account actions.

The hosted identity provider, the profile table and the avatar bucket are
external services. They are modelled here as abstract async adapters so the
core never depends on a concrete transport; ``fxportal.supabase_adapter``
provides the HTTP implementations and this module provides in-memory ones for
tests and demos.

Error taxonomy:
    TransientError  network failure or timeout; callers treat it as "no data"
    ServiceError    provider rejected the call (carries status/code)
    NotFoundError   requested record does not exist
    AuthError       credentials rejected (e.g. "Email not confirmed")
"""

import itertools
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .logging_setup import logger
from .models import AuthEvent, Profile, Session, User

ChangeHandler = Callable[[AuthEvent, Optional[Session]], None]


class PortalError(Exception):
    pass


class TransientError(PortalError):
    """Network error or timeout talking to a provider."""
    pass


class ServiceError(PortalError):
    """Provider returned an error response."""

    def __init__(self, message: str, *, status: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.code = code


class NotFoundError(ServiceError):
    pass


class AuthError(ServiceError):
    pass


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Subscription:
    """Handle for a registered change handler; unsubscribe() is idempotent."""

    def __init__(self, on_unsubscribe: Callable[[], None]):
        self._on_unsubscribe = on_unsubscribe
        self.active = True

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self._on_unsubscribe()


class IdentityService(ABC):
    """Hosted identity provider: sessions, credentials and change events."""

    @abstractmethod
    async def get_session(self) -> Optional[Session]:
        """Return the current session, or None when signed out.

        Raises:
            TransientError: Network failure or timeout
        """

    @abstractmethod
    def subscribe_to_changes(self, handler: ChangeHandler) -> Subscription:
        """Register a handler called with (event, session) for every change.

        Handlers are invoked in the order the provider observes changes.
        """

    @abstractmethod
    async def sign_out(self) -> None:
        """Terminate the current session.

        Raises:
            ServiceError: Provider failed to end the session
        """

    @abstractmethod
    async def sign_up(
        self, email: str, password: str, *, metadata: Dict[str, Any], redirect_to: Optional[str] = None
    ) -> User:
        """Register a new user; returns the (possibly unconfirmed) user."""

    @abstractmethod
    async def sign_in_with_password(self, email: str, password: str) -> Session:
        """Exchange credentials for a session.

        Raises:
            AuthError: Bad credentials or unconfirmed email
        """

    @abstractmethod
    async def exchange_code_for_session(self, code: str, code_verifier: Optional[str] = None) -> Session:
        """Complete an emailed confirmation/magic link."""

    @abstractmethod
    async def resend_confirmation(self, email: str, *, redirect_to: Optional[str] = None) -> None:
        pass

    @abstractmethod
    async def get_user(self) -> Optional[User]:
        """Return the user of the current session, validated with the provider."""

    @abstractmethod
    async def update_user(self, *, email: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None) -> User:
        pass


class ProfileStore(ABC):
    """Authoritative store of profile records keyed by user id."""

    @abstractmethod
    async def get_by_id(self, user_id: str) -> Optional[Profile]:
        """Fetch a profile.

        Raises:
            NotFoundError: No profile for user_id
            ServiceError: Provider failure
        """

    @abstractmethod
    async def upsert(self, profile: Profile) -> Profile:
        pass

    @abstractmethod
    async def update(self, user_id: str, fields: Dict[str, Any]) -> Profile:
        """Patch selected columns of an existing profile and return it."""


class AvatarStorage(ABC):
    """Object storage bucket holding profile avatars."""

    @abstractmethod
    async def upload(self, path: str, data: bytes, content_type: str) -> str:
        """Store data at path (overwriting) and return the stored path."""

    @abstractmethod
    def public_url(self, path: str) -> str:
        pass


class InMemoryIdentityService(IdentityService):
    """Identity provider double that records users and drives change events.

    Tests can call ``emit()`` to push arbitrary events and set ``fail_sign_out``
    or ``session_error`` to exercise failure paths.
    """

    def __init__(self, *, require_email_confirmation: bool = True):
        self.require_email_confirmation = require_email_confirmation
        self.users: Dict[str, User] = {}
        self.passwords: Dict[str, str] = {}
        self.pending_codes: Dict[str, str] = {}
        self.session: Optional[Session] = None
        self.session_error: Optional[Exception] = None
        self.fail_sign_out: Optional[Exception] = None
        self.handlers: Dict[int, ChangeHandler] = {}
        self.get_session_calls = 0
        self._ids = itertools.count(1)

    @property
    def subscriber_count(self) -> int:
        return len(self.handlers)

    def emit(self, event: AuthEvent, session: Optional[Session]) -> None:
        for handler in list(self.handlers.values()):
            handler(event, session)

    def _start_session(self, user: User) -> Session:
        self.session = Session(
            access_token=f"token-{user.id}-{next(self._ids)}",
            refresh_token=f"refresh-{user.id}",
            expires_at=int(time.time()) + 3600,
            user=user,
        )
        return self.session

    async def get_session(self) -> Optional[Session]:
        self.get_session_calls += 1
        if self.session_error is not None:
            raise self.session_error
        return self.session

    def subscribe_to_changes(self, handler: ChangeHandler) -> Subscription:
        key = next(self._ids)
        self.handlers[key] = handler
        return Subscription(lambda: self.handlers.pop(key, None))

    async def sign_out(self) -> None:
        if self.fail_sign_out is not None:
            raise self.fail_sign_out
        self.session = None
        self.emit(AuthEvent.SIGNED_OUT, None)

    async def sign_up(self, email, password, *, metadata, redirect_to=None) -> User:
        if email in self.users:
            raise AuthError("User already registered", status=422)
        user = User(
            id=f"user-{next(self._ids)}",
            email=email,
            email_confirmed_at=None if self.require_email_confirmation else utc_now_iso(),
            user_metadata=dict(metadata),
        )
        self.users[email] = user
        self.passwords[email] = password
        if self.require_email_confirmation:
            self.pending_codes[f"code-{user.id}"] = email
        return user

    def confirm_email(self, email: str) -> User:
        user = self.users[email]
        confirmed = User(user.id, user.email, utc_now_iso(), dict(user.user_metadata))
        self.users[email] = confirmed
        return confirmed

    async def sign_in_with_password(self, email, password) -> Session:
        user = self.users.get(email)
        if user is None or self.passwords.get(email) != password:
            raise AuthError("Invalid login credentials", status=400, code="invalid_credentials")
        if not user.email_confirmed:
            raise AuthError("Email not confirmed", status=400, code="email_not_confirmed")
        session = self._start_session(user)
        self.emit(AuthEvent.SIGNED_IN, session)
        return session

    async def exchange_code_for_session(self, code, code_verifier=None) -> Session:
        email = self.pending_codes.pop(code, None)
        if email is None:
            raise AuthError("Invalid or expired code", status=400, code="bad_code")
        session = self._start_session(self.confirm_email(email))
        self.emit(AuthEvent.SIGNED_IN, session)
        return session

    async def resend_confirmation(self, email, *, redirect_to=None) -> None:
        if email not in self.users:
            raise ServiceError("User not found", status=400)
        logger.debug(f"Confirmation resent | email={email}")

    async def get_user(self) -> Optional[User]:
        return self.session.user if self.session else None

    async def update_user(self, *, email=None, metadata=None) -> User:
        if self.session is None:
            raise AuthError("Not authenticated", status=401)
        old = self.session.user
        merged = dict(old.user_metadata)
        merged.update(metadata or {})
        user = User(old.id, email or old.email, old.email_confirmed_at, merged)
        self.users.pop(old.email, None)
        self.users[user.email] = user
        if email and email != old.email:
            self.passwords[user.email] = self.passwords.pop(old.email, "")
        self.session = Session(self.session.access_token, user, self.session.refresh_token, self.session.expires_at)
        self.emit(AuthEvent.USER_UPDATED, self.session)
        return user


class InMemoryProfileStore(ProfileStore):
    def __init__(self, profiles: Optional[List[Profile]] = None):
        self.profiles: Dict[str, Profile] = {p.id: p for p in profiles or []}
        self.fetches: List[str] = []

    async def get_by_id(self, user_id: str) -> Optional[Profile]:
        self.fetches.append(user_id)
        profile = self.profiles.get(user_id)
        if profile is None:
            raise NotFoundError(f"No profile for {user_id}", status=406, code="PGRST116")
        return profile

    async def upsert(self, profile: Profile) -> Profile:
        now = utc_now_iso()
        existing = self.profiles.get(profile.id)
        data = profile.to_dict()
        data["created_at"] = existing.created_at if existing else (profile.created_at or now)
        data["updated_at"] = now
        stored = Profile.from_dict(data)
        self.profiles[profile.id] = stored
        return stored

    async def update(self, user_id: str, fields: Dict[str, Any]) -> Profile:
        existing = self.profiles.get(user_id)
        if existing is None:
            raise NotFoundError(f"No profile for {user_id}", status=406, code="PGRST116")
        data = existing.to_dict()
        data.update(fields)
        stored = Profile.from_dict(data)
        self.profiles[user_id] = stored
        return stored


class InMemoryAvatarStorage(AvatarStorage):
    def __init__(self, base_url: str = "https://storage.local", bucket: str = "avatars"):
        self.base_url = base_url.rstrip("/")
        self.bucket = bucket
        self.objects: Dict[str, bytes] = {}

    async def upload(self, path: str, data: bytes, content_type: str) -> str:
        self.objects[path] = data
        return path

    def public_url(self, path: str) -> str:
        return f"{self.base_url}/storage/v1/object/public/{self.bucket}/{path}"
