"""
Account actions: signup, login, email confirmation, profile edits, avatars.

These are the form handlers of the portal. Every action returns an
ActionResult instead of raising, so a page can render ``result.error``
directly. None of them touch SessionStore state; the identity provider's
change events (and the optional ``on_profile_changed`` hook) do that.

Profiles are created lazily: the first confirmed sign-in (or the email
confirmation callback) creates the row from the user's signup metadata with
the demo starting balance.
"""

import mimetypes
import re
import time
from decimal import Decimal
from typing import Any, Awaitable, Callable, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .logging_setup import logger
from .models import ActionResult, Profile, User
from .services import (
    AuthError,
    AvatarStorage,
    IdentityService,
    NotFoundError,
    PortalError,
    ProfileStore,
    utc_now_iso,
)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

ALLOWED_AVATAR_EXTENSIONS = ("jpg", "jpeg", "png", "gif")
DEFAULT_MAX_AVATAR_BYTES = 5 * 1024 * 1024

AUTH_SUCCESS_PATH = "/auth/success"
AUTH_ERROR_PATH = "/auth/auth-code-error"


class SignUpForm(BaseModel):
    """Signup form fields; accepts the camelCase names the pages post."""

    model_config = ConfigDict(populate_by_name=True)

    first_name: str = Field("", alias="firstName")
    last_name: str = Field("", alias="lastName")
    email: str = ""
    phone: str = ""
    password: str = ""
    confirm_password: str = Field("", alias="confirmPassword")

    @model_validator(mode="after")
    def _validate(self) -> "SignUpForm":
        if not all([self.first_name, self.last_name, self.email, self.phone, self.password]):
            raise ValueError("All fields are required")
        if self.password != self.confirm_password:
            raise ValueError("Passwords do not match")
        if len(self.password) < 8:
            raise ValueError("Password must be at least 8 characters long")
        if not EMAIL_RE.match(self.email):
            raise ValueError("Please enter a valid email address")
        return self


class ProfileUpdateForm(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    first_name: str = Field("", alias="firstName")
    last_name: str = Field("", alias="lastName")
    email: str = ""
    phone: str = ""

    @model_validator(mode="after")
    def _validate(self) -> "ProfileUpdateForm":
        if self.email and not EMAIL_RE.match(self.email):
            raise ValueError("Please enter a valid email address")
        return self


def form_error(e: ValidationError) -> str:
    """First human-readable message from a pydantic ValidationError."""
    err = e.errors()[0]
    cause = (err.get("ctx") or {}).get("error")
    return str(cause) if cause else err["msg"]


class AccountService:
    """Form handlers backed by the identity provider, profile table and storage.

    Attributes:
        site_url: Public site root used for emailed confirmation links
        starting_balance: Demo balance given to newly created profiles
        max_avatar_bytes: Upload size limit
    """

    def __init__(
        self,
        identity: IdentityService,
        profiles: ProfileStore,
        avatars: AvatarStorage,
        *,
        site_url: str = "http://localhost:3000",
        starting_balance: Decimal = Decimal("10000.00"),
        max_avatar_bytes: int = DEFAULT_MAX_AVATAR_BYTES,
        on_profile_changed: Optional[Callable[[], Awaitable[Any]]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.identity = identity
        self.profiles = profiles
        self.avatars = avatars
        self.site_url = site_url.rstrip("/")
        self.starting_balance = starting_balance
        self.max_avatar_bytes = max_avatar_bytes
        self.on_profile_changed = on_profile_changed
        self.clock = clock

    @property
    def callback_url(self) -> str:
        return f"{self.site_url}/auth/callback"

    # -- signup / login ------------------------------------------------------

    async def sign_up(self, form_data: Mapping[str, Any]) -> ActionResult:
        try:
            form = SignUpForm.model_validate(dict(form_data))
        except ValidationError as e:
            error = form_error(e)
            logger.info(f"Signup validation failed | error={error}")
            return ActionResult.fail(error)

        logger.info(f"Signup attempt | email={form.email}")
        try:
            user = await self.identity.sign_up(
                form.email,
                form.password,
                metadata={"first_name": form.first_name, "last_name": form.last_name, "phone": form.phone},
                redirect_to=self.callback_url,
            )
        except PortalError as e:
            logger.error(f"Signup failed | email={form.email} error={e}")
            return ActionResult.fail(str(e))

        if not user.email_confirmed:
            logger.info(f"Signup pending email confirmation | user_id={user.id}")
            return ActionResult.ok(
                requires_email_confirmation=True,
                message=(
                    "Account created successfully! Please check your email and click "
                    "the confirmation link to activate your account."
                ),
                user=user,
            )

        try:
            profile = await self._create_profile(
                user, first_name=form.first_name, last_name=form.last_name, phone=form.phone
            )
        except PortalError as e:
            logger.error(f"Profile creation failed after signup | user_id={user.id} error={e}")
            return ActionResult.fail(f"Failed to create user profile: {e}")

        return ActionResult.ok(
            message="Account created and confirmed successfully! You can now sign in.",
            user=user,
            profile=profile,
        )

    async def sign_in(self, email: str, password: str) -> ActionResult:
        if not email or not password:
            return ActionResult.fail("Email and password are required")

        logger.info(f"Sign in attempt | email={email}")
        try:
            session = await self.identity.sign_in_with_password(email, password)
        except AuthError as e:
            if e.code == "email_not_confirmed" or "Email not confirmed" in str(e):
                return ActionResult.fail(
                    "Please check your email and click the confirmation link before signing in.",
                    requires_email_confirmation=True,
                )
            logger.info(f"Sign in rejected | email={email} error={e}")
            return ActionResult.fail(str(e))
        except PortalError as e:
            logger.error(f"Sign in failed | email={email} error={e}")
            return ActionResult.fail(str(e))

        profile: Optional[Profile] = None
        try:
            profile = await self.ensure_profile(session.user)
        except PortalError as e:
            # a missing profile must not block login
            logger.error(f"Profile check failed during sign in | user_id={session.user.id} error={e}")

        return ActionResult.ok(user=session.user, profile=profile, redirect_to="/dashboard")

    async def ensure_profile(self, user: User) -> Profile:
        """Return the user's profile, creating it from signup metadata if absent."""
        try:
            existing = await self.profiles.get_by_id(user.id)
        except NotFoundError:
            existing = None
        if existing is not None:
            return existing

        meta = user.user_metadata
        logger.info(f"Profile not found; creating | user_id={user.id}")
        return await self._create_profile(
            user,
            first_name=meta.get("first_name") or "User",
            last_name=meta.get("last_name") or "",
            phone=meta.get("phone") or "",
        )

    async def _create_profile(self, user: User, *, first_name: str, last_name: str, phone: str) -> Profile:
        profile = Profile(
            id=user.id,
            email=user.email,
            first_name=first_name,
            last_name=last_name,
            phone=phone,
            account_balance=self.starting_balance,
        )
        stored = await self.profiles.upsert(profile)
        logger.info(f"Profile created | user_id={user.id} balance={stored.account_balance}")
        # a sign-in event may already have fetched (and missed) this profile
        await self._notify_profile_changed()
        return stored

    async def handle_auth_callback(self, code: Optional[str], code_verifier: Optional[str] = None) -> str:
        """Complete an emailed confirmation link; return the path to redirect to."""
        if not code:
            logger.info("Auth callback without code")
            return AUTH_ERROR_PATH

        try:
            session = await self.identity.exchange_code_for_session(code, code_verifier)
        except PortalError as e:
            logger.error(f"Auth code exchange failed | error={e}")
            return AUTH_ERROR_PATH

        try:
            await self.ensure_profile(session.user)
        except PortalError as e:
            logger.error(f"Profile creation failed in auth callback | user_id={session.user.id} error={e}")

        logger.info(f"Email confirmed | user_id={session.user.id}")
        return AUTH_SUCCESS_PATH

    async def resend_confirmation(self, email: str) -> ActionResult:
        try:
            await self.identity.resend_confirmation(email, redirect_to=self.callback_url)
        except PortalError as e:
            logger.error(f"Resend confirmation failed | email={email} error={e}")
            return ActionResult.fail(str(e))
        return ActionResult.ok(message="Confirmation email sent! Please check your inbox.")

    async def get_current_user(self) -> Tuple[Optional[User], Optional[Profile]]:
        try:
            user = await self.identity.get_user()
        except PortalError as e:
            logger.warning(f"Current user lookup failed | error={e}")
            return None, None
        if user is None:
            return None, None
        try:
            profile = await self.profiles.get_by_id(user.id)
        except PortalError as e:
            logger.info(f"Current user has no readable profile | user_id={user.id} error={e}")
            profile = None
        return user, profile

    # -- profile editing -------------------------------------------------------

    async def update_profile(self, form_data: Mapping[str, Any]) -> ActionResult:
        try:
            form = ProfileUpdateForm.model_validate(dict(form_data))
        except ValidationError as e:
            return ActionResult.fail(form_error(e))

        user = await self._authenticated_user()
        if user is None:
            return ActionResult.fail("User not authenticated.")

        try:
            await self.identity.update_user(
                email=form.email or None,
                metadata={"first_name": form.first_name, "last_name": form.last_name, "phone": form.phone},
            )
            profile = await self.profiles.update(
                user.id,
                {
                    "first_name": form.first_name,
                    "last_name": form.last_name,
                    "email": form.email or user.email,
                    "phone": form.phone,
                    "updated_at": utc_now_iso(),
                },
            )
        except PortalError as e:
            logger.error(f"Profile update failed | user_id={user.id} error={e}")
            return ActionResult.fail(str(e))

        logger.info(f"Profile updated | user_id={user.id}")
        await self._notify_profile_changed()
        return ActionResult.ok(message="Profile updated successfully!", profile=profile)

    async def upload_avatar(self, filename: str, data: bytes, content_type: Optional[str] = None) -> ActionResult:
        if not data:
            return ActionResult.fail("No file provided.")
        if len(data) > self.max_avatar_bytes:
            limit_mb = self.max_avatar_bytes // (1024 * 1024)
            return ActionResult.fail(f"File is too large. Max file size: {limit_mb}MB.")

        ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
        if ext not in ALLOWED_AVATAR_EXTENSIONS:
            return ActionResult.fail("Unsupported file type. Allowed formats: JPG, PNG, GIF.")

        user = await self._authenticated_user()
        if user is None:
            return ActionResult.fail("User not authenticated.")

        path = f"{user.id}/{int(self.clock() * 1000)}.{ext}"
        content_type = content_type or mimetypes.guess_type(filename)[0] or "application/octet-stream"

        try:
            await self.avatars.upload(path, data, content_type)
        except PortalError as e:
            logger.error(f"Avatar upload failed | user_id={user.id} path={path} error={e}")
            return ActionResult.fail(f"Failed to upload avatar: {e}")

        public_url = self.avatars.public_url(path)
        try:
            profile = await self.profiles.update(user.id, {"avatar_url": public_url, "updated_at": utc_now_iso()})
        except PortalError as e:
            logger.error(f"Avatar URL update failed | user_id={user.id} error={e}")
            return ActionResult.fail(f"Failed to update profile with avatar URL: {e}")

        logger.info(f"Avatar updated | user_id={user.id} url={public_url}")
        await self._notify_profile_changed()
        return ActionResult.ok(message="Avatar updated successfully!", profile=profile)

    async def _authenticated_user(self) -> Optional[User]:
        try:
            return await self.identity.get_user()
        except PortalError as e:
            logger.warning(f"Authentication check failed | error={e}")
            return None

    async def _notify_profile_changed(self) -> None:
        if self.on_profile_changed is not None:
            await self.on_profile_changed()
