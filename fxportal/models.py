"""
Identity, profile and synchronization state models.

The identity provider owns users and sessions; the profile table owns
profiles. The client only ever caches copies of them, and the single value it
truly owns is SyncState.

Invariants on SyncState:
    - profile is not None  =>  user is not None and profile.id == user.id
    - loading is True only while the first session/profile resolution of an
      initialize() call is outstanding

Examples:
    >>> from decimal import Decimal
    >>> user = User(id="u1", email="jane@example.com")
    >>> profile = Profile(id="u1", email="jane@example.com", first_name="Jane",
    ...                   account_balance=Decimal("10000.00"))
    >>> state = SyncState(user=user, profile=profile, loading=False)
    >>> state.authenticated
    True
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


class AuthEvent(Enum):
    """Change notifications emitted by the identity provider."""

    INITIAL_SESSION = "INITIAL_SESSION"
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    USER_UPDATED = "USER_UPDATED"


@dataclass(frozen=True)
class User:
    """Minimal identity fields for an authenticated user.

    Attributes:
        id: Provider-assigned user id
        email: Login email
        email_confirmed_at: ISO timestamp of confirmation (None until confirmed)
        user_metadata: Free-form signup data (first_name, last_name, phone)
    """

    id: str
    email: str = ""
    email_confirmed_at: Optional[str] = None
    user_metadata: Dict[str, Any] = field(default_factory=dict, hash=False)

    @property
    def email_confirmed(self) -> bool:
        return bool(self.email_confirmed_at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "email_confirmed_at": self.email_confirmed_at,
            "user_metadata": dict(self.user_metadata),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "User":
        return cls(
            id=d["id"],
            email=d.get("email") or "",
            email_confirmed_at=d.get("email_confirmed_at"),
            user_metadata=dict(d.get("user_metadata") or {}),
        )


@dataclass(frozen=True)
class Session:
    """Provider proof of authentication plus the user it belongs to."""

    access_token: str
    user: User
    refresh_token: Optional[str] = None
    expires_at: Optional[int] = None

    def is_expired(self, now: float, leeway: float = 10.0) -> bool:
        if self.expires_at is None:
            return False
        return now + leeway >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at,
            "user": self.user.to_dict(),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Session":
        return cls(
            access_token=d["access_token"],
            refresh_token=d.get("refresh_token"),
            expires_at=int(d["expires_at"]) if d.get("expires_at") is not None else None,
            user=User.from_dict(d["user"]),
        )


@dataclass(frozen=True)
class Profile:
    """Application record attached one-to-one to a user id.

    Attributes:
        id: Same value as the owning User.id
        account_balance: Demo balance (Decimal for precision)
        avatar_url: Public URL of the uploaded avatar (None until uploaded)
        created_at / updated_at: ISO timestamps set by the backing table
    """

    id: str
    email: str = ""
    first_name: str = ""
    last_name: str = ""
    phone: str = ""
    account_balance: Decimal = Decimal("0")
    avatar_url: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def initials(self) -> str:
        if not self.first_name or not self.last_name:
            return "U"
        return f"{self.first_name[0]}{self.last_name[0]}".upper()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "phone": self.phone,
            "account_balance": str(self.account_balance),
            "avatar_url": self.avatar_url,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Profile":
        balance = d.get("account_balance")
        return cls(
            id=d["id"],
            email=d.get("email") or "",
            first_name=d.get("first_name") or "",
            last_name=d.get("last_name") or "",
            phone=d.get("phone") or "",
            account_balance=Decimal(str(balance)) if balance is not None else Decimal("0"),
            avatar_url=d.get("avatar_url"),
            created_at=d.get("created_at"),
            updated_at=d.get("updated_at"),
        )


@dataclass(frozen=True)
class SyncState:
    """Snapshot of who is logged in and what their profile is.

    ``loading`` is only True while a SessionStore initialization is resolving.
    """

    user: Optional[User] = None
    profile: Optional[Profile] = None
    loading: bool = False

    @property
    def authenticated(self) -> bool:
        return self.user is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user": self.user.to_dict() if self.user else None,
            "profile": self.profile.to_dict() if self.profile else None,
            "loading": self.loading,
        }


@dataclass
class ActionResult:
    """Outcome of a user-initiated action (sign-out, sign-in, profile edit...).

    Failures are reported as data rather than raised, so callers can show a
    message without wrapping every call in try/except.
    """

    success: bool
    error: Optional[str] = None
    message: Optional[str] = None
    requires_email_confirmation: bool = False
    redirect_to: Optional[str] = None
    user: Optional[User] = None
    profile: Optional[Profile] = None

    @classmethod
    def ok(cls, **kwargs) -> "ActionResult":
        return cls(success=True, **kwargs)

    @classmethod
    def fail(cls, error: str, **kwargs) -> "ActionResult":
        return cls(success=False, error=error, **kwargs)
