"""Route guarding: decide where a request should be redirected for a user.

Rules:
    /auth/callback*   always allowed (confirmation links land here)
    /dashboard*       needs a signed-in user with a confirmed email
    /login, /signup   confirmed users are sent to the dashboard
"""
import re
from typing import Optional
from urllib.parse import urlencode

from .models import User

LOGIN_PATH = "/login"
DASHBOARD_PATH = "/dashboard"
CONFIRM_EMAIL_MESSAGE = "Please confirm your email before accessing the dashboard"

_STATIC_RE = re.compile(r"^/(_next/static|_next/image|favicon\.ico)|\.(svg|png|jpg|jpeg|gif|webp)$")


def is_static_asset(pathname: str) -> bool:
    """Assets are served without running the guard."""
    return bool(_STATIC_RE.search(pathname))


def resolve_redirect(pathname: str, user: Optional[User]) -> Optional[str]:
    """Return the redirect target for ``pathname``, or None to let it through."""
    if is_static_asset(pathname) or pathname.startswith("/auth/callback"):
        return None

    if pathname.startswith(DASHBOARD_PATH):
        if user is None:
            return LOGIN_PATH
        if not user.email_confirmed:
            return f"{LOGIN_PATH}?{urlencode({'message': CONFIRM_EMAIL_MESSAGE})}"
        return None

    if pathname in (LOGIN_PATH, "/signup") and user is not None and user.email_confirmed:
        return DASHBOARD_PATH

    return None
