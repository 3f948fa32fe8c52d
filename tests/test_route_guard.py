import pytest

from fxportal.models import User
from fxportal.route_guard import is_static_asset, resolve_redirect

CONFIRMED = User("u1", "jane@example.com", email_confirmed_at="2024-01-01T00:00:00Z")
UNCONFIRMED = User("u2", "new@example.com")


@pytest.mark.parametrize("path", [
    "/_next/static/chunks/main.js",
    "/_next/image",
    "/favicon.ico",
    "/images/logo.svg",
    "/hero.webp",
])
def test_static_assets_skip_the_guard(path):
    assert is_static_asset(path)
    assert resolve_redirect(path, None) is None


@pytest.mark.parametrize("path, user, expected", [
    ("/dashboard", None, "/login"),
    ("/dashboard/profile", None, "/login"),
    ("/dashboard", UNCONFIRMED,
     "/login?message=Please+confirm+your+email+before+accessing+the+dashboard"),
    ("/dashboard", CONFIRMED, None),
    ("/login", CONFIRMED, "/dashboard"),
    ("/signup", CONFIRMED, "/dashboard"),
    ("/login", UNCONFIRMED, None),
    ("/login", None, None),
    ("/auth/callback", None, None),
    ("/auth/callback?code=abc", UNCONFIRMED, None),
    ("/", None, None),
])
def test_resolve_redirect(path, user, expected):
    assert resolve_redirect(path, user) == expected
