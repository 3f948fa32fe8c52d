import json
import time
from contextlib import asynccontextmanager
from decimal import Decimal

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from fxportal.app_context import AppContext
from fxportal.config import PortalConfig
from fxportal.models import AuthEvent, Profile, Session, User
from fxportal.secrets import load_session, save_session
from fxportal.services import AuthError, NotFoundError, ServiceError, TransientError
from fxportal.session_store import SessionStore
from fxportal.supabase_adapter import (
    SupabaseAvatarStorage,
    SupabaseClient,
    SupabaseIdentityService,
    SupabaseProfileStore,
)

USER_PAYLOAD = {
    "id": "u1",
    "email": "jane@example.com",
    "email_confirmed_at": "2024-01-01T00:00:00Z",
    "user_metadata": {"first_name": "Jane"},
}

PROFILE_ROW = {
    "id": "u1",
    "email": "jane@example.com",
    "first_name": "Jane",
    "last_name": "Doe",
    "phone": "+15550100",
    "account_balance": "10000.00",
    "avatar_url": None,
    "created_at": "2024-01-01T00:00:00Z",
    "updated_at": "2024-01-01T00:00:00Z",
}


def token_payload(prefix="at"):
    return {
        "access_token": f"{prefix}-u1",
        "token_type": "bearer",
        "expires_in": 3600,
        "refresh_token": "rt-u1",
        "user": USER_PAYLOAD,
    }


def fake_supabase(state):
    """Minimal GoTrue/PostgREST/Storage lookalike recording what it receives."""

    async def token(request):
        grant = request.query.get("grant_type")
        body = await request.json()
        state["token_calls"].append(grant)
        if grant == "password":
            if body["email"] == "unconfirmed@example.com":
                return web.json_response(
                    {"error_code": "email_not_confirmed", "msg": "Email not confirmed"}, status=400
                )
            if body["password"] != "correct-horse":
                return web.json_response(
                    {"error_code": "invalid_credentials", "msg": "Invalid login credentials"}, status=400
                )
            return web.json_response(token_payload())
        if grant == "refresh_token":
            if state.get("refresh_rejected"):
                return web.json_response({"error_code": "refresh_token_not_found", "msg": "Invalid Refresh Token"}, status=400)
            return web.json_response(token_payload("refreshed"))
        if grant == "pkce":
            return web.json_response(token_payload("pkce"))
        return web.json_response({"msg": "unsupported grant"}, status=400)

    async def logout(request):
        state["logout_auth"] = request.headers.get("Authorization")
        return web.Response(status=state.get("logout_status", 204))

    async def get_user(request):
        if request.headers.get("Authorization") != "Bearer at-u1":
            return web.json_response({"msg": "invalid JWT"}, status=401)
        return web.json_response(USER_PAYLOAD)

    async def put_user(request):
        body = await request.json()
        user = dict(USER_PAYLOAD, user_metadata=dict(USER_PAYLOAD["user_metadata"], **body.get("data", {})))
        return web.json_response(user)

    async def get_profiles(request):
        state["profile_headers"] = dict(request.headers)
        if state["throttle"] > 0:
            state["throttle"] -= 1
            return web.json_response({"message": "slow down"}, status=429, headers={"Retry-After": "0"})
        if request.query.get("id") == "eq.u1":
            return web.json_response(PROFILE_ROW)
        return web.json_response(
            {"code": "PGRST116", "message": "JSON object requested, multiple (or no) rows returned"}, status=406
        )

    async def post_profiles(request):
        state["upserted"] = await request.json()
        state["prefer"] = request.headers.get("Prefer")
        return web.json_response(dict(PROFILE_ROW, **state["upserted"]), status=201)

    async def patch_profiles(request):
        state["patched"] = (request.query.get("id"), await request.json())
        return web.json_response(dict(PROFILE_ROW, **state["patched"][1]))

    async def upload(request):
        state["uploads"][request.match_info["path"]] = {
            "bucket": request.match_info["bucket"],
            "data": await request.read(),
            "content_type": request.headers.get("Content-Type"),
            "upsert": request.headers.get("x-upsert"),
        }
        return web.json_response({"Key": request.match_info["path"]})

    app = web.Application()
    app.router.add_post("/auth/v1/token", token)
    app.router.add_post("/auth/v1/logout", logout)
    app.router.add_get("/auth/v1/user", get_user)
    app.router.add_put("/auth/v1/user", put_user)
    app.router.add_get("/rest/v1/profiles", get_profiles)
    app.router.add_post("/rest/v1/profiles", post_profiles)
    app.router.add_patch("/rest/v1/profiles", patch_profiles)
    app.router.add_post("/storage/v1/object/{bucket}/{path:.*}", upload)
    return app


def new_state(**overrides):
    state = {"token_calls": [], "throttle": 0, "uploads": {}}
    state.update(overrides)
    return state


@asynccontextmanager
async def running_client(state, **client_kwargs):
    server = TestServer(fake_supabase(state))
    await server.start_server()
    try:
        async with SupabaseClient(str(server.make_url("")), "anon-key", **client_kwargs) as client:
            yield client
    finally:
        await server.close()


def test_jittered_backoff_respects_max():
    """Verify backoff is capped at max_backoff plus jitter."""
    backoff = SupabaseClient._jittered_backoff(10, base=1.0, max_backoff=5.0)
    assert 0 <= backoff <= 5.0 + 5.0 * 0.25


def test_get_retry_after_parses_header():
    assert SupabaseClient._get_retry_after({"Retry-After": "2"}) == 2.0
    assert SupabaseClient._get_retry_after({"Retry-After": "soon"}) is None
    assert SupabaseClient._get_retry_after({}) is None


@pytest.mark.parametrize("path, status, body, expected", [
    ("/rest/v1/profiles", 406, {"code": "PGRST116", "message": "no rows"}, NotFoundError),
    ("/storage/v1/object/avatars/x.png", 404, {"message": "missing"}, NotFoundError),
    ("/auth/v1/token", 400, {"msg": "Invalid login credentials"}, AuthError),
    ("/rest/v1/profiles", 500, {"message": "boom"}, ServiceError),
])
def test_error_mapping(path, status, body, expected):
    error = SupabaseClient._error_from_response(path, status, json.dumps(body))
    assert type(error) is expected
    assert error.status == status


def test_error_mapping_uses_raw_text_when_not_json():
    error = SupabaseClient._error_from_response("/rest/v1/profiles", 502, "Bad Gateway")
    assert str(error) == "Bad Gateway"


@pytest.mark.asyncio
async def test_context_manager_initializes_session():
    client = SupabaseClient("https://proj.supabase.co", "anon-key")
    assert client.session is None
    async with client:
        assert client.session is not None
    assert client.session.closed


@pytest.mark.asyncio
async def test_request_without_session_raises():
    client = SupabaseClient("https://proj.supabase.co", "anon-key")
    with pytest.raises(ServiceError, match="Session not initialized"):
        await client.request("GET", "/rest/v1/profiles")


@pytest.mark.asyncio
async def test_connection_failure_is_transient():
    async with SupabaseClient("http://127.0.0.1:1", "anon-key", timeout=2) as client:
        with pytest.raises(TransientError):
            await client.request("GET", "/auth/v1/user")


@pytest.mark.asyncio
async def test_rate_limited_request_is_retried():
    state = new_state(throttle=2)
    async with running_client(state) as client:
        profiles = SupabaseProfileStore(client, lambda: "at-u1")
        profile = await profiles.get_by_id("u1")
    assert profile.first_name == "Jane"
    assert state["throttle"] == 0


@pytest.mark.asyncio
async def test_rate_limit_raises_after_max_attempts():
    state = new_state(throttle=10)
    async with running_client(state, max_retries=1) as client:
        profiles = SupabaseProfileStore(client, lambda: "at-u1")
        with pytest.raises(TransientError, match="Rate limited"):
            await profiles.get_by_id("u1")


@pytest.mark.asyncio
async def test_sign_in_starts_session_and_emits_event():
    state = new_state()
    async with running_client(state) as client:
        identity = SupabaseIdentityService(client)
        events = []
        identity.subscribe_to_changes(lambda event, session: events.append((event, session)))

        session = await identity.sign_in_with_password("jane@example.com", "correct-horse")

        assert session.access_token == "at-u1"
        assert session.user.email_confirmed
        assert identity.access_token() == "at-u1"
        assert await identity.get_session() == session
        assert events == [(AuthEvent.SIGNED_IN, session)]


@pytest.mark.asyncio
async def test_sign_in_errors_carry_provider_codes():
    async with running_client(new_state()) as client:
        identity = SupabaseIdentityService(client)
        with pytest.raises(AuthError) as unconfirmed:
            await identity.sign_in_with_password("unconfirmed@example.com", "correct-horse")
        with pytest.raises(AuthError, match="Invalid login credentials"):
            await identity.sign_in_with_password("jane@example.com", "wrong")
    assert unconfirmed.value.code == "email_not_confirmed"


@pytest.mark.asyncio
async def test_expired_session_is_refreshed():
    expired = Session("old-token", User.from_dict(USER_PAYLOAD), "rt-u1", int(time.time()) - 60)
    state = new_state()
    async with running_client(state) as client:
        identity = SupabaseIdentityService(client, session=expired)
        events = []
        identity.subscribe_to_changes(lambda event, session: events.append(event))

        session = await identity.get_session()

    assert session.access_token == "refreshed-u1"
    assert state["token_calls"] == ["refresh_token"]
    assert events == [AuthEvent.TOKEN_REFRESHED]


@pytest.mark.asyncio
async def test_rejected_refresh_signs_out_locally():
    expired = Session("old-token", User.from_dict(USER_PAYLOAD), "rt-u1", int(time.time()) - 60)
    async with running_client(new_state(refresh_rejected=True)) as client:
        identity = SupabaseIdentityService(client, session=expired)
        events = []
        identity.subscribe_to_changes(lambda event, session: events.append((event, session)))

        assert await identity.get_session() is None

    assert events == [(AuthEvent.SIGNED_OUT, None)]


@pytest.mark.asyncio
async def test_sign_out_revokes_token_and_emits_event():
    state = new_state()
    async with running_client(state) as client:
        identity = SupabaseIdentityService(client)
        await identity.sign_in_with_password("jane@example.com", "correct-horse")
        events = []
        identity.subscribe_to_changes(lambda event, session: events.append(event))

        await identity.sign_out()

        assert await identity.get_session() is None
    assert state["logout_auth"] == "Bearer at-u1"
    assert events == [AuthEvent.SIGNED_OUT]


@pytest.mark.asyncio
async def test_sign_out_tolerates_already_revoked_token():
    async with running_client(new_state(logout_status=401)) as client:
        identity = SupabaseIdentityService(client)
        await identity.sign_in_with_password("jane@example.com", "correct-horse")
        await identity.sign_out()
        assert identity.access_token() is None


@pytest.mark.asyncio
async def test_sign_out_failure_keeps_session():
    async with running_client(new_state(logout_status=500)) as client:
        identity = SupabaseIdentityService(client)
        await identity.sign_in_with_password("jane@example.com", "correct-horse")
        with pytest.raises(ServiceError):
            await identity.sign_out()
        assert identity.access_token() == "at-u1"


@pytest.mark.asyncio
async def test_code_exchange_and_user_lookup():
    state = new_state()
    async with running_client(state) as client:
        identity = SupabaseIdentityService(client)
        assert await identity.get_user() is None

        session = await identity.exchange_code_for_session("abc", "verifier")
        assert session.access_token == "pkce-u1"
        # the fake only accepts the password-grant token
        assert await identity.get_user() is None

        await identity.sign_in_with_password("jane@example.com", "correct-horse")
        user = await identity.get_user()
    assert user.id == "u1"
    assert state["token_calls"] == ["pkce", "password"]


@pytest.mark.asyncio
async def test_update_user_emits_user_updated():
    async with running_client(new_state()) as client:
        identity = SupabaseIdentityService(client)
        await identity.sign_in_with_password("jane@example.com", "correct-horse")
        events = []
        identity.subscribe_to_changes(lambda event, session: events.append((event, session)))

        user = await identity.update_user(metadata={"first_name": "Janet"})

    assert user.user_metadata["first_name"] == "Janet"
    assert events[0][0] is AuthEvent.USER_UPDATED
    assert events[0][1].user == user


@pytest.mark.asyncio
async def test_profile_store_round_trip():
    state = new_state()
    async with running_client(state) as client:
        profiles = SupabaseProfileStore(client, lambda: "at-u1")

        profile = await profiles.get_by_id("u1")
        assert profile.account_balance == Decimal("10000.00")
        assert state["profile_headers"]["Accept"] == "application/vnd.pgrst.object+json"
        assert state["profile_headers"]["Authorization"] == "Bearer at-u1"

        with pytest.raises(NotFoundError):
            await profiles.get_by_id("missing")

        stored = await profiles.upsert(Profile(id="u1", first_name="Janet", account_balance=Decimal("10000.00")))
        assert stored.first_name == "Janet"
        assert state["upserted"]["account_balance"] == "10000.00"
        assert "merge-duplicates" in state["prefer"]

        patched = await profiles.update("u1", {"phone": "+15550199"})
        assert patched.phone == "+15550199"
        assert state["patched"] == ("eq.u1", {"phone": "+15550199"})


@pytest.mark.asyncio
async def test_avatar_upload_and_public_url():
    state = new_state()
    async with running_client(state) as client:
        avatars = SupabaseAvatarStorage(client, lambda: "at-u1", bucket="avatars")
        path = await avatars.upload("u1/1700000000000.png", b"\x89PNG", "image/png")
        url = avatars.public_url(path)

    upload = state["uploads"]["u1/1700000000000.png"]
    assert upload["bucket"] == "avatars"
    assert upload["data"] == b"\x89PNG"
    assert upload["content_type"] == "image/png"
    assert upload["upsert"] == "true"
    assert url.endswith("/storage/v1/object/public/avatars/u1/1700000000000.png")


@pytest.mark.asyncio
async def test_session_file_restores_login_in_a_fresh_process(tmp_path):
    session_file = str(tmp_path / "session.json")
    state = new_state()
    async with running_client(state) as client:
        first = SupabaseIdentityService(client, session_file=session_file)
        await first.sign_in_with_password("jane@example.com", "correct-horse")
        assert (tmp_path / "session.json").exists()

        # a new identity service, as the next CLI run would build it
        restored = SupabaseIdentityService(client, session_file=session_file)
        store = SessionStore(restored, SupabaseProfileStore(client, restored.access_token))
        await store.initialize()

        state_after = store.get_state()
        assert state_after.user.id == "u1"
        assert state_after.profile.first_name == "Jane"

        await restored.sign_out()
        await store.drain()

    assert state["logout_auth"] == "Bearer at-u1"
    assert not (tmp_path / "session.json").exists()
    assert store.get_state().user is None


@pytest.mark.asyncio
async def test_refreshed_session_is_written_back(tmp_path):
    session_file = str(tmp_path / "session.json")
    save_session(session_file, Session("old-token", User.from_dict(USER_PAYLOAD), "rt-u1", int(time.time()) - 60))
    async with running_client(new_state()) as client:
        identity = SupabaseIdentityService(client, session_file=session_file)
        await identity.get_session()

    assert load_session(session_file).access_token == "refreshed-u1"


@pytest.mark.asyncio
async def test_app_context_from_config_restores_session(tmp_path):
    session_file = str(tmp_path / "session.json")
    state = new_state()
    server = TestServer(fake_supabase(state))
    await server.start_server()
    try:
        config = PortalConfig()
        config.supabase.url = str(server.make_url(""))
        config.supabase.anon_key = "anon-key"
        config.supabase.session_file = session_file

        async with AppContext.from_config(config) as ctx:
            await ctx.accounts.sign_in("jane@example.com", "correct-horse")

        async with AppContext.from_config(config) as ctx:
            assert ctx.store.get_state().user.email == "jane@example.com"
            await ctx.store.sign_out()
    finally:
        await server.close()

    assert state["logout_auth"] == "Bearer at-u1"
    assert load_session(session_file) is None
