"""Process-wide application context.

Built once at application start and handed to whatever renders pages; there
is no module-level client. ``teardown()`` ends the change subscription and
closes the HTTP session.

Example:
    >>> config = PortalConfig.from_yaml("config.yaml")
    >>> async with AppContext.from_config(config) as ctx:
    ...     result = await ctx.accounts.sign_in(email, password)
    ...     await ctx.store.drain()
    ...     print(ctx.store.get_state())
"""
from typing import Optional

from .account import AccountService
from .config import PortalConfig
from .logging_setup import logger
from .services import (
    AvatarStorage,
    IdentityService,
    InMemoryAvatarStorage,
    InMemoryIdentityService,
    InMemoryProfileStore,
    ProfileStore,
)
from .session_store import SessionStore
from .supabase_adapter import (
    SupabaseAvatarStorage,
    SupabaseClient,
    SupabaseIdentityService,
    SupabaseProfileStore,
)


class AppContext:
    """Owns the provider adapters, the SessionStore and the account actions."""

    def __init__(
        self,
        identity: IdentityService,
        profiles: ProfileStore,
        avatars: AvatarStorage,
        *,
        config: Optional[PortalConfig] = None,
        client: Optional[SupabaseClient] = None,
    ):
        self.config = config or PortalConfig()
        self.client = client
        self.identity = identity
        self.profiles = profiles
        self.avatars = avatars
        self.store = SessionStore(identity, profiles, session_timeout=self.config.session.session_timeout)
        self.accounts = AccountService(
            identity,
            profiles,
            avatars,
            site_url=self.config.site.site_url,
            starting_balance=self.config.session.starting_balance,
            max_avatar_bytes=self.config.session.max_avatar_bytes,
            on_profile_changed=self.store.refresh_profile,
        )
        self._closed = False

    @classmethod
    def from_config(cls, config: PortalConfig) -> "AppContext":
        """Wire the Supabase-backed adapters described by ``config``."""
        sb = config.supabase
        client = SupabaseClient(
            sb.url,
            sb.anon_key,
            timeout=sb.timeout,
            max_retries=sb.max_retries,
            max_backoff_seconds=sb.max_backoff_seconds,
        )
        identity = SupabaseIdentityService(client, session_file=sb.session_file)
        profiles = SupabaseProfileStore(client, identity.access_token)
        avatars = SupabaseAvatarStorage(client, identity.access_token, bucket=config.session.avatar_bucket)
        return cls(identity, profiles, avatars, config=config, client=client)

    @classmethod
    def in_memory(cls, config: Optional[PortalConfig] = None, **identity_kwargs) -> "AppContext":
        """Context backed by in-memory doubles (demos and tests)."""
        return cls(
            InMemoryIdentityService(**identity_kwargs),
            InMemoryProfileStore(),
            InMemoryAvatarStorage(),
            config=config,
        )

    async def start(self) -> None:
        """Open the HTTP session (if any) and synchronize the session store."""
        if self._closed:
            raise RuntimeError("AppContext has been torn down")
        if self.client is not None:
            await self.client.open()
        await self.store.initialize()
        logger.info("Application context started")

    async def teardown(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.store.teardown()
        if self.client is not None:
            await self.client.close()
        logger.info("Application context torn down")

    async def __aenter__(self) -> "AppContext":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.teardown()
