"""
FX Portal client core.

Session and profile synchronization for a demonstration forex-trading front
end backed by a hosted auth/database provider (Supabase):
- SessionStore state machine reconciling the start-up session snapshot with
  the provider's change-event stream (last-write-wins by event order)
- Bounded session fetch; provider failures surface as anonymous state
- Account actions: signup, login, email confirmation, profile edits, avatars
- Route guard for dashboard/auth pages
- Async aiohttp adapters for GoTrue, PostgREST and Storage
- Structured logging via loguru
- Configuration-driven (YAML)

Core Modules:
    models: User, Session, Profile, SyncState, ActionResult
    services: Collaborator interfaces, error taxonomy, in-memory doubles
    session_store: Session/profile synchronization state machine
    supabase_adapter: HTTP implementations of the collaborators
    account: Form handlers returning ActionResult
    route_guard: Redirect decisions for protected pages
    app_context: Process-wide wiring with explicit teardown
    config: Configuration loading
    secrets: Credential loading

Example:
    >>> from fxportal.app_context import AppContext
    >>> from fxportal.config import PortalConfig
    >>>
    >>> ctx = AppContext.from_config(PortalConfig.from_yaml("config.yaml"))
    >>> await ctx.start()
    >>> ctx.store.get_state()
"""

__version__ = "0.1.0"
__all__ = [
    "models",
    "services",
    "session_store",
    "supabase_adapter",
    "account",
    "route_guard",
    "app_context",
    "config",
    "secrets",
]
