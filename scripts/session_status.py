#!/usr/bin/env python
"""Session status CLI: sign in/out against the configured project and show state.

Usage:
    python scripts/session_status.py --config config.yaml status
    python scripts/session_status.py --config config.yaml login --email jane@example.com --password ...
    python scripts/session_status.py --config config.yaml logout
"""
import argparse
import asyncio
import getpass
import sys
from pathlib import Path
from typing import Optional

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from fxportal.app_context import AppContext
from fxportal.config import PortalConfig
from fxportal.logging_setup import setup_logging
from fxportal.models import SyncState
from fxportal.secrets import load_credentials


def format_state(state: SyncState) -> str:
    """Render a SyncState for the terminal."""
    if state.loading:
        return "Loading..."
    if state.user is None:
        return "Signed out"

    lines = [
        f"User ID:         {state.user.id}",
        f"Email:           {state.user.email}",
        f"Email confirmed: {'yes' if state.user.email_confirmed else 'no'}",
    ]
    profile = state.profile
    if profile is None:
        lines.append("Profile:         (none)")
    else:
        name = f"{profile.first_name} {profile.last_name}".strip() or "N/A"
        lines.extend([
            f"Name:            {name}",
            f"Phone:           {profile.phone or 'N/A'}",
            f"Balance:         ${profile.account_balance:,.2f}",
            f"Avatar:          {profile.avatar_url or '(none)'}",
        ])
    return "\n".join(lines)


def load_config(path: str) -> PortalConfig:
    if Path(path).exists():
        config = PortalConfig.from_yaml(path)
    else:
        config = PortalConfig()
    if not config.supabase.anon_key:
        creds = load_credentials()
        config.supabase.url = creds.url
        config.supabase.anon_key = creds.anon_key
    return config


def configure_logging(config: PortalConfig, log_level: Optional[str] = None) -> None:
    """Apply the config's logging section; --log-level overrides its level."""
    setup_logging(
        log_file=config.logging.log_file,
        level=log_level or config.logging.log_level,
    )


async def run(args) -> int:
    config = load_config(args.config)
    configure_logging(config, args.log_level)

    async with AppContext.from_config(config) as ctx:
        if args.command == "login":
            password = args.password or getpass.getpass("Password: ")
            result = await ctx.accounts.sign_in(args.email, password)
            if not result.success:
                print(f"Sign in failed: {result.error}")
                return 1
            await ctx.store.drain()
        elif args.command == "logout":
            result = await ctx.store.sign_out()
            if not result.success:
                print(f"Sign out failed: {result.error}")
                return 1
            await ctx.store.drain()

        print(format_state(ctx.store.get_state()))
    return 0


def main():
    parser = argparse.ArgumentParser(description="Session status CLI")
    parser.add_argument("--config", default="config.yaml", help="Path to YAML config")
    parser.add_argument("--log-level", help="Overrides logging.log_level from the config")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="Show the synchronized session state")

    login = sub.add_parser("login", help="Sign in with email and password")
    login.add_argument("--email", required=True)
    login.add_argument("--password", help="Prompted for when omitted")

    sub.add_parser("logout", help="Sign out of the current session")

    args = parser.parse_args()
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
