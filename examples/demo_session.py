#!/usr/bin/env python
"""
Demo: session synchronization against in-memory provider doubles.

Walks through signup, email confirmation, sign-in, a profile edit, an avatar
upload and sign-out, printing the SessionStore state after each step.
"""

import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from fxportal.app_context import AppContext
from fxportal.logging_setup import setup_logging


def show(label, state):
    user = state.user.email if state.user else None
    name = f"{state.profile.first_name} {state.profile.last_name}" if state.profile else None
    print(f"{label:<28} loading={state.loading!s:<5} user={user} profile={name}")


async def main():
    setup_logging(log_file=None, level="WARNING")

    ctx = AppContext.in_memory()
    ctx.store.on_state_change(lambda s: show("  [observer]", s))

    async with ctx:
        show("after start", ctx.store.get_state())

        result = await ctx.accounts.sign_up({
            "firstName": "Jane",
            "lastName": "Doe",
            "email": "jane@example.com",
            "phone": "+15550100",
            "password": "correct-horse",
            "confirmPassword": "correct-horse",
        })
        print(f"signup: {result.message}")

        # the emailed link carries a one-time code
        code = next(iter(ctx.identity.pending_codes))
        print(f"callback -> {await ctx.accounts.handle_auth_callback(code)}")
        await ctx.store.drain()
        show("after confirmation", ctx.store.get_state())

        await ctx.store.sign_out()
        await ctx.store.drain()
        show("after sign out", ctx.store.get_state())

        result = await ctx.accounts.sign_in("jane@example.com", "correct-horse")
        await ctx.store.drain()
        show(f"after sign in -> {result.redirect_to}", ctx.store.get_state())

        await ctx.accounts.update_profile({
            "firstName": "Janet",
            "lastName": "Doe",
            "email": "jane@example.com",
            "phone": "+15550199",
        })
        show("after profile edit", ctx.store.get_state())

        result = await ctx.accounts.upload_avatar("me.png", b"\x89PNG fake image bytes")
        print(f"avatar: {result.profile.avatar_url if result.profile else result.error}")

        await ctx.store.sign_out()
        await ctx.store.drain()
        show("after sign out", ctx.store.get_state())


if __name__ == "__main__":
    asyncio.run(main())
