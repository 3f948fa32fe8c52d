"""
Session/profile synchronization state machine.

SessionStore is the single source of truth for "who is logged in and what is
their profile". It reconciles a pull-based snapshot taken at start-up with the
push-based stream of change events from the identity provider.

Phases:
    UNINITIALIZED -> INITIALIZING -> READY
    any phase -> TORN_DOWN (terminal)

Ordering rules:
    - Change events are applied in arrival order; the synchronous part of an
      event (setting ``user``) happens at delivery time.
    - Every profile fetch is tagged with the generation that launched it. A
      result is applied only if no newer event or refresh has happened since
      and the state's user id still matches, otherwise it is discarded.
    - If an event arrives while the start-up snapshot is in flight, the event
      stream wins and the snapshot is dropped.

Re-entrancy:
    initialize() while INITIALIZING joins the in-flight initialization.
    initialize() from READY performs a full re-initialization (loading goes
    back to True). initialize() after teardown() raises RuntimeError.

Example:
    >>> store = SessionStore(identity, profiles)
    >>> unsubscribe = store.on_state_change(render)
    >>> await store.initialize()
    >>> store.get_state().loading
    False
"""

import asyncio
from dataclasses import replace
from enum import Enum, auto
from typing import Callable, List, Optional, Set, Tuple

from .logging_setup import logger
from .models import ActionResult, AuthEvent, Profile, Session, SyncState
from .services import IdentityService, NotFoundError, ProfileStore, Subscription

StateCallback = Callable[[SyncState], None]

DEFAULT_SESSION_TIMEOUT = 5.0


class StorePhase(Enum):
    """Control states of a SessionStore instance."""

    UNINITIALIZED = auto()
    INITIALIZING = auto()
    READY = auto()
    TORN_DOWN = auto()


class SessionStore:
    """Keeps SyncState consistent with the identity provider and profile table.

    Attributes:
        identity: IdentityService adapter
        profiles: ProfileStore adapter
        session_timeout: Bound on the start-up session fetch, in seconds
        phase: Current StorePhase

    Note:
        State is only ever mutated by the store's own handlers. Callers read
        snapshots via get_state() or register an observer with
        on_state_change().
    """

    def __init__(
        self,
        identity: IdentityService,
        profiles: ProfileStore,
        *,
        session_timeout: float = DEFAULT_SESSION_TIMEOUT,
    ) -> None:
        self.identity = identity
        self.profiles = profiles
        self.session_timeout = session_timeout
        self.phase = StorePhase.UNINITIALIZED
        self._state = SyncState()
        self._generation = 0
        self._events_seen = 0
        self._resolved = False
        self._subscription: Optional[Subscription] = None
        self._init_task: Optional[asyncio.Task] = None
        self._fetches: Set[asyncio.Task] = set()
        self._observers: List[StateCallback] = []

    # -- read side ---------------------------------------------------------

    def get_state(self) -> SyncState:
        """Return the current immutable state snapshot."""
        return self._state

    def on_state_change(self, callback: StateCallback) -> Callable[[], None]:
        """Register an observer called with every new SyncState.

        Returns:
            A callable that removes the observer
        """
        self._observers.append(callback)

        def unsubscribe() -> None:
            if callback in self._observers:
                self._observers.remove(callback)

        return unsubscribe

    @property
    def subscribed(self) -> bool:
        return self._subscription is not None and self._subscription.active

    # -- lifecycle -----------------------------------------------------------

    async def initialize(self) -> None:
        """Take the start-up snapshot and subscribe to change events.

        Never raises for provider failures: a failed or timed-out session
        fetch leaves the store anonymous, a failed profile fetch leaves
        ``profile`` as None. ``loading`` is cleared exactly once per call.

        Raises:
            RuntimeError: If the store has been torn down
        """
        if self.phase is StorePhase.TORN_DOWN:
            raise RuntimeError("SessionStore has been torn down")

        if self._init_task is not None and not self._init_task.done():
            logger.debug("Initialization already in progress; joining it")
        else:
            self._cancel_subscription()
            self.phase = StorePhase.INITIALIZING
            self._resolved = False
            self._set_state(loading=True)
            logger.info(f"Session store initializing | timeout={self.session_timeout}s")
            # subscribe before yielding so no event during the snapshot fetch is lost
            self._subscription = self.identity.subscribe_to_changes(self._handle_notification)
            self._init_task = asyncio.ensure_future(self._initialize(self._events_seen))

        try:
            await asyncio.shield(self._init_task)
        except asyncio.CancelledError:
            if self.phase is not StorePhase.TORN_DOWN:
                raise

    async def _initialize(self, events_before: int) -> None:
        session = await self._fetch_session_snapshot()

        if self._events_seen != events_before:
            logger.debug("Change event arrived during session fetch; discarding snapshot")
        else:
            tag = self._apply_change(AuthEvent.INITIAL_SESSION, session)
            if tag is not None:
                await self._fetch_profile(*tag)

        await self.drain()
        self._resolve()

    async def _fetch_session_snapshot(self) -> Optional[Session]:
        try:
            return await asyncio.wait_for(self.identity.get_session(), timeout=self.session_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Session fetch timed out; treating as signed out | timeout={self.session_timeout}s")
        except Exception as e:
            logger.warning(f"Session fetch failed; treating as signed out | error={e!r}")
        return None

    def _resolve(self) -> None:
        if self._resolved or self.phase is StorePhase.TORN_DOWN:
            return
        self._resolved = True
        self.phase = StorePhase.READY
        self._set_state(loading=False)
        user = self._state.user
        logger.info(
            f"Session store ready | user_id={user.id if user else None} "
            f"profile_loaded={self._state.profile is not None}"
        )

    def teardown(self) -> None:
        """Cancel the change subscription and stop applying results. Terminal."""
        if self.phase is StorePhase.TORN_DOWN:
            return
        self.phase = StorePhase.TORN_DOWN
        self._cancel_subscription()
        if self._init_task is not None and not self._init_task.done():
            self._init_task.cancel()
        # in-flight fetches keep running but their results no longer match
        self._generation += 1
        self._observers.clear()
        logger.info("Session store torn down")

    def _cancel_subscription(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    # -- change events -------------------------------------------------------

    def _handle_notification(self, event: AuthEvent, session: Optional[Session]) -> None:
        """Subscription callback: apply synchronously, fetch in the background."""
        if self.phase is StorePhase.TORN_DOWN:
            return
        tag = self._apply_change(event, session)
        if tag is not None:
            task = asyncio.ensure_future(self._fetch_profile(*tag))
            self._fetches.add(task)
            task.add_done_callback(self._fetches.discard)

    async def on_session_changed(self, event: AuthEvent, session: Optional[Session]) -> None:
        """Apply a change event and wait for its profile fetch to settle."""
        if self.phase is StorePhase.TORN_DOWN:
            return
        tag = self._apply_change(event, session)
        if tag is not None:
            await self._fetch_profile(*tag)

    def _apply_change(self, event: AuthEvent, session: Optional[Session]) -> Optional[Tuple[int, str]]:
        """Set ``user`` for an event; return the fetch tag when a profile is needed."""
        self._events_seen += 1
        self._generation += 1
        user = session.user if session is not None else None
        logger.info(f"Auth state changed | event={event.value} user_id={user.id if user else None}")

        if user is None:
            self._set_state(user=None, profile=None)
            if self.phase is StorePhase.INITIALIZING:
                # an explicit logout mid-initialization must not leave loading stuck
                self._resolve()
            return None

        current = self._state.profile
        keep = current if current is not None and current.id == user.id else None
        self._set_state(user=user, profile=keep)
        return self._generation, user.id

    async def _fetch_profile(self, generation: int, user_id: str) -> None:
        profile: Optional[Profile]
        try:
            profile = await self.profiles.get_by_id(user_id)
        except NotFoundError:
            logger.info(f"No profile found | user_id={user_id}")
            profile = None
        except Exception as e:
            logger.warning(f"Profile fetch failed | user_id={user_id} error={e!r}")
            profile = None

        if profile is not None and profile.id != user_id:
            logger.warning(f"Profile id mismatch; ignoring | expected={user_id} got={profile.id}")
            profile = None

        user = self._state.user
        if (
            self.phase is StorePhase.TORN_DOWN
            or generation != self._generation
            or user is None
            or user.id != user_id
        ):
            logger.debug(f"Discarding stale profile fetch | user_id={user_id} generation={generation}")
            return

        self._set_state(profile=profile)

    async def refresh_profile(self) -> Optional[Profile]:
        """Re-fetch the current user's profile (e.g. after an edit).

        Returns:
            The profile now held in state, or None when anonymous
        """
        user = self._state.user
        if user is None or self.phase is StorePhase.TORN_DOWN:
            return None
        self._generation += 1
        await self._fetch_profile(self._generation, user.id)
        return self._state.profile

    async def drain(self) -> None:
        """Wait until no background profile fetch is outstanding."""
        while self._fetches:
            await asyncio.gather(*list(self._fetches), return_exceptions=True)

    # -- actions ---------------------------------------------------------------

    async def sign_out(self) -> ActionResult:
        """Ask the provider to end the session.

        Local state is left alone; the SIGNED_OUT notification clears it.
        """
        try:
            await self.identity.sign_out()
        except Exception as e:
            logger.error(f"Sign out failed | error={e}")
            return ActionResult.fail(str(e) or e.__class__.__name__)
        logger.info("Sign out requested successfully")
        return ActionResult.ok(redirect_to="/")

    # -- internals -------------------------------------------------------------

    def _set_state(self, **changes) -> None:
        new_state = replace(self._state, **changes)
        if new_state == self._state:
            return
        self._state = new_state
        for callback in list(self._observers):
            try:
                callback(new_state)
            except Exception:
                logger.exception("State observer raised")
