"""Replication of the shared ``HostState`` document.

Every role subscribes to ``rooms/{room}/state``; only HOST and ADMIN may
write it. Writes are whole-document overwrites applied optimistically to the
local copy, so two privileged writers racing each other can lose an update
(last writer wins). Setting ``VERSIONED_STATE_WRITES`` switches to a
revision-checked write that re-reads and retries on conflict.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, List, Optional

from .db import InMemoryTree, Settings, StaleWriteError, StoreError, TreeSubscription, settings as default_settings
from .models import HostState, Player, Role, RoomPaths, decode_state, default_state

logger = logging.getLogger(__name__)

StateUpdater = Callable[[HostState], HostState]
StateListener = Callable[[HostState], None]


class StateChannel:
    def __init__(
        self,
        store: InMemoryTree,
        role: Role,
        room_id: Optional[str] = None,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.role = Role(role)
        self.settings = settings or default_settings
        self.paths = RoomPaths(room_id or self.settings.ROOM_ID)
        self.state: HostState = default_state(self.settings)
        # players as last seen on the roster path; None until the roster is observed
        self.roster: Optional[List[Player]] = None
        self._listeners: List[StateListener] = []
        self._subscription: Optional[TreeSubscription] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def is_privileged(self) -> bool:
        return self.role.is_privileged

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _apply(self, state: HostState) -> None:
        self.state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("State listener failed")

    # -- inbound --------------------------------------------------------

    async def start(self) -> None:
        if self._subscription is not None:
            return
        self._subscription = self.store.subscribe(self.paths.state)
        first = await self._subscription.next()
        await self.reconcile(first.value)
        self._task = asyncio.create_task(self._consume(self._subscription))

    async def _consume(self, subscription: TreeSubscription) -> None:
        async for snapshot in subscription:
            try:
                await self.reconcile(snapshot.value)
            except StoreError as exc:
                logger.warning("Failed to handle state snapshot for %s: %s", self.paths.room_id, exc)

    async def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def refresh(self) -> HostState:
        """Point-in-time read for callers that do not hold a subscription."""
        await self.reconcile(await self.store.get(self.paths.state))
        return self.state

    async def reconcile(self, raw: Any) -> None:
        if raw is None:
            if self.is_privileged:
                await self._bootstrap()
            return
        state = decode_state(raw, self.settings)
        if self.roster is not None:
            state = state.model_copy(update={"players": list(self.roster)})
        self._apply(state)

    async def _bootstrap(self) -> None:
        # two privileged clients may both get here; they write the same default
        logger.info("Initialising empty state for room %s", self.paths.room_id)
        initial = default_state(self.settings)
        try:
            await self.store.set(self.paths.state, initial.to_wire())
        except StoreError as exc:
            logger.warning("Failed to initialise state for %s: %s", self.paths.room_id, exc)
        self._apply(initial)

    async def merge_roster(self, players: List[Player]) -> None:
        """Fold a fresh roster into local state; privileged roles also push it
        into the state document so state-only readers see it."""
        self.roster = list(players)
        self._apply(self.state.model_copy(update={"players": list(players)}))
        if not self.is_privileged:
            return
        try:
            await self.store.set(self.paths.state_players, [p.to_wire() for p in players])
        except StoreError as exc:
            logger.warning("Failed to copy roster into state for %s: %s", self.paths.room_id, exc)

    # -- outbound -------------------------------------------------------

    async def update_state(self, updater: StateUpdater) -> Optional[HostState]:
        if not self.is_privileged:
            logger.debug("Ignoring state update from %s client", self.role.value)
            return None
        if self.settings.VERSIONED_STATE_WRITES:
            return await self._update_versioned(updater)

        base = self.state
        nxt = updater(base)
        if nxt is base:
            return base
        nxt = nxt.model_copy(update={"revision": base.revision + 1})
        self._apply(nxt)
        try:
            await self.store.set(self.paths.state, nxt.to_wire())
        except StoreError as exc:
            # no retry queue: local state stays ahead until the next good write
            logger.warning("State write failed for %s: %s", self.paths.room_id, exc)
        return nxt

    async def _update_versioned(self, updater: StateUpdater) -> Optional[HostState]:
        attempts = max(1, self.settings.MAX_WRITE_RETRIES)
        for attempt in range(attempts):
            base = self.state
            nxt = updater(base)
            if nxt is base:
                return base
            nxt = nxt.model_copy(update={"revision": base.revision + 1})
            try:
                await self.store.set_if_revision(self.paths.state, nxt.to_wire(), expected=base.revision)
            except StaleWriteError as exc:
                logger.info("Retrying state write for %s (%d/%d): %s", self.paths.room_id, attempt + 1, attempts, exc)
                await self.refresh()
                continue
            except StoreError as exc:
                logger.warning("State write failed for %s: %s", self.paths.room_id, exc)
                self._apply(nxt)
                return nxt
            self._apply(nxt)
            return nxt
        logger.warning("Giving up on state write for %s after %d conflicts", self.paths.room_id, attempts)
        return None
