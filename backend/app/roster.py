"""Player roster kept at ``rooms/{room}/players``.

Players write their own entries here (join, answer, leave) without write
access to the state document. Privileged clients fold every roster change
into ``HostState.players`` and own the score/answer bookkeeping. Nothing
stops a player client from writing somebody else's entry; the roles are a
client-side convention.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from . import game
from .db import StoreError, TreeSubscription
from .models import OPTION_COUNT, GameState, Player, PlayerIdentity, Role, decode_players
from .sync import StateChannel
from .utils import new_player_id, now_ms

logger = logging.getLogger(__name__)


class RosterEngine:
    def __init__(
        self,
        channel: StateChannel,
        identity: Optional[PlayerIdentity] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.channel = channel
        self.store = channel.store
        self.paths = channel.paths
        self.identity = identity or PlayerIdentity()
        self.clock = clock
        self._subscription: Optional[TreeSubscription] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def players(self) -> List[Player]:
        return list(self.channel.roster or [])

    def _privileged(self, action: str) -> bool:
        if self.channel.is_privileged:
            return True
        logger.debug("Ignoring %s from %s client", action, self.channel.role.value)
        return False

    # -- subscription ---------------------------------------------------

    async def start(self) -> None:
        if self._subscription is not None:
            return
        self._subscription = self.store.subscribe(self.paths.roster)
        first = await self._subscription.next()
        await self.merge(first.value)
        self._task = asyncio.create_task(self._consume(self._subscription))

    async def _consume(self, subscription: TreeSubscription) -> None:
        async for snapshot in subscription:
            await self.merge(snapshot.value)

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

    async def merge(self, raw: Any) -> List[Player]:
        players = decode_players(raw)
        await self.channel.merge_roster(players)
        return players

    async def refresh(self) -> List[Player]:
        return await self.merge(await self.store.get(self.paths.roster))

    async def _patch(self, updates: Dict[str, Any], action: str) -> bool:
        if not updates:
            return True
        try:
            await self.store.update(updates)
        except StoreError as exc:
            logger.warning("%s failed for room %s: %s", action, self.paths.room_id, exc)
            return False
        return True

    # -- player actions -------------------------------------------------

    async def join(self, name: str) -> bool:
        if self.channel.role != Role.PLAYER:
            return False
        name = (name or "").strip()
        if not name:
            return False

        try:
            roster = decode_players(await self.store.get(self.paths.roster))
        except StoreError as exc:
            logger.warning("Could not read roster for %s: %s", self.paths.room_id, exc)
            return False

        existing = next((p for p in roster if p.name == name), None)
        if existing is not None:
            # same nickname resumes the same entry, score and all
            self.identity.player_id = existing.id
            ok = await self._patch({self.paths.player_field(existing.id, "isOnline"): True}, "Rejoin")
        else:
            taken = {p.id for p in roster}
            if not self.identity.player_id or self.identity.player_id in taken:
                self.identity.player_id = new_player_id(self.clock())
            player = Player(
                id=self.identity.player_id,
                name=name,
                score=0,
                last_answer_index=None,
                last_answer_time=0,
                total_response_time=0,
                is_online=True,
                is_organizer=False,
            )
            try:
                await self.store.set(self.paths.player(player.id), player.to_wire())
                ok = True
            except StoreError as exc:
                logger.warning("Join failed for %s in %s: %s", name, self.paths.room_id, exc)
                ok = False
        if ok:
            self.identity.name = name
            logger.info("Player %s joined room %s as %s", name, self.paths.room_id, self.identity.player_id)
        return ok

    async def submit_answer(self, index: int) -> bool:
        if self.channel.role != Role.PLAYER or not self.identity.player_id:
            return False
        if not isinstance(index, int) or not 0 <= index < OPTION_COUNT:
            return False
        state = self.channel.state
        if state.game_state != GameState.PLAYING_QUESTION or not state.is_timer_running:
            return False
        me = state.player(self.identity.player_id)
        if me is None or me.has_answered:
            return False
        return await self._patch(
            {
                self.paths.player_field(self.identity.player_id, "lastAnswerIndex"): index,
                self.paths.player_field(self.identity.player_id, "lastAnswerTime"): self.clock(),
            },
            "Answer",
        )

    async def leave(self) -> bool:
        if self.channel.role != Role.PLAYER or not self.identity.player_id:
            return False
        return await self._patch({self.paths.player_field(self.identity.player_id, "isOnline"): False}, "Leave")

    # -- privileged actions ---------------------------------------------

    async def reset_player_answers(self) -> bool:
        if not self._privileged("reset_player_answers"):
            return False
        updates = {self.paths.player_field(p.id, "lastAnswerIndex"): None for p in self.channel.state.players}
        return await self._patch(updates, "Answer reset")

    async def reset_player_scores(self) -> bool:
        if not self._privileged("reset_player_scores"):
            return False
        updates: Dict[str, Any] = {}
        for p in self.channel.state.players:
            updates[self.paths.player_field(p.id, "score")] = 0
            updates[self.paths.player_field(p.id, "lastAnswerIndex")] = None
            updates[self.paths.player_field(p.id, "totalResponseTime")] = 0
        return await self._patch(updates, "Score reset")

    async def calculate_and_save_scores(self, points: Optional[int] = None) -> bool:
        """Write this question's points to the roster.

        Only runs while the current question is open and not yet scored, so a
        repeated reveal cannot count a question twice.
        """
        if not self._privileged("calculate_and_save_scores"):
            return False
        state = self.channel.state
        if not game.needs_scoring(state):
            return False
        if points is None:
            points = self.channel.settings.POINTS_PER_CORRECT
        per_player = game.score_updates(state.players, state.current_question, state.question_start_time, points)
        updates = {
            self.paths.player_field(pid, field): value
            for pid, fields in per_player.items()
            for field, value in fields.items()
        }
        return await self._patch(updates, "Scoring")

    async def kick_player(self, player_id: str) -> bool:
        if not self._privileged("kick_player") or not player_id:
            return False
        try:
            await self.store.remove(self.paths.player(player_id))
        except StoreError as exc:
            logger.warning("Kick of %s failed: %s", player_id, exc)
            return False
        logger.info("Kicked %s from room %s", player_id, self.paths.room_id)
        return True

    async def reset_all_players(self) -> bool:
        if not self._privileged("reset_all_players"):
            return False
        try:
            await self.store.remove(self.paths.roster)
        except StoreError as exc:
            logger.warning("Roster reset failed for %s: %s", self.paths.room_id, exc)
            return False
        return True

    async def toggle_organizer(self, player_id: str, current: bool) -> bool:
        if not self._privileged("toggle_organizer") or not player_id:
            return False
        return await self._patch({self.paths.player_field(player_id, "isOrganizer"): not current}, "Organizer toggle")

    async def set_online(self, player_id: str, online: bool) -> bool:
        if not self._privileged("set_online") or not player_id:
            return False
        return await self._patch({self.paths.player_field(player_id, "isOnline"): online}, "Online flag")
