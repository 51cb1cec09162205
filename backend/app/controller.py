from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, List, Optional, Sequence

from . import game
from .db import InMemoryTree, Settings, settings as default_settings
from .models import GameState, HostState, PlayerIdentity, Question, Role
from .roster import RosterEngine
from .sync import StateChannel, StateUpdater
from .utils import now_ms

logger = logging.getLogger(__name__)


class GameController:
    """One client's view of a room: the state channel, the roster and the
    actions its role may issue.

    Game logic runs on whichever privileged client issues the action; the
    store only replicates. Roster patches and state writes are separate,
    non-atomic steps, so another client can observe them in either order.
    """

    def __init__(
        self,
        store: InMemoryTree,
        role: Role,
        room_id: Optional[str] = None,
        identity: Optional[PlayerIdentity] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.settings = settings or default_settings
        self.clock = clock
        self.channel = StateChannel(store, role, room_id=room_id, settings=self.settings)
        self.roster = RosterEngine(self.channel, identity=identity, clock=clock)
        self._timer_task: Optional[asyncio.Task] = None
        self._timer_key = None
        self._remove_listener = None
        self.started = False

    @property
    def role(self) -> Role:
        return self.channel.role

    @property
    def state(self) -> HostState:
        return self.channel.state

    @property
    def room_id(self) -> str:
        return self.channel.paths.room_id

    @property
    def identity(self) -> PlayerIdentity:
        return self.roster.identity

    async def start(self) -> None:
        if self.started:
            return
        await self.channel.start()
        await self.roster.start()
        if self.channel.is_privileged and self.settings.AUTO_REVEAL:
            self._remove_listener = self.channel.add_listener(self._sync_timer)
            self._sync_timer(self.state)
        self.started = True

    async def stop(self) -> None:
        if self._remove_listener is not None:
            self._remove_listener()
            self._remove_listener = None
        self._cancel_timer()
        await self.roster.stop()
        await self.channel.stop()
        self.started = False

    async def refresh(self) -> HostState:
        """Read state and roster once, for callers without live subscriptions."""
        await self.channel.refresh()
        await self.roster.refresh()
        return self.state

    # -- countdown ------------------------------------------------------

    def _cancel_timer(self) -> None:
        if self._timer_task is not None and not self._timer_task.done():
            self._timer_task.cancel()
        self._timer_task = None
        self._timer_key = None

    def _sync_timer(self, state: HostState) -> None:
        running = state.game_state == GameState.PLAYING_QUESTION and state.is_timer_running
        key = (state.current_question_index, state.question_start_time) if running else None
        if key == self._timer_key:
            return
        # any phase, question or timer change invalidates the pending countdown
        self._cancel_timer()
        if key is None:
            return
        self._timer_key = key
        delay = game.remaining_seconds(state, self.clock())
        self._timer_task = asyncio.create_task(self._auto_reveal(key, delay))

    async def _auto_reveal(self, key, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._timer_key != key:
            return
        logger.info("Time up in room %s, revealing question %d", self.room_id, key[0])
        self._timer_task = None
        await self.reveal()

    # -- privileged actions ---------------------------------------------

    async def update_state(self, updater: StateUpdater) -> Optional[HostState]:
        return await self.channel.update_state(updater)

    async def load_questions(self, questions: Sequence[Question], title: Optional[str] = None) -> Optional[HostState]:
        return await self.channel.update_state(lambda s: game.load_questions(s, questions, title))

    async def _refresh_for(self, action: str) -> bool:
        # phase checks run against the stored state
        if not self.channel.is_privileged:
            return False
        await self.refresh()
        return game.is_allowed(self.state, action)

    async def start_game(self) -> Optional[HostState]:
        if not await self._refresh_for("start_game"):
            return None
        await self.roster.reset_player_scores()
        await self.roster.refresh()
        logger.info("Starting game in room %s with %d questions", self.room_id, len(self.state.questions))
        return await self.channel.update_state(game.start_game)

    async def start_timer(self) -> Optional[HostState]:
        now = self.clock()
        return await self.channel.update_state(lambda s: game.start_timer(s, now))

    async def reveal(self) -> Optional[HostState]:
        if not await self._refresh_for("reveal"):
            return None
        await self.roster.calculate_and_save_scores()
        await self.roster.refresh()
        return await self.channel.update_state(game.reveal)

    async def next_question(self) -> Optional[HostState]:
        if not await self._refresh_for("next_question"):
            return None
        await self.roster.reset_player_answers()
        await self.roster.refresh()
        return await self.channel.update_state(game.next_question)

    async def force_finish(self) -> Optional[HostState]:
        return await self.channel.update_state(game.force_finish)

    async def advance_ranking_stage(self) -> Optional[HostState]:
        return await self.channel.update_state(game.advance_ranking_stage)

    async def show_ranking_result(self, visible: bool = True) -> Optional[HostState]:
        return await self.channel.update_state(lambda s: game.show_ranking_result(s, visible))

    async def reset_game(self) -> Optional[HostState]:
        return await self.channel.update_state(game.reset_game)

    async def update_settings(
        self,
        *,
        time_limit: Optional[int] = None,
        quiz_title: Optional[str] = None,
        title_image: Optional[str] = None,
        is_lobby_details_visible: Optional[bool] = None,
        is_rules_visible: Optional[bool] = None,
        hide_below_top3: Optional[bool] = None,
    ) -> Optional[HostState]:
        def apply(s: HostState) -> HostState:
            if time_limit is not None:
                s = game.set_time_limit(s, time_limit)
            if quiz_title is not None:
                s = game.set_quiz_title(s, quiz_title)
            if title_image is not None:
                s = game.set_title_image(s, title_image)
            if is_lobby_details_visible is not None:
                s = game.set_lobby_details_visible(s, is_lobby_details_visible)
            if is_rules_visible is not None:
                s = game.set_rules_visible(s, is_rules_visible)
            if hide_below_top3 is not None:
                s = game.set_hide_below_top3(s, hide_below_top3)
            return s

        return await self.channel.update_state(apply)

    # -- roster pass-throughs -------------------------------------------

    async def join(self, name: str) -> bool:
        return await self.roster.join(name)

    async def submit_answer(self, index: int) -> bool:
        return await self.roster.submit_answer(index)

    async def leave(self) -> bool:
        return await self.roster.leave()

    async def kick_player(self, player_id: str) -> bool:
        return await self.roster.kick_player(player_id)

    async def reset_all_players(self) -> bool:
        return await self.roster.reset_all_players()

    async def toggle_organizer(self, player_id: str, current: bool) -> bool:
        return await self.roster.toggle_organizer(player_id, current)

    async def reset_player_scores(self) -> bool:
        return await self.roster.reset_player_scores()

    async def reset_player_answers(self) -> bool:
        return await self.roster.reset_player_answers()

    def leaderboard(self) -> List[dict]:
        return [
            dict(p.to_wire(), rank=i + 1)
            for i, p in enumerate(game.rank_players(self.state.players))
        ]


class RoomRegistry:
    """Keeps one live ADMIN controller per room for the HTTP surface."""

    def __init__(self, store: InMemoryTree, settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or default_settings
        self.controllers: Dict[str, GameController] = {}
        self._lock = asyncio.Lock()

    async def admin(self, room_id: str) -> GameController:
        async with self._lock:
            controller = self.controllers.get(room_id)
            if controller is None:
                controller = GameController(self.store, Role.ADMIN, room_id=room_id, settings=self.settings)
                await controller.start()
                self.controllers[room_id] = controller
            return controller

    async def close(self) -> None:
        async with self._lock:
            for controller in self.controllers.values():
                await controller.stop()
            self.controllers.clear()
