"""Game progression rules.

Every transition is a pure function ``HostState -> HostState``. A transition
that is not legal in the current phase returns the state it was given, so
callers can pass any of them straight to ``StateChannel.update_state``.

    SETUP -> LOBBY -> PLAYING_QUESTION <-> PLAYING_RESULT -> FINAL_RESULT -> SETUP
"""
from __future__ import annotations

from typing import Dict, List, Optional, Sequence

from .models import MAX_REVEAL_STAGE, GameState, HostState, Player, Question

POINTS_PER_CORRECT = 10
MIN_TIME_LIMIT = 1
MAX_TIME_LIMIT = 600

PLAYING = {GameState.PLAYING_QUESTION, GameState.PLAYING_RESULT}

ALLOWED_PHASES: Dict[str, set] = {
    "load_questions": {GameState.SETUP, GameState.LOBBY},
    "start_game": {GameState.LOBBY},
    "start_timer": {GameState.PLAYING_QUESTION},
    "reveal": {GameState.PLAYING_QUESTION},
    "next_question": {GameState.PLAYING_RESULT},
    "force_finish": PLAYING,
    "advance_ranking_stage": {GameState.FINAL_RESULT},
    "show_ranking_result": {GameState.FINAL_RESULT},
    "reset_game": set(GameState),
}


def is_allowed(state: HostState, action: str) -> bool:
    return state.game_state in ALLOWED_PHASES[action]


# -- roster-level helpers ---------------------------------------------------


def clear_answers(players: Sequence[Player]) -> List[Player]:
    return [p.model_copy(update={"last_answer_index": None}) for p in players]


def zero_scores(players: Sequence[Player]) -> List[Player]:
    return [
        p.model_copy(update={"score": 0, "last_answer_index": None, "total_response_time": 0})
        for p in players
    ]


def score_updates(
    players: Sequence[Player],
    question: Optional[Question],
    question_start_time: Optional[int],
    points: int = POINTS_PER_CORRECT,
) -> Dict[str, Dict[str, int]]:
    """Field updates, keyed by player id, for everyone who answered correctly.

    Only correct answers add to ``totalResponseTime``; players who did not
    answer or answered wrongly get no entry at all.
    """
    if question is None:
        return {}
    updates: Dict[str, Dict[str, int]] = {}
    for p in players:
        if p.last_answer_index is None or p.last_answer_index != question.correct_index:
            continue
        fields = {"score": p.score + points}
        if p.last_answer_time and question_start_time:
            elapsed = max(0, p.last_answer_time - question_start_time)
            fields["totalResponseTime"] = p.total_response_time + elapsed
        updates[p.id] = fields
    return updates


def needs_scoring(state: HostState) -> bool:
    return (
        state.game_state == GameState.PLAYING_QUESTION
        and state.current_question is not None
        and state.scored_question_index != state.current_question_index
    )


# -- ranking ----------------------------------------------------------------


def ranking_key(p: Player):
    return (p.is_organizer, -p.score, p.total_response_time, p.name)


def rank_players(players: Sequence[Player]) -> List[Player]:
    """Score descending, then faster cumulative time; organizers always last."""
    return sorted(players, key=ranking_key)


def winner(state: HostState) -> Optional[Player]:
    ranked = [p for p in rank_players(state.players) if not p.is_organizer]
    return ranked[0] if ranked else None


def is_placement_revealed(state: HostState, rank: int) -> bool:
    """Whether podium place ``rank`` (1-based) is on screen yet.

    Stage 1 reveals 3rd place, stage 2 reveals 2nd, stage 3 the winner. A
    stage counts once its result is made visible, or once a later stage has
    been selected.
    """
    if state.game_state != GameState.FINAL_RESULT:
        return False
    if rank > 3:
        return not state.hide_below_top3
    stage = MAX_REVEAL_STAGE + 1 - rank
    if state.ranking_reveal_stage > stage:
        return True
    return state.ranking_reveal_stage == stage and state.is_ranking_result_visible


def is_player_result_visible(state: HostState, player_id: str) -> bool:
    """Whether a player's own device may show their final placement."""
    if state.game_state != GameState.FINAL_RESULT:
        return False
    ranked = rank_players(state.players)
    index = next((i for i, p in enumerate(ranked) if p.id == player_id), None)
    if index is None:
        return False
    if ranked[index].is_organizer:
        return True
    if index >= 3:
        return not state.hide_below_top3
    return is_placement_revealed(state, index + 1)


# -- timer ------------------------------------------------------------------


def remaining_seconds(state: HostState, now: int) -> float:
    if state.game_state != GameState.PLAYING_QUESTION:
        return 0.0
    if not state.is_timer_running or not state.question_start_time:
        return float(state.time_limit)
    elapsed = (now - state.question_start_time) / 1000
    return max(0.0, state.time_limit - elapsed)


def is_time_up(state: HostState, now: int) -> bool:
    return (
        state.game_state == GameState.PLAYING_QUESTION
        and state.is_timer_running
        and remaining_seconds(state, now) <= 0
    )


def answer_stats(state: HostState) -> Dict[str, int]:
    answered = sum(1 for p in state.players if p.has_answered)
    total = len(state.players)
    return {
        "answered": answered,
        "total": total,
        "percent": round(answered * 100 / (total or 1)),
    }


# -- transitions ------------------------------------------------------------


def load_questions(state: HostState, questions: Sequence[Question], title: Optional[str] = None) -> HostState:
    if not is_allowed(state, "load_questions") or not questions:
        return state
    update = {
        "questions": list(questions),
        "game_state": GameState.LOBBY,
        "current_question_index": 0,
        "ranking_reveal_stage": 0,
        "is_ranking_result_visible": False,
        "scored_question_index": None,
    }
    if title:
        update["quiz_title"] = title
    return state.model_copy(update=update)


def _open_question(state: HostState, index: int, players: List[Player]) -> HostState:
    return state.model_copy(
        update={
            "game_state": GameState.PLAYING_QUESTION,
            "current_question_index": index,
            "players": players,
            "question_start_time": None,
            "is_timer_running": False,
        }
    )


def start_game(state: HostState) -> HostState:
    if not is_allowed(state, "start_game") or not state.questions:
        return state
    opened = _open_question(state, 0, zero_scores(state.players))
    return opened.model_copy(
        update={
            "ranking_reveal_stage": 0,
            "is_ranking_result_visible": False,
            "scored_question_index": None,
        }
    )


def start_timer(state: HostState, now: int) -> HostState:
    if not is_allowed(state, "start_timer") or state.is_timer_running:
        return state
    return state.model_copy(update={"is_timer_running": True, "question_start_time": now})


def reveal(state: HostState) -> HostState:
    """Close answering for the current question.

    Scores are not touched here; they are written to the roster beforehand by
    ``score_updates`` and arrive through the roster merge.
    """
    if not is_allowed(state, "reveal"):
        return state
    return state.model_copy(
        update={
            "game_state": GameState.PLAYING_RESULT,
            "is_timer_running": False,
            "scored_question_index": state.current_question_index,
        }
    )


def next_question(state: HostState) -> HostState:
    if not is_allowed(state, "next_question"):
        return state
    players = clear_answers(state.players)
    index = state.current_question_index + 1
    if index >= len(state.questions):
        return _finish(state.model_copy(update={"players": players}))
    return _open_question(state, index, players)


def _finish(state: HostState) -> HostState:
    return state.model_copy(
        update={
            "game_state": GameState.FINAL_RESULT,
            "is_timer_running": False,
            "ranking_reveal_stage": 0,
            "is_ranking_result_visible": False,
        }
    )


def force_finish(state: HostState) -> HostState:
    if not is_allowed(state, "force_finish"):
        return state
    return _finish(state)


def advance_ranking_stage(state: HostState) -> HostState:
    """Select the next podium place; it stays hidden until ``show_ranking_result``."""
    if not is_allowed(state, "advance_ranking_stage") or state.ranking_reveal_stage >= MAX_REVEAL_STAGE:
        return state
    return state.model_copy(
        update={
            "ranking_reveal_stage": state.ranking_reveal_stage + 1,
            "is_ranking_result_visible": False,
        }
    )


def show_ranking_result(state: HostState, visible: bool = True) -> HostState:
    if not is_allowed(state, "show_ranking_result"):
        return state
    return state.model_copy(update={"is_ranking_result_visible": visible})


def reset_game(state: HostState) -> HostState:
    return state.model_copy(
        update={
            "game_state": GameState.SETUP,
            "questions": [],
            "current_question_index": 0,
            "question_start_time": None,
            "is_timer_running": False,
            "ranking_reveal_stage": 0,
            "is_ranking_result_visible": False,
            "scored_question_index": None,
        }
    )


# -- presentation settings --------------------------------------------------


def set_time_limit(state: HostState, seconds: int) -> HostState:
    if state.is_timer_running:
        return state
    seconds = min(max(int(seconds), MIN_TIME_LIMIT), MAX_TIME_LIMIT)
    return state.model_copy(update={"time_limit": seconds})


def set_quiz_title(state: HostState, title: str) -> HostState:
    return state.model_copy(update={"quiz_title": title})


def set_title_image(state: HostState, image: Optional[str]) -> HostState:
    return state.model_copy(update={"title_image": image or None})


def set_lobby_details_visible(state: HostState, visible: bool) -> HostState:
    return state.model_copy(update={"is_lobby_details_visible": visible})


def set_rules_visible(state: HostState, visible: bool) -> HostState:
    return state.model_copy(update={"is_rules_visible": visible})


def set_hide_below_top3(state: HostState, hide: bool) -> HostState:
    return state.model_copy(update={"hide_below_top3": hide})
