import logging
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

OPTION_COUNT = 4
MAX_REVEAL_STAGE = 3


class GameState(str, Enum):
    SETUP = "SETUP"
    LOBBY = "LOBBY"
    PLAYING_QUESTION = "PLAYING_QUESTION"
    PLAYING_RESULT = "PLAYING_RESULT"  # correct answer shown for the current question
    FINAL_RESULT = "FINAL_RESULT"


class Role(str, Enum):
    HOST = "HOST"
    ADMIN = "ADMIN"
    PLAYER = "PLAYER"

    @property
    def is_privileged(self) -> bool:
        return self in (Role.HOST, Role.ADMIN)


class WireModel(BaseModel):
    """Base for documents stored in the tree; the wire format is camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


def _as_sequence(raw: Any) -> List[Any]:
    # the tree hands lists back as string-keyed maps once anything was written below them
    if isinstance(raw, list):
        return list(raw)
    if isinstance(raw, dict):
        try:
            keys = sorted(raw, key=int)
        except (TypeError, ValueError):
            keys = list(raw)
        return [raw[k] for k in keys]
    return []


class Question(WireModel):
    id: str = ""
    text: str = ""
    options: List[str] = Field(default_factory=lambda: [""] * OPTION_COUNT)
    option_images: Optional[List[str]] = None
    question_image: Optional[str] = None
    correct_index: int = 0
    explanation: str = ""

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, v):
        return str(v) if isinstance(v, int) else v

    @field_validator("options", mode="before")
    @classmethod
    def _four_options(cls, v):
        items = ["" if o is None else str(o) for o in _as_sequence(v)]
        return (items + [""] * OPTION_COUNT)[:OPTION_COUNT]

    @field_validator("option_images", mode="before")
    @classmethod
    def _four_images(cls, v):
        if v is None:
            return None
        items = ["" if o is None else str(o) for o in _as_sequence(v)]
        return (items + [""] * OPTION_COUNT)[:OPTION_COUNT]

    @field_validator("correct_index", mode="before")
    @classmethod
    def _clamp_correct(cls, v):
        try:
            v = int(v)
        except (TypeError, ValueError):
            return 0
        return min(max(v, 0), OPTION_COUNT - 1)


class Player(WireModel):
    id: str
    name: str = ""
    score: int = 0
    last_answer_index: Optional[int] = None
    last_answer_time: int = 0
    total_response_time: int = 0
    is_online: Optional[bool] = None
    is_organizer: bool = False

    @field_validator("score", "last_answer_time", "total_response_time", mode="before")
    @classmethod
    def _non_negative(cls, v):
        if v is None:
            return 0
        try:
            return max(0, int(v))
        except (TypeError, ValueError):
            return 0

    @field_validator("last_answer_index", mode="before")
    @classmethod
    def _answer_in_range(cls, v):
        if v is None or isinstance(v, bool):
            return None
        try:
            v = int(v)
        except (TypeError, ValueError):
            return None
        return v if 0 <= v < OPTION_COUNT else None

    @field_validator("is_organizer", mode="before")
    @classmethod
    def _organizer_flag(cls, v):
        return bool(v)

    @property
    def has_answered(self) -> bool:
        return self.last_answer_index is not None


def decode_players(raw: Any) -> List[Player]:
    players = []
    for entry in _as_sequence(raw):
        if isinstance(entry, Player):
            players.append(entry)
            continue
        if not isinstance(entry, dict):
            continue
        pid = entry.get("id")
        if not isinstance(pid, str) or not pid:
            continue
        try:
            players.append(Player.model_validate(entry))
        except ValidationError as exc:
            logger.debug("Dropping malformed roster entry %s: %s", pid, exc)
    return players


def decode_questions(raw: Any) -> List[Question]:
    questions = []
    for entry in _as_sequence(raw):
        if isinstance(entry, Question):
            questions.append(entry)
            continue
        if not isinstance(entry, dict):
            continue
        try:
            questions.append(Question.model_validate(entry))
        except ValidationError as exc:
            logger.debug("Dropping malformed question: %s", exc)
    return questions


class HostState(WireModel):
    game_state: GameState = GameState.SETUP
    current_question_index: int = 0
    questions: List[Question] = Field(default_factory=list)
    players: List[Player] = Field(default_factory=list)
    room_code: str = "EVENT"
    time_limit: int = 20  # seconds
    question_start_time: Optional[int] = None  # epoch ms
    is_timer_running: bool = False
    ranking_reveal_stage: int = 0
    is_ranking_result_visible: bool = False
    hide_below_top3: bool = False
    quiz_title: str = "Quiz Night"
    title_image: Optional[str] = None
    is_lobby_details_visible: bool = False
    is_rules_visible: bool = False
    scored_question_index: Optional[int] = None
    revision: int = 0

    @field_validator("players", mode="before")
    @classmethod
    def _decode_players(cls, v):
        return decode_players(v)

    @field_validator("questions", mode="before")
    @classmethod
    def _decode_questions(cls, v):
        return decode_questions(v)

    @field_validator("game_state", mode="before")
    @classmethod
    def _known_state(cls, v):
        try:
            return GameState(v)
        except ValueError:
            return GameState.SETUP

    @model_validator(mode="after")
    def _clamp_indices(self):
        if not self.questions:
            self.current_question_index = 0
        else:
            self.current_question_index = min(max(self.current_question_index, 0), len(self.questions) - 1)
        self.ranking_reveal_stage = min(max(self.ranking_reveal_stage, 0), MAX_REVEAL_STAGE)
        return self

    @property
    def current_question(self) -> Optional[Question]:
        if 0 <= self.current_question_index < len(self.questions):
            return self.questions[self.current_question_index]
        return None

    @property
    def is_final_question(self) -> bool:
        return bool(self.questions) and self.current_question_index == len(self.questions) - 1

    def player(self, player_id: str) -> Optional[Player]:
        return next((p for p in self.players if p.id == player_id), None)


def default_state(settings=None) -> HostState:
    if settings is None:
        return HostState()
    return HostState(
        room_code=settings.ROOM_CODE,
        time_limit=settings.DEFAULT_TIME_LIMIT,
        quiz_title=settings.QUIZ_TITLE,
    )


def decode_state(raw: Any, settings=None) -> HostState:
    """Shallow-merge a stored snapshot onto the defaults."""
    base = default_state(settings).to_wire()
    if isinstance(raw, dict):
        base.update({k: v for k, v in raw.items() if v is not None})
    try:
        return HostState.model_validate(base)
    except ValidationError as exc:
        logger.warning("Discarding malformed state fields: %s", exc)
        good = default_state(settings).to_wire()
        for key, value in base.items():
            trial = dict(good, **{key: value})
            try:
                HostState.model_validate(trial)
            except ValidationError:
                continue
            good = trial
        return HostState.model_validate(good)


class PlayerIdentity(BaseModel):
    """What a player client keeps locally to resume after a reload."""

    player_id: str = ""
    name: str = ""


class RoomPaths:
    def __init__(self, room_id: str):
        if not room_id or "/" in room_id:
            raise ValueError(f"Invalid room id: {room_id!r}")
        self.room_id = room_id
        self.root = f"rooms/{room_id}"
        self.state = f"{self.root}/state"
        self.state_players = f"{self.state}/players"
        self.roster = f"{self.root}/players"

    def player(self, player_id: str) -> str:
        return f"{self.roster}/{player_id}"

    def player_field(self, player_id: str, field: str) -> str:
        return f"{self.roster}/{player_id}/{field}"
