
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
from .models import Question


class JoinIn(BaseModel):
    name: str
    player_id: Optional[str] = None


class AnswerIn(BaseModel):
    player_id: str
    option_index: int


class LeaveIn(BaseModel):
    player_id: str


class LoadQuestionsIn(BaseModel):
    questions: List[Question]
    quiz_title: Optional[str] = None


class RankingVisibleIn(BaseModel):
    visible: bool = True


class OrganizerIn(BaseModel):
    current: Optional[bool] = None


class RoomSettingsIn(BaseModel):
    time_limit: Optional[int] = Field(default=None, ge=1, le=600)
    quiz_title: Optional[str] = None
    title_image: Optional[str] = None
    is_lobby_details_visible: Optional[bool] = None
    is_rules_visible: Optional[bool] = None
    hide_below_top3: Optional[bool] = None


class TreePatchIn(BaseModel):
    updates: Dict[str, Any]


class JoinOut(BaseModel):
    ok: bool
    player_id: str
    name: str


class SnapshotOut(BaseModel):
    path: str
    seq: int
    value: Any = None
