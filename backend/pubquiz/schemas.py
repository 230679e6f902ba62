from pydantic import BaseModel, Field
from typing import Dict, List, Literal, Optional, Union
from .clock import Countdown
from .models import AnswerEntry, AnswerValue, Player, Question, QuizSession, ScoreRow


class CreateRoomIn(BaseModel):
    title: str = ""
    questions: List[Question] = Field(default_factory=list)
    reveal_answers: Optional[bool] = None


class CreateRoomOut(BaseModel):
    room_code: str


class JoinIn(BaseModel):
    name: str


class LoadQuestionsIn(BaseModel):
    questions: List[Question]


class LoadQuestionsJsonIn(BaseModel):
    raw: str


class AdvanceIn(BaseModel):
    direction: Literal[1, -1] = 1


class SetTimerIn(BaseModel):
    seconds: int


class DefaultTimerIn(BaseModel):
    seconds: int


class AnswerIn(BaseModel):
    question_index: int
    player_id: str
    player_name: str
    answer: Union[int, str]
    accepting: bool = True


class RoomOut(BaseModel):
    quiz: QuizSession
    countdown: Countdown
    server_now: int


class HostRoomOut(RoomOut):
    answer_key: Dict[int, AnswerValue]


class AnswersOut(BaseModel):
    answers: List[AnswerEntry]


class ScoresOut(BaseModel):
    scores: List[ScoreRow]


class PlayerOut(BaseModel):
    player: Player
