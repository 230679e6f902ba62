from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, Field, StrictInt, field_validator, model_validator

from .utils import clean, now_ms

QuizState = Literal["lobby", "question", "break", "results"]
QuestionType = Literal["mc", "text"]

# mc answers are choice indices, text answers are free text. Tagged by the
# question type wherever they are stored.
AnswerValue = Union[StrictInt, str]

_CORRECT_ANSWER_ALIASES = AliasChoices("correct_answer", "correctAnswer")


class _QuestionBase(BaseModel):
    prompt: str

    @field_validator("prompt")
    @classmethod
    def _prompt_not_blank(cls, value: str) -> str:
        value = clean(value)
        if not value:
            raise ValueError("prompt must not be empty")
        return value


class McQuestion(_QuestionBase):
    type: Literal["mc"]
    choices: List[str] = Field(min_length=2)
    correct_answer: Optional[int] = Field(default=None, validation_alias=_CORRECT_ANSWER_ALIASES)

    @field_validator("choices")
    @classmethod
    def _clean_choices(cls, value: List[str]) -> List[str]:
        return [clean(c) for c in value]

    @model_validator(mode="after")
    def _correct_answer_in_range(self):
        if self.correct_answer is not None and not 0 <= self.correct_answer < len(self.choices):
            raise ValueError(f"correct_answer {self.correct_answer} is not a valid choice index")
        return self


class TextQuestion(_QuestionBase):
    type: Literal["text"]
    correct_answer: Optional[str] = Field(default=None, validation_alias=_CORRECT_ANSWER_ALIASES)

    @field_validator("correct_answer", mode="before")
    @classmethod
    def _clean_correct_answer(cls, value):
        if value is None:
            return None
        return clean(value) or None


Question = Annotated[Union[McQuestion, TextQuestion], Field(discriminator="type")]


class Player(BaseModel):
    id: str
    name: str


class AnswerEntry(BaseModel):
    player_id: str
    player_name: str
    answer_type: QuestionType
    answer: AnswerValue
    submitted_at: int

    @model_validator(mode="after")
    def _answer_matches_type(self):
        if self.answer_type == "mc" and not isinstance(self.answer, int):
            raise ValueError("mc answers must be a choice index")
        if self.answer_type == "text" and not isinstance(self.answer, str):
            raise ValueError("text answers must be a string")
        return self

    @property
    def player(self) -> Player:
        return Player(id=self.player_id, name=self.player_name)


# States: lobby -> question -> (break -> question)* -> results
class QuizSession(BaseModel):
    title: str = "Pub Quiz"
    questions: List[Question] = Field(default_factory=list)
    current_index: int = -1
    state: QuizState = "lobby"
    default_timer_sec: int = Field(default=60, ge=40, le=60)
    accepting: bool = False
    timer_ends_at: int = 0
    reveal_answers: bool = False
    revealed_answers: Dict[int, AnswerValue] = Field(default_factory=dict)
    revision: int = 0
    created_at: int = Field(default_factory=now_ms)

    @property
    def total(self) -> int:
        return len(self.questions)

    @property
    def current_question(self) -> Optional[Union[McQuestion, TextQuestion]]:
        if 0 <= self.current_index < self.total:
            return self.questions[self.current_index]
        return None

    def public(self) -> "QuizSession":
        """Copy safe to show players: authoring-time answer keys removed."""
        return self.model_copy(
            update={"questions": [q.model_copy(update={"correct_answer": None}) for q in self.questions]}
        )


class ScoreRow(BaseModel):
    player: Player
    score: int = 0
    answers_by_question: Dict[int, AnswerValue] = Field(default_factory=dict)
