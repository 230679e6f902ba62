from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from pydantic import TypeAdapter, ValidationError

from . import scoring
from .clock import NowFn, ServerClock, is_accepting
from .db import RealtimeDatabase, realtime, settings
from .errors import InvalidInput
from .events import event_store
from .models import AnswerEntry, AnswerValue, McQuestion, Player, Question, QuizSession, ScoreRow, TextQuestion
from .store import SessionStore
from .utils import clean, make_player_id, make_room_code, results_csv

logger = logging.getLogger(__name__)

# A break screen is shown after every CHUNK questions.
CHUNK = 10
MIN_TIMER_SEC = 40
MAX_TIMER_SEC = 60

_questions_adapter = TypeAdapter(List[Question])


def start_question(quiz: QuizSession, index: int, now: NowFn) -> Dict[str, Any]:
    return {
        "current_index": index,
        "state": "question",
        "accepting": True,
        "timer_ends_at": now() + quiz.default_timer_sec * 1000,
    }


def _halt(state: str, index: int) -> Dict[str, Any]:
    return {"current_index": index, "state": state, "accepting": False, "timer_ends_at": 0}


def plan_advance(quiz: QuizSession, direction: int, now: NowFn, chunk: int = CHUNK) -> Optional[Dict[str, Any]]:
    """Work out the fields to merge for one step forward (+1) or back (-1).

    Returns ``None`` when the step is a no-op. Break screens are derived from
    ``current_index`` alone: going forward, index ``next`` opens a break when
    ``next % chunk == 0``; going back, the break sits on ``next`` when
    ``(next + 1) % chunk == 0``. A break's index is the question it resumes.
    """
    total = quiz.total
    next_index = quiz.current_index + direction

    if quiz.state == "lobby":
        if total == 0:
            return None
        return start_question(quiz, 0, now)

    if quiz.state == "question":
        if direction > 0:
            if next_index >= total:
                return _halt("results", total - 1)
            if next_index > 0 and next_index % chunk == 0:
                return _halt("break", next_index)
            return start_question(quiz, next_index, now)

        if next_index < 0:
            return _halt("lobby", -1)
        if (next_index + 1) % chunk == 0:
            return _halt("break", next_index)
        return start_question(quiz, next_index, now)

    if quiz.state == "break":
        if direction > 0:
            return start_question(quiz, quiz.current_index, now)
        return start_question(quiz, quiz.current_index - 1, now)

    if quiz.state == "results" and direction < 0:
        return start_question(quiz, total - 1, now)

    return None


def split_answer_key(
    questions: Sequence[Union[McQuestion, TextQuestion]], reveal: bool
) -> Tuple[List[Union[McQuestion, TextQuestion]], Dict[int, AnswerValue]]:
    """In the reveal variant, move correct answers out of the public questions."""
    if not reveal:
        return list(questions), {}
    answer_key = {i: q.correct_answer for i, q in enumerate(questions) if q.correct_answer is not None}
    public = [q.model_copy(update={"correct_answer": None}) for q in questions]
    return public, answer_key


def coerce_answer(question: Union[McQuestion, TextQuestion], answer: Any) -> AnswerValue:
    if question.type == "mc":
        if isinstance(answer, bool):
            raise InvalidInput("Multiple choice answers must be a choice index")
        try:
            choice = int(answer)
        except (TypeError, ValueError) as exc:
            raise InvalidInput("Multiple choice answers must be a choice index") from exc
        if not 0 <= choice < len(question.choices):
            raise InvalidInput(f"Choice {choice} is out of range")
        return choice

    text = "" if answer is None else str(answer)
    if not text.strip():
        raise InvalidInput("Please answer first")
    return text


class QuizController:
    """Single writer for room documents.

    Every host mutation is a read followed by one merge, serialised per room
    by an ``asyncio.Lock`` and stamped with an incremented ``revision``.
    """

    def __init__(
        self,
        database: Optional[RealtimeDatabase] = None,
        clock: Optional[ServerClock] = None,
        chunk_size: Optional[int] = None,
    ):
        self.database = database or realtime
        self.store = SessionStore(self.database)
        self.clock = clock or ServerClock(self.database)
        self.chunk_size = settings.CHUNK_SIZE if chunk_size is None else chunk_size
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.locks: Dict[str, asyncio.Lock] = {}
        self._watchers: Dict[str, List[Callable[[], None]]] = {}

    def _lock(self, room_code: str) -> asyncio.Lock:
        self.locks.setdefault(room_code, asyncio.Lock())
        return self.locks[room_code]

    async def start(self) -> None:
        await self.clock.start()

    def close(self) -> None:
        for unsubscribers in self._watchers.values():
            for unsubscribe in unsubscribers:
                unsubscribe()
        self._watchers.clear()
        self.clock.stop()

    async def _merge(
        self,
        room_code: str,
        quiz: QuizSession,
        fields: Dict[str, Any],
        answer_key: Optional[Dict[int, AnswerValue]] = None,
    ) -> None:
        fields["revision"] = quiz.revision + 1
        await self.store.merge_quiz(room_code, fields, answer_key)

    async def get_quiz(self, room_code: str) -> QuizSession:
        return await self.store.require_quiz(room_code)

    async def get_answer_key(self, room_code: str) -> Dict[int, AnswerValue]:
        await self.store.require_quiz(room_code)
        return await self.store.read_answer_key(room_code)

    async def create_room(
        self,
        title: str = "",
        questions: Optional[Sequence[Union[McQuestion, TextQuestion]]] = None,
        reveal_answers: Optional[bool] = None,
    ) -> str:
        reveal = settings.REVEAL_ANSWERS if reveal_answers is None else reveal_answers
        public, answer_key = split_answer_key(list(questions or []), reveal)

        room_code = make_room_code()
        while await self.store.room_exists(room_code):
            logger.debug("Room code %s already taken, drawing another", room_code)
            room_code = make_room_code()

        quiz = QuizSession(
            title=clean(title) or "Pub Quiz",
            questions=public,
            default_timer_sec=settings.DEFAULT_TIMER_SEC,
            reveal_answers=reveal,
            created_at=self.clock.server_now(),
        )

        async with self._lock(room_code):
            await event_store.reset(room_code)
            await self.store.write_room(room_code, quiz, answer_key)
            self._watchers[room_code] = await event_store.mirror(self.store, room_code)

        logger.info("Created room %s (%r, %d questions, reveal=%s)", room_code, quiz.title, quiz.total, reveal)
        return room_code

    async def join(self, room_code: str, name: str) -> Player:
        name = clean(name)
        if not name:
            raise InvalidInput("Enter your name to join")
        await self.store.require_quiz(room_code)
        player = Player(id=make_player_id(), name=name)
        logger.info("Player %s (%s) joined room %s", player.name, player.id, room_code)
        return player

    async def load_questions(self, room_code: str, questions: Sequence[Union[McQuestion, TextQuestion]]) -> QuizSession:
        """Replace the question list and send the room back to the lobby."""
        async with self._lock(room_code):
            quiz = await self.store.require_quiz(room_code)
            public, answer_key = split_answer_key(questions, quiz.reveal_answers)
            await self._merge(
                room_code,
                quiz,
                {
                    "questions": [q.model_dump(mode="json") for q in public],
                    "current_index": -1,
                    "state": "lobby",
                    "accepting": False,
                    "timer_ends_at": 0,
                    "revealed_answers": None,
                },
                answer_key if quiz.reveal_answers else None,
            )
        logger.info("Loaded %d question(s) into room %s", len(public), room_code)
        return await self.store.require_quiz(room_code)

    async def load_questions_json(self, room_code: str, raw: Union[str, bytes]) -> QuizSession:
        try:
            questions = _questions_adapter.validate_json(raw)
        except ValidationError as exc:
            logger.warning("Rejected question list for room %s: %s", room_code, exc)
            raise InvalidInput(f"Invalid questions JSON: {exc}") from exc
        return await self.load_questions(room_code, questions)

    async def set_default_timer(self, room_code: str, seconds: int) -> QuizSession:
        if not MIN_TIMER_SEC <= seconds <= MAX_TIMER_SEC:
            raise InvalidInput(f"Default timer must be between {MIN_TIMER_SEC} and {MAX_TIMER_SEC} seconds")
        async with self._lock(room_code):
            quiz = await self.store.require_quiz(room_code)
            await self._merge(room_code, quiz, {"default_timer_sec": seconds})
        return await self.store.require_quiz(room_code)

    async def advance(self, room_code: str, direction: int = 1, now: Optional[NowFn] = None) -> QuizSession:
        if direction not in (1, -1):
            raise InvalidInput("direction must be +1 or -1")
        now = now or self.clock.server_now

        async with self._lock(room_code):
            quiz = await self.store.require_quiz(room_code)
            fields = plan_advance(quiz, direction, now, self.chunk_size)
            if fields is None:
                logger.debug("Advance %+d in room %s (%s) is a no-op", direction, room_code, quiz.state)
                return quiz

            if quiz.reveal_answers and quiz.state == "question" and direction > 0:
                correct = await self.store.read_answer_key_entry(room_code, quiz.current_index)
                if correct is not None:
                    fields[f"revealed_answers/{quiz.current_index}"] = correct

            await self._merge(room_code, quiz, fields)

        logger.info(
            "Room %s: %s@%d -> %s@%d",
            room_code, quiz.state, quiz.current_index, fields["state"], fields["current_index"],
        )
        return await self.store.require_quiz(room_code)

    async def set_timer(self, room_code: str, seconds: int, now: Optional[NowFn] = None) -> QuizSession:
        if seconds <= 0:
            raise InvalidInput("Timer must be a positive number of seconds")
        now = now or self.clock.server_now
        async with self._lock(room_code):
            quiz = await self.store.require_quiz(room_code)
            await self._merge(room_code, quiz, {"timer_ends_at": now() + seconds * 1000, "accepting": True})
        return await self.store.require_quiz(room_code)

    async def stop_timer(self, room_code: str) -> QuizSession:
        async with self._lock(room_code):
            quiz = await self.store.require_quiz(room_code)
            await self._merge(room_code, quiz, {"accepting": False})
        return await self.store.require_quiz(room_code)

    async def submit_answer(
        self, room_code: str, question_index: int, player: Player, answer: Any, accepting: bool
    ) -> bool:
        """Append an answer entry; returns False when the window is closed.

        ``accepting`` is the submitting client's own view of the window. The
        window is checked again here against this process's server clock.
        """
        if not accepting:
            logger.debug("Dropped answer from %s for Q%d: client reports window closed", player.id, question_index)
            return False

        quiz = await self.store.require_quiz(room_code)
        if (
            quiz.state != "question"
            or question_index != quiz.current_index
            or not is_accepting(quiz, self.clock.server_now())
        ):
            logger.debug("Dropped answer from %s for Q%d: window closed", player.id, question_index)
            return False

        name = clean(player.name)
        if not name:
            raise InvalidInput("Player name must not be empty")

        question = quiz.current_question
        entry = AnswerEntry(
            player_id=player.id,
            player_name=name,
            answer_type=question.type,
            answer=coerce_answer(question, answer),
            submitted_at=self.clock.server_now(),
        )
        await self.store.append_answer(room_code, question_index, entry)
        return True

    async def answers(self, room_code: str, question_index: int) -> List[AnswerEntry]:
        await self.store.require_quiz(room_code)
        return await self.store.read_answers(room_code, question_index)

    async def compute_scores(self, room_code: str) -> List[ScoreRow]:
        quiz = await self.store.require_quiz(room_code)
        all_answers = await self.store.read_all_answers(room_code)
        return scoring.compute_scores(quiz, all_answers)

    async def export_results(self, room_code: str) -> str:
        quiz = await self.store.require_quiz(room_code)
        all_answers = await self.store.read_all_answers(room_code)
        return results_csv(quiz, scoring.compute_scores(quiz, all_answers))


controller = QuizController()
