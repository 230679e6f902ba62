from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import ValidationError

from .db import RealtimeDatabase
from .errors import RoomNotFound
from .models import AnswerEntry, AnswerValue, QuizSession

logger = logging.getLogger(__name__)

QuizListener = Callable[[Optional[QuizSession]], Union[Awaitable[None], None]]
AnswersListener = Callable[[List[AnswerEntry]], Union[Awaitable[None], None]]
AllAnswersListener = Callable[[Dict[int, List[AnswerEntry]]], Union[Awaitable[None], None]]


def parse_quiz(raw: Any) -> Optional[QuizSession]:
    return QuizSession.model_validate(raw) if raw else None


def parse_answers(raw: Any) -> List[AnswerEntry]:
    entries: List[AnswerEntry] = []
    for key, value in (raw or {}).items():
        try:
            entries.append(AnswerEntry.model_validate(value))
        except ValidationError:
            logger.warning("Skipping malformed answer entry %s", key)
    return entries


def parse_all_answers(raw: Any) -> Dict[int, List[AnswerEntry]]:
    by_question = {int(index): parse_answers(rows) for index, rows in (raw or {}).items()}
    return dict(sorted(by_question.items()))


class SessionStore:
    """Typed access to a room's documents in the realtime database.

    Layout::

        rooms/{code}/quiz               session document
        rooms/{code}/answers/{index}    append-only answer entries
        rooms/{code}/answerKey/{index}  host-only correct values (reveal variant)
    """

    def __init__(self, database: RealtimeDatabase):
        self.database = database

    @staticmethod
    def room_path(code: str) -> str:
        return f"rooms/{code}"

    @staticmethod
    def quiz_path(code: str) -> str:
        return f"rooms/{code}/quiz"

    @staticmethod
    def answers_root(code: str) -> str:
        return f"rooms/{code}/answers"

    @staticmethod
    def answers_path(code: str, question_index: int) -> str:
        return f"rooms/{code}/answers/{question_index}"

    @staticmethod
    def answer_key_path(code: str) -> str:
        return f"rooms/{code}/answerKey"

    async def room_exists(self, code: str) -> bool:
        return await self.database.exists(self.quiz_path(code))

    async def read_quiz(self, code: str) -> Optional[QuizSession]:
        return parse_quiz(await self.database.get(self.quiz_path(code)))

    async def require_quiz(self, code: str) -> QuizSession:
        quiz = await self.read_quiz(code)
        if quiz is None:
            raise RoomNotFound(code)
        return quiz

    async def write_room(
        self, code: str, quiz: QuizSession, answer_key: Optional[Dict[int, AnswerValue]] = None
    ) -> None:
        room: Dict[str, Any] = {"quiz": quiz.model_dump(mode="json")}
        if answer_key:
            room["answerKey"] = {str(index): value for index, value in answer_key.items()}
        await self.database.set(self.room_path(code), room)

    async def merge_quiz(
        self, code: str, fields: Dict[str, Any], answer_key: Optional[Dict[int, AnswerValue]] = None
    ) -> None:
        """Apply ``fields`` to the session document in one atomic update.

        Keys may be nested paths relative to the document, e.g.
        ``revealed_answers/3``. When ``answer_key`` is given it replaces the
        room's answer key in the same update.
        """
        update = {f"quiz/{key}": value for key, value in fields.items()}
        if answer_key is not None:
            update["answerKey"] = {str(index): value for index, value in answer_key.items()} or None
        await self.database.update(self.room_path(code), update)

    async def append_answer(self, code: str, question_index: int, entry: AnswerEntry) -> str:
        return await self.database.push(self.answers_path(code, question_index), entry.model_dump(mode="json"))

    async def read_answers(self, code: str, question_index: int) -> List[AnswerEntry]:
        return parse_answers(await self.database.get(self.answers_path(code, question_index)))

    async def read_all_answers(self, code: str) -> Dict[int, List[AnswerEntry]]:
        return parse_all_answers(await self.database.get(self.answers_root(code)))

    async def read_answer_key(self, code: str) -> Dict[int, AnswerValue]:
        raw = await self.database.get(self.answer_key_path(code)) or {}
        return {int(index): value for index, value in raw.items() if value is not None}

    async def read_answer_key_entry(self, code: str, question_index: int) -> Optional[AnswerValue]:
        return await self.database.get(f"{self.answer_key_path(code)}/{question_index}")

    async def watch_room(self, code: str, listener: QuizListener) -> Callable[[], None]:
        return await self.database.subscribe(self.quiz_path(code), lambda raw: listener(parse_quiz(raw)))

    async def watch_answers(self, code: str, question_index: int, listener: AnswersListener) -> Callable[[], None]:
        return await self.database.subscribe(
            self.answers_path(code, question_index), lambda raw: listener(parse_answers(raw))
        )

    async def watch_all_answers(self, code: str, listener: AllAnswersListener) -> Callable[[], None]:
        return await self.database.subscribe(self.answers_root(code), lambda raw: listener(parse_all_answers(raw)))
