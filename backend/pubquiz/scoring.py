from __future__ import annotations

from typing import Dict, List, Optional, Protocol, Tuple

from .models import AnswerEntry, AnswerValue, QuizSession, ScoreRow
from .utils import clean


class GroundTruth(Protocol):
    def correct_value(self, question_index: int) -> Optional[AnswerValue]:
        ...


class StaticAnswerKey:
    """Scores against the answer key written at authoring time."""

    def __init__(self, quiz: QuizSession):
        self._quiz = quiz

    def correct_value(self, question_index: int) -> Optional[AnswerValue]:
        if 0 <= question_index < self._quiz.total:
            return self._quiz.questions[question_index].correct_answer
        return None


class RevealedAnswerKey:
    """Scores only questions whose correct value has been revealed."""

    def __init__(self, quiz: QuizSession):
        self._quiz = quiz

    def correct_value(self, question_index: int) -> Optional[AnswerValue]:
        return self._quiz.revealed_answers.get(question_index)


def ground_truth_for(quiz: QuizSession) -> GroundTruth:
    return RevealedAnswerKey(quiz) if quiz.reveal_answers else StaticAnswerKey(quiz)


def normalise_text(value: object) -> str:
    return clean(str(value if value is not None else "").lower())


def is_correct(question_type: str, answer: AnswerValue, truth: AnswerValue) -> bool:
    if question_type == "mc":
        return str(answer) == str(truth)
    return normalise_text(answer) == normalise_text(truth)


def compute_scores(
    quiz: QuizSession,
    all_answers: Dict[int, List[AnswerEntry]],
    ground_truth: Optional[GroundTruth] = None,
) -> List[ScoreRow]:
    """Rank players by number of correct answer entries.

    Players are identified by ``(player_id, player_name)``. Questions without
    a ground truth value score nobody but their answers are still recorded.
    Every correct entry counts, so a player who submitted the same correct
    answer twice gets two points. Ties keep the order players were first seen.
    """
    truth_source = ground_truth or ground_truth_for(quiz)
    rows: Dict[Tuple[str, str], ScoreRow] = {}

    for question_index in sorted(all_answers):
        question = quiz.questions[question_index] if 0 <= question_index < quiz.total else None
        truth = truth_source.correct_value(question_index) if question else None

        for entry in all_answers[question_index]:
            key = (entry.player_id, entry.player_name)
            row = rows.get(key)
            if row is None:
                row = rows[key] = ScoreRow(player=entry.player)
            row.answers_by_question[question_index] = entry.answer

            if truth is not None and is_correct(question.type, entry.answer, truth):
                row.score += 1

    return sorted(rows.values(), key=lambda r: -r.score)
