import csv
import io
import secrets
import string
import time
from typing import TYPE_CHECKING, Any, Iterable, List

if TYPE_CHECKING:
    from .models import QuizSession, ScoreRow

ROOM_CODE_ALPHABET = string.digits + string.ascii_uppercase
ROOM_CODE_LENGTH = 5


def now_ms() -> int:
    return int(time.time() * 1000)


def clean(value: Any) -> str:
    return str(value or "").strip()


def make_room_code() -> str:
    return "".join(secrets.choice(ROOM_CODE_ALPHABET) for _ in range(ROOM_CODE_LENGTH))


def make_player_id() -> str:
    return secrets.token_hex(6)


def to_csv(rows: Iterable[Iterable[Any]]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    for row in rows:
        writer.writerow(["" if cell is None else str(cell) for cell in row])
    return buffer.getvalue().rstrip("\n")


def results_csv(quiz: "QuizSession", scores: List["ScoreRow"]) -> str:
    """Render the ranked scoreboard as CSV: Player, Score, Q1..Qn."""
    count = len(quiz.questions)
    rows: List[List[Any]] = [["Player", "Score", *[f"Q{i + 1}" for i in range(count)]]]
    for row in scores:
        rows.append([row.player.name, row.score, *[row.answers_by_question.get(i, "") for i in range(count)]])
    return to_csv(rows)


def results_filename(title: str) -> str:
    return f"{(title or 'pub-quiz').replace(' ', '-')}-results.csv"
