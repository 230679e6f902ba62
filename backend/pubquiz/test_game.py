from __future__ import annotations

import asyncio
import json
from unittest import IsolatedAsyncioTestCase, TestCase

from pydantic import ValidationError

from .db import RealtimeDatabase, Settings
from .errors import InvalidInput, RoomNotFound
from .events import event_store
from .game import QuizController, plan_advance
from .models import McQuestion, Player, QuizSession, TextQuestion

NOW = 1_700_000_000_000


def _fixed_now() -> int:
    return NOW


def _questions(count: int):
    return [
        McQuestion(type="mc", prompt=f"Question {i + 1}", choices=["a", "b", "c"], correct_answer=i % 3)
        for i in range(count)
    ]


def _quiz(state: str, index: int, total: int = 12) -> QuizSession:
    return QuizSession(questions=_questions(total), state=state, current_index=index)


class PlanAdvanceTests(TestCase):
    def test_lobby_without_questions_is_noop(self):
        self.assertIsNone(plan_advance(QuizSession(), 1, _fixed_now))

    def test_lobby_starts_first_question_in_either_direction(self):
        for direction in (1, -1):
            fields = plan_advance(_quiz("lobby", -1), direction, _fixed_now)
            self.assertEqual(
                fields,
                {"current_index": 0, "state": "question", "accepting": True, "timer_ends_at": NOW + 60_000},
            )

    def test_forward_from_question_nine_opens_break_at_ten(self):
        fields = plan_advance(_quiz("question", 9), 1, _fixed_now)
        self.assertEqual(fields, {"current_index": 10, "state": "break", "accepting": False, "timer_ends_at": 0})

    def test_forward_from_break_resumes_same_index(self):
        fields = plan_advance(_quiz("break", 10), 1, _fixed_now)
        self.assertEqual(fields["state"], "question")
        self.assertEqual(fields["current_index"], 10)
        self.assertEqual(fields["timer_ends_at"], NOW + 60_000)

    def test_backward_from_break_returns_to_previous_question(self):
        fields = plan_advance(_quiz("break", 10), -1, _fixed_now)
        self.assertEqual((fields["state"], fields["current_index"]), ("question", 9))

    def test_backward_onto_chunk_boundary_shows_break(self):
        fields = plan_advance(_quiz("question", 10), -1, _fixed_now)
        self.assertEqual((fields["state"], fields["current_index"]), ("break", 9))

    def test_backward_from_first_question_returns_to_lobby(self):
        fields = plan_advance(_quiz("question", 0), -1, _fixed_now)
        self.assertEqual(fields, {"current_index": -1, "state": "lobby", "accepting": False, "timer_ends_at": 0})

    def test_forward_from_last_question_shows_results(self):
        fields = plan_advance(_quiz("question", 11), 1, _fixed_now)
        self.assertEqual(fields, {"current_index": 11, "state": "results", "accepting": False, "timer_ends_at": 0})

    def test_no_break_after_final_chunk(self):
        fields = plan_advance(_quiz("question", 19, total=20), 1, _fixed_now)
        self.assertEqual((fields["state"], fields["current_index"]), ("results", 19))

    def test_results_only_steps_back(self):
        self.assertIsNone(plan_advance(_quiz("results", 11), 1, _fixed_now))
        fields = plan_advance(_quiz("results", 11), -1, _fixed_now)
        self.assertEqual((fields["state"], fields["current_index"]), ("question", 11))

    def test_custom_chunk_size(self):
        fields = plan_advance(_quiz("question", 4), 1, _fixed_now, chunk=5)
        self.assertEqual((fields["state"], fields["current_index"]), ("break", 5))


class QuizControllerTests(IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.database = RealtimeDatabase()
        self.controller = QuizController(self.database)
        self.ann = Player(id="p1", name="Ann")

    async def asyncTearDown(self) -> None:
        self.controller.close()

    async def _room(self, count: int = 12, **kwargs) -> str:
        return await self.controller.create_room("Friday Quiz", _questions(count), **kwargs)

    async def test_create_room_writes_lobby_document(self):
        code = await self.controller.create_room("  Friday Quiz  ")
        quiz = await self.controller.get_quiz(code)

        self.assertEqual(len(code), 5)
        self.assertEqual(quiz.title, "Friday Quiz")
        self.assertEqual((quiz.state, quiz.current_index), ("lobby", -1))
        self.assertEqual((quiz.accepting, quiz.timer_ends_at), (False, 0))
        self.assertEqual(quiz.default_timer_sec, 60)

    async def test_blank_title_falls_back_to_default(self):
        code = await self.controller.create_room("   ")
        self.assertEqual((await self.controller.get_quiz(code)).title, "Pub Quiz")

    async def test_advance_empty_lobby_is_noop(self):
        code = await self.controller.create_room("Empty")
        quiz = await self.controller.advance(code, 1)

        self.assertEqual((quiz.state, quiz.current_index), ("lobby", -1))
        self.assertEqual(quiz.revision, 0)

    async def test_end_to_end_progression_through_break_to_results(self):
        code = await self.controller.create_room("Friday Quiz")
        await self.controller.load_questions(code, _questions(12))

        quiz = await self.controller.advance(code, 1)
        self.assertEqual((quiz.state, quiz.current_index), ("question", 0))

        for _ in range(10):
            quiz = await self.controller.advance(code, 1)
        self.assertEqual((quiz.state, quiz.current_index), ("break", 10))
        self.assertFalse(quiz.accepting)

        quiz = await self.controller.advance(code, 1)
        self.assertEqual((quiz.state, quiz.current_index), ("question", 10))

        for _ in range(2):
            quiz = await self.controller.advance(code, 1)
        self.assertEqual((quiz.state, quiz.current_index), ("results", 11))
        self.assertEqual(quiz.timer_ends_at, 0)

    async def test_advance_uses_supplied_clock(self):
        code = await self._room()
        quiz = await self.controller.advance(code, 1, now=_fixed_now)
        self.assertEqual(quiz.timer_ends_at, NOW + 60_000)
        self.assertTrue(quiz.accepting)

    async def test_every_mutation_bumps_revision(self):
        code = await self._room()
        await self.controller.advance(code, 1)
        await self.controller.stop_timer(code)
        quiz = await self.controller.set_timer(code, 30)
        self.assertEqual(quiz.revision, 3)

    async def test_invalid_direction_rejected(self):
        code = await self._room()
        with self.assertRaises(InvalidInput):
            await self.controller.advance(code, 2)

    async def test_unknown_room_raises_not_found(self):
        with self.assertRaises(RoomNotFound):
            await self.controller.advance("NOPE1", 1)
        with self.assertRaises(RoomNotFound):
            await self.controller.join("NOPE1", "Ann")
        with self.assertRaises(RoomNotFound):
            await self.controller.set_timer("NOPE1", 60)
        self.assertIsNone(await self.database.get("rooms/NOPE1"))

    async def test_set_timer_round_trip(self):
        code = await self._room()
        await self.controller.set_timer(code, 60, now=_fixed_now)

        quiz = await self.controller.get_quiz(code)
        self.assertEqual(quiz.timer_ends_at, NOW + 60_000)
        self.assertTrue(quiz.accepting)

    async def test_set_timer_requires_positive_seconds(self):
        code = await self._room()
        with self.assertRaises(InvalidInput):
            await self.controller.set_timer(code, 0)

    async def test_stop_timer_only_closes_window(self):
        code = await self._room()
        await self.controller.advance(code, 1, now=_fixed_now)
        quiz = await self.controller.stop_timer(code)

        self.assertFalse(quiz.accepting)
        self.assertEqual(quiz.timer_ends_at, NOW + 60_000)
        self.assertEqual((quiz.state, quiz.current_index), ("question", 0))

    async def test_default_timer_bounds(self):
        code = await self._room()
        with self.assertRaises(InvalidInput):
            await self.controller.set_default_timer(code, 30)
        await self.controller.set_default_timer(code, 45)

        quiz = await self.controller.advance(code, 1, now=_fixed_now)
        self.assertEqual(quiz.timer_ends_at, NOW + 45_000)

    async def test_load_questions_resets_progression(self):
        code = await self._room()
        await self.controller.advance(code, 1)
        await self.controller.advance(code, 1)

        quiz = await self.controller.load_questions(code, _questions(3))
        self.assertEqual(quiz.total, 3)
        self.assertEqual((quiz.state, quiz.current_index), ("lobby", -1))
        self.assertEqual((quiz.accepting, quiz.timer_ends_at), (False, 0))

    async def test_load_questions_json_accepts_camel_case(self):
        code = await self.controller.create_room("Json")
        raw = json.dumps(
            [
                {"type": "mc", "prompt": "Capital of Finland?", "choices": ["Helsinki", "Turku"], "correctAnswer": 0},
                {"type": "text", "prompt": "12x12?", "correctAnswer": 144},
            ]
        )
        quiz = await self.controller.load_questions_json(code, raw)

        self.assertEqual(quiz.questions[0].correct_answer, 0)
        self.assertEqual(quiz.questions[1].correct_answer, "144")

    async def test_invalid_json_leaves_room_untouched(self):
        code = await self._room(2)
        before = await self.database.get(f"rooms/{code}")

        for raw in ("[{not json", '{"type": "mc"}', '[{"type": "essay", "prompt": "?"}]'):
            with self.assertRaises(InvalidInput) as ctx:
                await self.controller.load_questions_json(code, raw)
            self.assertIn("Invalid questions JSON", str(ctx.exception))

        self.assertEqual(await self.database.get(f"rooms/{code}"), before)

    async def test_join_returns_fresh_player(self):
        code = await self._room()
        first = await self.controller.join(code, "  Ann ")
        second = await self.controller.join(code, "Ann")

        self.assertEqual(first.name, "Ann")
        self.assertNotEqual(first.id, second.id)
        with self.assertRaises(InvalidInput):
            await self.controller.join(code, "   ")

    async def test_submit_rejected_when_client_window_closed(self):
        code = await self._room()
        await self.controller.advance(code, 1)

        accepted = await self.controller.submit_answer(code, 0, self.ann, 1, accepting=False)
        self.assertFalse(accepted)
        self.assertEqual(await self.controller.answers(code, 0), [])

    async def test_submit_appends_tagged_entry(self):
        code = await self._room()
        await self.controller.advance(code, 1)

        self.assertTrue(await self.controller.submit_answer(code, 0, self.ann, 2, accepting=True))
        self.assertTrue(await self.controller.submit_answer(code, 0, self.ann, "1", accepting=True))

        entries = await self.controller.answers(code, 0)
        self.assertEqual([e.answer for e in entries], [2, 1])
        self.assertEqual({e.answer_type for e in entries}, {"mc"})
        self.assertEqual(entries[0].player_name, "Ann")

    async def test_submit_rechecks_window_on_writer(self):
        code = await self._room()
        await self.controller.advance(code, 1)

        # Not the active question.
        self.assertFalse(await self.controller.submit_answer(code, 1, self.ann, 0, accepting=True))

        await self.controller.stop_timer(code)
        self.assertFalse(await self.controller.submit_answer(code, 0, self.ann, 0, accepting=True))

        await self.controller.set_timer(code, 1, now=lambda: 0)
        self.assertFalse(await self.controller.submit_answer(code, 0, self.ann, 0, accepting=True))

        self.assertEqual(await self.controller.answers(code, 0), [])

    async def test_submit_rejects_out_of_range_choice(self):
        code = await self._room()
        await self.controller.advance(code, 1)
        with self.assertRaises(InvalidInput):
            await self.controller.submit_answer(code, 0, self.ann, 7, accepting=True)

    async def test_submit_rejects_blank_text_answer(self):
        questions = [TextQuestion(type="text", prompt="Capital of France?", correct_answer="Paris")]
        code = await self.controller.create_room("Text", questions)
        await self.controller.advance(code, 1)

        with self.assertRaises(InvalidInput) as ctx:
            await self.controller.submit_answer(code, 0, self.ann, "   ", accepting=True)
        self.assertIn("Please answer first", str(ctx.exception))
        self.assertEqual(await self.controller.answers(code, 0), [])

    async def test_submit_tags_entry_with_active_question_type(self):
        questions = [
            McQuestion(type="mc", prompt="Pick b", choices=["a", "b"], correct_answer=1),
            TextQuestion(type="text", prompt="Capital of France?", correct_answer="Paris"),
        ]
        code = await self.controller.create_room("Mixed", questions)
        await self.controller.advance(code, 1)
        await self.controller.advance(code, 1)

        self.assertTrue(await self.controller.submit_answer(code, 1, self.ann, "1", accepting=True))
        entries = await self.controller.answers(code, 1)
        self.assertEqual((entries[0].answer_type, entries[0].answer), ("text", "1"))

    async def test_concurrent_advances_are_serialised(self):
        code = await self._room()

        await asyncio.gather(*[self.controller.advance(code, 1) for _ in range(5)])

        quiz = await self.controller.get_quiz(code)
        self.assertEqual((quiz.state, quiz.current_index, quiz.revision), ("question", 4, 5))

    async def test_scores_match_example(self):
        questions = [
            McQuestion(type="mc", prompt="Pick b", choices=["a", "b"], correct_answer=1),
            TextQuestion(type="text", prompt="Capital of France?", correct_answer="Paris"),
        ]
        code = await self.controller.create_room("Scores", questions)
        await self.controller.advance(code, 1)
        await self.controller.submit_answer(code, 0, self.ann, 1, accepting=True)
        await self.controller.advance(code, 1)
        await self.controller.submit_answer(code, 1, self.ann, " paris ", accepting=True)

        scores = await self.controller.compute_scores(code)
        self.assertEqual(len(scores), 1)
        self.assertEqual(scores[0].score, 2)
        self.assertEqual(scores[0].answers_by_question, {0: 1, 1: " paris "})

    async def test_duplicate_correct_entries_each_score(self):
        code = await self._room()
        await self.controller.advance(code, 1)
        for _ in range(2):
            await self.controller.submit_answer(code, 0, self.ann, 0, accepting=True)

        scores = await self.controller.compute_scores(code)
        self.assertEqual(scores[0].score, 2)

    async def test_reveal_variant_scores_only_after_reveal(self):
        code = await self._room(reveal_answers=True)

        quiz = await self.controller.get_quiz(code)
        self.assertTrue(all(q.correct_answer is None for q in quiz.questions))
        self.assertEqual((await self.controller.get_answer_key(code))[1], 1)

        await self.controller.advance(code, 1)
        await self.controller.submit_answer(code, 0, self.ann, 0, accepting=True)
        self.assertEqual((await self.controller.compute_scores(code))[0].score, 0)

        quiz = await self.controller.advance(code, 1)
        self.assertEqual(quiz.revealed_answers, {0: 0})
        self.assertEqual((await self.controller.compute_scores(code))[0].score, 1)

    async def test_reveal_not_published_when_stepping_back(self):
        code = await self._room(reveal_answers=True)
        await self.controller.advance(code, 1)
        await self.controller.advance(code, 1)

        quiz = await self.controller.advance(code, -1)
        self.assertEqual(quiz.revealed_answers, {0: 0})
        self.assertEqual((quiz.state, quiz.current_index), ("question", 0))

    async def test_reloading_questions_clears_reveals(self):
        code = await self._room(reveal_answers=True)
        await self.controller.advance(code, 1)
        await self.controller.advance(code, 1)

        quiz = await self.controller.load_questions(code, _questions(2))
        self.assertEqual(quiz.revealed_answers, {})
        self.assertEqual(await self.controller.get_answer_key(code), {0: 0, 1: 1})

    async def test_export_results_csv(self):
        code = await self._room(2)
        await self.controller.advance(code, 1)
        await self.controller.submit_answer(code, 0, Player(id="p2", name='Bob "B"'), 0, accepting=True)

        csv_text = await self.controller.export_results(code)
        self.assertEqual(csv_text.splitlines(), ['"Player","Score","Q1","Q2"', '"Bob ""B""","1","0",""'])

    async def test_room_changes_are_mirrored_to_event_log(self):
        code = await self._room()
        await self.controller.advance(code, 1)
        await self.controller.submit_answer(code, 0, self.ann, 0, accepting=True)

        events = await event_store.list(code)
        types = [e["payload"]["type"] for e in events]
        self.assertEqual(types, ["room_reset", "quiz", "answers", "quiz", "answers"])
        self.assertEqual(events[-1]["payload"]["counts"], {"0": 1})
        self.assertIsNone(events[3]["payload"]["quiz"]["questions"][0]["correct_answer"])


class SettingsBoundsTests(TestCase):
    def test_default_timer_must_be_in_range(self):
        with self.assertRaises(ValidationError):
            Settings(DEFAULT_TIMER_SEC=90)
        self.assertEqual(Settings(DEFAULT_TIMER_SEC=45).DEFAULT_TIMER_SEC, 45)

    def test_chunk_size_must_be_positive(self):
        with self.assertRaises(ValidationError):
            Settings(CHUNK_SIZE=0)

    def test_controller_rejects_zero_chunk_size(self):
        with self.assertRaises(ValueError):
            QuizController(RealtimeDatabase(), chunk_size=0)
