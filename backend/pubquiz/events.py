from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

from pymongo import ReturnDocument

from .db import db
from .models import AnswerEntry, QuizSession
from .store import SessionStore
from .utils import now_ms


class EventStore:
    """Persist room events so clients can poll via HTTP."""

    counters_collection = db.room_event_counters
    events_collection = db.room_events

    async def append(self, room_code: str, payload: dict[str, Any]) -> int:
        """Store a new event for a room and return its sequence number."""

        counter_doc = await self.counters_collection.find_one_and_update(
            {"_id": room_code},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        seq = int(counter_doc["seq"])

        await self.events_collection.insert_one(
            {
                "room_code": room_code,
                "seq": seq,
                "timestamp": now_ms(),
                "payload": payload,
            }
        )
        return seq

    async def list(self, room_code: str, after: int | None = None, limit: int = 200) -> List[dict[str, Any]]:
        """Return events for a room that occur after the given sequence."""

        query: dict[str, Any] = {"room_code": room_code}
        if after is not None:
            query["seq"] = {"$gt": after}

        cursor = (
            self.events_collection.find(query)
            .sort("seq", 1)
            .limit(limit)
        )

        events: List[dict[str, Any]] = []
        async for doc in cursor:
            events.append(
                {
                    "seq": doc["seq"],
                    "timestamp": doc.get("timestamp"),
                    "payload": doc.get("payload", {}),
                }
            )
        return events

    async def reset(self, room_code: str) -> None:
        """Clear stored events for a room and emit a reset marker."""

        await self.events_collection.delete_many({"room_code": room_code})

        # Sequence numbers keep increasing across resets so pollers holding an
        # old ``after`` value still see the marker.
        await self.append(room_code, {"type": "room_reset"})

    async def mirror(self, store: SessionStore, room_code: str) -> List[Callable[[], None]]:
        """Subscribe to a room and record every change as an event.

        Returns the unsubscribe callables.
        """

        async def on_quiz(quiz: Optional[QuizSession]) -> None:
            if quiz is not None:
                await self.append(room_code, {"type": "quiz", "quiz": quiz.public().model_dump(mode="json")})

        async def on_answers(all_answers: Dict[int, List[AnswerEntry]]) -> None:
            counts = {str(index): len(rows) for index, rows in all_answers.items()}
            await self.append(room_code, {"type": "answers", "counts": counts})

        return [
            await store.watch_room(room_code, on_quiz),
            await store.watch_all_answers(room_code, on_answers),
        ]


event_store = EventStore()
