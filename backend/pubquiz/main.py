from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .clock import countdown
from .db import settings
from .errors import InvalidInput, RoomNotFound
from .events import event_store
from .game import controller
from .log import setup_logging
from .models import Player, QuizSession
from .schemas import (
    AdvanceIn,
    AnswerIn,
    AnswersOut,
    CreateRoomIn,
    CreateRoomOut,
    DefaultTimerIn,
    HostRoomOut,
    JoinIn,
    LoadQuestionsIn,
    LoadQuestionsJsonIn,
    PlayerOut,
    RoomOut,
    ScoresOut,
    SetTimerIn,
)
from .utils import results_filename


@asynccontextmanager
async def lifespan(_: FastAPI):
    setup_logging()
    await controller.start()
    yield
    controller.close()


app = FastAPI(title="Pub Quiz API", lifespan=lifespan)

origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
origin_regex = settings.CORS_ORIGIN_REGEX or None

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins or ["*"],
    allow_origin_regex=origin_regex,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RoomNotFound)
async def room_not_found(_: Request, exc: RoomNotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(InvalidInput)
async def invalid_input(_: Request, exc: InvalidInput):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


def _room_out(quiz: QuizSession) -> RoomOut:
    now = controller.clock.server_now()
    return RoomOut(quiz=quiz.public(), countdown=countdown(quiz, now), server_now=now)


@app.get("/api/time")
async def server_time():
    return {"server_now": controller.clock.server_now()}


@app.post("/api/rooms", response_model=CreateRoomOut)
async def create_room(payload: CreateRoomIn):
    room_code = await controller.create_room(payload.title, payload.questions, payload.reveal_answers)
    return CreateRoomOut(room_code=room_code)


@app.get("/api/rooms/{room_code}", response_model=RoomOut)
async def get_room(room_code: str):
    return _room_out(await controller.get_quiz(room_code))


@app.get("/api/rooms/{room_code}/host", response_model=HostRoomOut)
async def get_host_room(room_code: str):
    quiz = await controller.get_quiz(room_code)
    answer_key = await controller.get_answer_key(room_code)
    now = controller.clock.server_now()
    return HostRoomOut(quiz=quiz, countdown=countdown(quiz, now), server_now=now, answer_key=answer_key)


@app.get("/api/rooms/{room_code}/events")
async def list_events(room_code: str, after: int | None = None, limit: int = 200):
    events = await event_store.list(room_code, after=after, limit=limit)
    latest_seq = events[-1]["seq"] if events else after
    return {"events": events, "latest_seq": latest_seq}


@app.post("/api/rooms/{room_code}/join", response_model=PlayerOut)
async def join(room_code: str, payload: JoinIn):
    return PlayerOut(player=await controller.join(room_code, payload.name))


@app.post("/api/rooms/{room_code}/questions", response_model=RoomOut)
async def load_questions(room_code: str, payload: LoadQuestionsIn):
    return _room_out(await controller.load_questions(room_code, payload.questions))


@app.post("/api/rooms/{room_code}/questions/json", response_model=RoomOut)
async def load_questions_json(room_code: str, payload: LoadQuestionsJsonIn):
    return _room_out(await controller.load_questions_json(room_code, payload.raw))


@app.post("/api/rooms/{room_code}/advance", response_model=RoomOut)
async def advance(room_code: str, payload: AdvanceIn):
    return _room_out(await controller.advance(room_code, payload.direction))


@app.post("/api/rooms/{room_code}/timer", response_model=RoomOut)
async def set_timer(room_code: str, payload: SetTimerIn):
    return _room_out(await controller.set_timer(room_code, payload.seconds))


@app.post("/api/rooms/{room_code}/timer/stop", response_model=RoomOut)
async def stop_timer(room_code: str):
    return _room_out(await controller.stop_timer(room_code))


@app.post("/api/rooms/{room_code}/default-timer", response_model=RoomOut)
async def set_default_timer(room_code: str, payload: DefaultTimerIn):
    return _room_out(await controller.set_default_timer(room_code, payload.seconds))


@app.post("/api/rooms/{room_code}/answers")
async def answer(room_code: str, payload: AnswerIn):
    player = Player(id=payload.player_id, name=payload.player_name)
    ok = await controller.submit_answer(room_code, payload.question_index, player, payload.answer, payload.accepting)
    return {"accepted": ok}


@app.get("/api/rooms/{room_code}/answers/{question_index}", response_model=AnswersOut)
async def list_answers(room_code: str, question_index: int):
    return AnswersOut(answers=await controller.answers(room_code, question_index))


@app.get("/api/rooms/{room_code}/scores", response_model=ScoresOut)
async def scores(room_code: str):
    return ScoresOut(scores=await controller.compute_scores(room_code))


@app.get("/api/rooms/{room_code}/results.csv")
async def export_results(room_code: str):
    quiz = await controller.get_quiz(room_code)
    content = await controller.export_results(room_code)
    return Response(
        content=content,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{results_filename(quiz.title)}"'},
    )
