class QuizError(Exception):
    """Base class for failures surfaced to the caller of a quiz operation."""


class RoomNotFound(QuizError):
    def __init__(self, room_code: str):
        super().__init__(f"Room {room_code} not found")
        self.room_code = room_code


class InvalidInput(QuizError, ValueError):
    pass
