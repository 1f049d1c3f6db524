from fastapi import Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from db.database import get_db
from services.errors import (
    AlreadyCompletedTodayError,
    AlreadyEnrolledError,
    ChallengeConfigurationError,
    ChallengeError,
    ChallengeWindowError,
    InvalidTransitionError,
    PersistenceError,
    ValidationError,
)
from services.leaderboard_service import LeaderboardCache
from services.plank_session_registry import PlankSessionRegistry
from services.store import ChallengeStore

ERROR_STATUS: list[tuple[type[ChallengeError], int]] = [
    (PersistenceError, 503),
    (ChallengeConfigurationError, 400),
    (ValidationError, 400),
    (ChallengeWindowError, 409),
    (AlreadyEnrolledError, 409),
    (AlreadyCompletedTodayError, 409),
    (InvalidTransitionError, 409),
]


def get_store(db: Session = Depends(get_db)) -> ChallengeStore:
    return ChallengeStore(db)


def get_leaderboard_cache(request: Request) -> LeaderboardCache:
    return request.app.state.leaderboard_cache


def get_plank_sessions(request: Request) -> PlankSessionRegistry:
    return request.app.state.plank_sessions


def status_for_error(exc: ChallengeError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 400


async def challenge_error_handler(request: Request, exc: ChallengeError) -> JSONResponse:
    content = {"detail": exc.message, "retryable": bool(exc.retryable)}
    step = getattr(exc, "step", None)
    if step:
        content["step"] = step
    return JSONResponse(status_code=status_for_error(exc), content=content)
