from __future__ import annotations

import logging
from datetime import date
from typing import Callable

from db.models import Challenge, Enrollment
from services.errors import (
    AlreadyCompletedTodayError,
    AlreadyEnrolledError,
    ChallengeConfigurationError,
    ChallengeError,
    ChallengeWindowError,
    PersistenceError,
    ValidationError,
)
from services.identity import Identity
from services.store import ChallengeStore
from utils.datetime_utils import global_day_number, logical_now, logical_today, to_civil_date

logger = logging.getLogger(__name__)

STATUS_ACTIVE = "active"
STATUS_COMPLETED = "completed"

STEP_ATTEMPT = "attempt"
STEP_STATS = "stats"
STEP_ENROLLMENT = "enrollment"


def is_configured(challenge: Challenge | None) -> bool:
    return bool(challenge and challenge.start_date and challenge.number_of_days and int(challenge.number_of_days) > 0)


def ensure_configured(challenge: Challenge | None) -> None:
    if not is_configured(challenge):
        raise ChallengeConfigurationError("Challenge is not configured correctly.")


def format_date_short(value: date) -> str:
    return f"{value.strftime('%b')} {value.day}, {value.year}"


def join_challenge(
    store: ChallengeStore,
    identity: Identity,
    challenge: Challenge,
    *,
    team_id: int | None = None,
    today: date | None = None,
) -> Enrollment:
    """Enroll the user on the current global day of a running challenge."""
    if store.find_enrollment(identity.user_id, challenge.id) is not None:
        raise AlreadyEnrolledError("You're already in this challenge - check the Active tab!")
    ensure_configured(challenge)
    if not challenge.is_active:
        raise ChallengeWindowError("This challenge is not open for new participants.")

    current = to_civil_date(today) or logical_today()
    global_day = global_day_number(challenge.start_date, challenge.number_of_days, current)
    if global_day == 0:
        start = to_civil_date(challenge.start_date)
        raise ChallengeWindowError(f"This challenge hasn't started yet - check back on {format_date_short(start)}!")
    if global_day > int(challenge.number_of_days):
        raise ChallengeWindowError("This challenge has ended - check back for new challenges!")

    if team_id is not None:
        team = store.find_team(team_id)
        if team is None or team.challenge_id not in (None, challenge.id):
            raise ValidationError("That team is not part of this challenge.")

    enrollment = store.create_enrollment(
        user_id=identity.user_id,
        challenge_id=challenge.id,
        team_id=team_id,
        display_name=identity.display_name or None,
        current_day=global_day,
        last_completed_day=0,
        last_completed_date=None,
        status=STATUS_ACTIVE,
        missed_days_count=0,
    )
    logger.info(
        "User %s joined challenge %s on day %s (team=%s)",
        identity.user_id,
        challenge.id,
        global_day,
        team_id,
    )
    return enrollment


def start_block(enrollment: Enrollment, challenge: Challenge, today: date | None = None) -> ChallengeError | None:
    """The error that would stop the user starting today's attempt, if any."""
    if not is_configured(challenge):
        return ChallengeConfigurationError("Challenge is not configured correctly.")
    number_of_days = int(challenge.number_of_days)
    current = to_civil_date(today) or logical_today()
    if (enrollment.status or STATUS_ACTIVE) == STATUS_COMPLETED:
        return AlreadyCompletedTodayError(f"Challenge Complete! You crushed all {number_of_days} days!")

    global_day = global_day_number(challenge.start_date, number_of_days, current)
    if global_day == 0:
        return ChallengeWindowError("This challenge hasn't started yet.")

    current_day = int(enrollment.current_day or 1)
    last_completed_day = int(enrollment.last_completed_day or 0)
    if enrollment.last_completed_date == current or last_completed_day >= current_day:
        if last_completed_day >= number_of_days:
            return AlreadyCompletedTodayError(f"Challenge Complete! You crushed all {number_of_days} days!")
        return AlreadyCompletedTodayError("Today's challenge crushed! Next up tomorrow at midnight MST")
    if current_day > number_of_days:
        return ChallengeWindowError("This challenge has ended - check back for new challenges!")
    return None


def ensure_can_start(
    store: ChallengeStore,
    enrollment: Enrollment,
    challenge: Challenge,
    today: date | None = None,
) -> None:
    blocked = start_block(enrollment, challenge, today)
    if blocked is not None:
        raise blocked
    # A terminal record whose roll-forward never landed still counts as today's attempt.
    existing = store.find_attempt(enrollment.user_id, enrollment.challenge_id, int(enrollment.current_day), missed=False)
    if existing is not None:
        raise AlreadyCompletedTodayError("Today's challenge crushed! Next up tomorrow at midnight MST")


def roll_forward(
    store: ChallengeStore,
    enrollment: Enrollment,
    challenge: Challenge,
    day: int,
    today: date | None = None,
) -> Enrollment:
    next_day = int(day) + 1
    is_complete = next_day > int(challenge.number_of_days)
    return store.update_enrollment(
        enrollment.id,
        {
            "current_day": next_day,
            "last_completed_day": int(day),
            "last_completed_date": to_civil_date(today) or logical_today(),
            "status": STATUS_COMPLETED if is_complete else STATUS_ACTIVE,
        },
    )


def _run_step(step: str, completed_steps: set[str], enrollment: Enrollment, day: int, fn: Callable[[], object]) -> None:
    if step in completed_steps:
        return
    try:
        fn()
    except PersistenceError as exc:
        exc.step = step
        logger.warning(
            "Terminal write for enrollment %s day %s failed at step '%s' (done: %s)",
            enrollment.id,
            day,
            step,
            sorted(completed_steps) or "none",
        )
        raise
    completed_steps.add(step)


def record_day_outcome(
    store: ChallengeStore,
    *,
    enrollment: Enrollment,
    challenge: Challenge,
    identity: Identity,
    day: int,
    target_value: int,
    actual_value: int,
    success: bool,
    completed_steps: set[str] | None = None,
    today: date | None = None,
) -> set[str]:
    """Persist a day's terminal outcome: attempt, then stats, then roll-forward.

    ``completed_steps`` remembers what already landed, so calling again after a
    ``PersistenceError`` resumes at the failed step instead of writing twice.
    """
    steps = completed_steps if completed_steps is not None else set()
    movement = challenge.challenge_type or "plank"
    stamp = logical_now()

    _run_step(
        STEP_ATTEMPT,
        steps,
        enrollment,
        day,
        lambda: store.create_attempt(
            user_id=identity.user_id,
            challenge_id=challenge.id,
            enrollment_id=enrollment.id,
            display_name=identity.display_name or None,
            day=int(day),
            target_value=int(target_value),
            actual_value=int(actual_value),
            success=bool(success),
            missed=False,
            challenge_version=challenge.version,
            timestamp=stamp,
        ),
    )
    if success:
        _run_step(
            STEP_STATS,
            steps,
            enrollment,
            day,
            lambda: store.upsert_aggregate_stats(
                user_id=identity.user_id,
                challenge_id=challenge.id,
                value=int(actual_value),
                movement_type=movement,
                display_name=identity.display_name,
                team_id=enrollment.team_id,
                achieved_at=stamp,
            ),
        )
    _run_step(STEP_ENROLLMENT, steps, enrollment, day, lambda: roll_forward(store, enrollment, challenge, day, today))

    logger.info(
        "Recorded %s day %s for user %s challenge %s: actual=%s target=%s success=%s",
        movement,
        day,
        identity.user_id,
        challenge.id,
        actual_value,
        target_value,
        success,
    )
    return steps
