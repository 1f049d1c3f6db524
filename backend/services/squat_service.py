from __future__ import annotations

from datetime import date
from typing import Any

from db.models import Challenge, Enrollment
from services.enrollment_service import ensure_can_start, record_day_outcome
from services.errors import InvalidTransitionError, ValidationError
from services.identity import Identity
from services.store import ChallengeStore
from utils.datetime_utils import target_for_day


def log_squats(
    store: ChallengeStore,
    *,
    enrollment: Enrollment,
    challenge: Challenge,
    identity: Identity,
    actual_reps: Any,
    today: date | None = None,
) -> dict[str, Any]:
    """Single-shot squat log for the enrollment's current day."""
    if (challenge.challenge_type or "plank") != "squat":
        raise InvalidTransitionError("Squats can only be logged on squat challenges.")
    if isinstance(actual_reps, bool):
        raise ValidationError("Rep count must be a whole number of 0 or more.")
    try:
        reps = int(str(actual_reps).strip())
    except (TypeError, ValueError):
        raise ValidationError("Rep count must be a whole number of 0 or more.")
    if reps < 0:
        raise ValidationError("Rep count must be a whole number of 0 or more.")

    ensure_can_start(store, enrollment, challenge, today)
    day = int(enrollment.current_day)
    target = target_for_day(challenge.starting_value, challenge.increment_per_day, day)
    success = reps >= target
    record_day_outcome(
        store,
        enrollment=enrollment,
        challenge=challenge,
        identity=identity,
        day=day,
        target_value=target,
        actual_value=reps,
        success=success,
        today=today,
    )
    return {
        "day": day,
        "target_value": target,
        "actual_value": reps,
        "success": success,
    }
