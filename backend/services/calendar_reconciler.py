"""Keep enrollments in step with the challenge calendar.

The global day number is derived from the challenge start date and the logical
"today" of the challenge timezone. Reconciliation rolls an enrollment forward to
that day and backfills a ``missed`` attempt for every day the user skipped.
Backfill is check-then-write per day, so repeated or concurrent runs never
create a second missed record for the same day, and missed records are always
committed before the enrollment update that accounts for them.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from db.models import Challenge, Enrollment
from services.enrollment_service import (
    STATUS_ACTIVE,
    STATUS_COMPLETED,
    is_configured,
    start_block,
)
from services.store import ChallengeStore
from utils.datetime_utils import (
    calculate_progress,
    global_day_number,
    logical_now,
    logical_today,
    target_for_day,
    to_civil_date,
)

logger = logging.getLogger(__name__)


@dataclass
class ReconciledEnrollment:
    enrollment: Enrollment
    challenge: Challenge
    global_day: int
    today: date
    newly_missed_days: list[int] = field(default_factory=list)

    @property
    def current_target(self) -> int | None:
        number_of_days = int(self.challenge.number_of_days or 0)
        day = int(self.enrollment.current_day or 1)
        if not number_of_days or day > number_of_days:
            return None
        return target_for_day(self.challenge.starting_value, self.challenge.increment_per_day, day)

    def to_dict(self) -> dict[str, Any]:
        enrollment = self.enrollment
        challenge = self.challenge
        blocked = start_block(enrollment, challenge, self.today)
        return {
            "id": enrollment.id,
            "challenge_id": enrollment.challenge_id,
            "team_id": enrollment.team_id,
            "current_day": enrollment.current_day,
            "last_completed_day": enrollment.last_completed_day,
            "last_completed_date": enrollment.last_completed_date.isoformat() if enrollment.last_completed_date else None,
            "status": enrollment.status,
            "missed_days_count": enrollment.missed_days_count,
            "global_day": self.global_day,
            "target_value": self.current_target,
            "progress_pct": calculate_progress(enrollment.current_day, challenge.number_of_days),
            "is_final_day": bool(challenge.number_of_days) and enrollment.current_day == challenge.number_of_days,
            "can_start_today": blocked is None,
            "start_blocked_reason": blocked.message if blocked is not None else None,
            "newly_missed_days": list(self.newly_missed_days),
            "challenge": challenge_snapshot(challenge, self.today),
        }


def challenge_snapshot(challenge: Challenge, today: date | None = None) -> dict[str, Any]:
    return {
        "id": challenge.id,
        "name": challenge.name,
        "description": challenge.description,
        "challenge_type": challenge.challenge_type,
        "start_date": challenge.start_date.isoformat() if challenge.start_date else None,
        "number_of_days": challenge.number_of_days,
        "starting_value": challenge.starting_value,
        "increment_per_day": challenge.increment_per_day,
        "is_active": bool(challenge.is_active),
        "is_team_challenge": bool(challenge.is_team_challenge),
        "version": challenge.version,
        "global_day": global_day_number(challenge.start_date, challenge.number_of_days, today or logical_today()),
    }


def skipped_days_for(
    *,
    last_completed_day: int,
    target_day: int,
    raw_global_day: int,
    number_of_days: int,
    already_completed: bool,
) -> list[int]:
    """Days in ``(last_completed_day, target_day)`` plus, once the window has
    closed on an unfinished enrollment, every remaining day up to the end."""
    skipped = [day for day in range(last_completed_day + 1, target_day) if 1 <= day <= number_of_days]
    if raw_global_day > number_of_days and not already_completed:
        for day in range(max(target_day, last_completed_day + 1), number_of_days + 1):
            if day not in skipped:
                skipped.append(day)
    return skipped


def reconcile(
    store: ChallengeStore,
    enrollment: Enrollment,
    challenge: Challenge,
    today: date | None = None,
) -> ReconciledEnrollment:
    current = to_civil_date(today) or logical_today()
    if not is_configured(challenge):
        return ReconciledEnrollment(enrollment=enrollment, challenge=challenge, global_day=0, today=current)

    number_of_days = int(challenge.number_of_days)
    raw_global_day = global_day_number(challenge.start_date, number_of_days, current)
    if raw_global_day == 0:
        return ReconciledEnrollment(enrollment=enrollment, challenge=challenge, global_day=0, today=current)

    target_day = min(raw_global_day, number_of_days)
    prev_completed = int(enrollment.last_completed_day or 0)
    stored_current_day = int(enrollment.current_day or 1)
    stored_status = enrollment.status or STATUS_ACTIVE
    stored_missed = int(enrollment.missed_days_count or 0)

    already_completed = stored_status == STATUS_COMPLETED
    skipped = skipped_days_for(
        last_completed_day=prev_completed,
        target_day=target_day,
        raw_global_day=raw_global_day,
        number_of_days=number_of_days,
        already_completed=already_completed,
    )

    status = stored_status
    if raw_global_day > number_of_days and not already_completed:
        status = STATUS_COMPLETED
        current_day = number_of_days + 1
    elif already_completed:
        current_day = stored_current_day
    else:
        # Never step back behind a day that already has its terminal record.
        current_day = max(target_day, prev_completed + 1)

    missed_count = stored_missed
    repaired_last_completed = prev_completed
    newly_missed: list[int] = []
    stamp = logical_now()
    for day in skipped:
        existing = store.find_attempt(enrollment.user_id, enrollment.challenge_id, day, missed=None)
        if existing is not None:
            if not existing.missed:
                # Terminal record written but its roll-forward was lost.
                repaired_last_completed = max(repaired_last_completed, day)
            continue
        store.create_attempt(
            user_id=enrollment.user_id,
            challenge_id=enrollment.challenge_id,
            enrollment_id=enrollment.id,
            display_name=enrollment.display_name,
            day=day,
            target_value=None,
            actual_value=0,
            success=False,
            missed=True,
            challenge_version=challenge.version,
            timestamp=stamp,
        )
        newly_missed.append(day)

    if skipped:
        # Counted from the log so an earlier run whose enrollment update was lost is not undercounted.
        missed_count = sum(
            1 for attempt in store.list_attempts(enrollment.user_id, enrollment.challenge_id) if attempt.missed
        )

    if status != STATUS_COMPLETED and repaired_last_completed > prev_completed:
        current_day = max(current_day, repaired_last_completed + 1)

    if newly_missed or repaired_last_completed != prev_completed:
        fields: dict[str, Any] = {
            "current_day": current_day,
            "status": status,
            "missed_days_count": missed_count,
        }
        if repaired_last_completed != prev_completed:
            fields["last_completed_day"] = repaired_last_completed
        store.update_enrollment(enrollment.id, fields)
    else:
        fields = {}
        if current_day != stored_current_day:
            fields["current_day"] = current_day
        if status != stored_status:
            fields["status"] = status
        if missed_count != stored_missed:
            fields["missed_days_count"] = missed_count
        if fields:
            store.update_enrollment(enrollment.id, fields)

    if newly_missed:
        logger.info(
            "Backfilled missed days %s for enrollment %s (challenge %s, global day %s)",
            newly_missed,
            enrollment.id,
            challenge.id,
            raw_global_day,
        )

    return ReconciledEnrollment(
        enrollment=enrollment,
        challenge=challenge,
        global_day=raw_global_day,
        today=current,
        newly_missed_days=newly_missed,
    )


def reconcile_user_enrollments(
    store: ChallengeStore,
    user_id: int,
    today: date | None = None,
) -> list[ReconciledEnrollment]:
    """Reconcile every enrollment of a user whose challenge still exists."""
    results: list[ReconciledEnrollment] = []
    for enrollment in store.list_enrollments_for_user(user_id):
        challenge = store.find_challenge(enrollment.challenge_id)
        if challenge is None:
            continue
        results.append(reconcile(store, enrollment, challenge, today))
    return results
