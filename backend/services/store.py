from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from db.models import Attempt, Challenge, ChallengeUserStats, Enrollment, Team
from services.errors import PersistenceError
from services.stats_service import apply_stats_delta

logger = logging.getLogger(__name__)

T = TypeVar("T")

ENROLLMENT_UPDATABLE_FIELDS = {
    "current_day",
    "last_completed_day",
    "last_completed_date",
    "status",
    "missed_days_count",
    "team_id",
    "display_name",
}


class ChallengeStore:
    """Document-store style access to challenges, enrollments and attempts.

    Every write commits on its own, so a sequence of writes leaves a durable
    prefix behind when a later one fails. Storage failures are rolled back and
    re-raised as ``PersistenceError``.
    """

    def __init__(self, db: Session):
        self.db = db

    def _write(self, step: str, fn: Callable[[], T]) -> T:
        try:
            result = fn()
            self.db.commit()
            return result
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.warning("Store write failed (%s): %s", step, exc)
            raise PersistenceError(f"Could not save {step.replace('_', ' ')}", step=step) from exc

    def _read(self, step: str, fn: Callable[[], T]) -> T:
        try:
            return fn()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.warning("Store read failed (%s): %s", step, exc)
            raise PersistenceError(f"Could not load {step.replace('_', ' ')}", step=step) from exc

    # Challenges and teams

    def find_challenge(self, challenge_id: int) -> Challenge | None:
        return self._read(
            "challenge",
            lambda: self.db.query(Challenge).filter(Challenge.id == challenge_id).first(),
        )

    def list_challenges(self, *, active_only: bool = True) -> list[Challenge]:
        def _query():
            query = self.db.query(Challenge)
            if active_only:
                query = query.filter(Challenge.is_active.is_(True))
            return query.order_by(Challenge.start_date.asc(), Challenge.id.asc()).all()

        return self._read("challenges", _query)

    def find_team(self, team_id: int) -> Team | None:
        return self._read("team", lambda: self.db.query(Team).filter(Team.id == team_id).first())

    def list_teams(self, challenge_id: int | None = None) -> list[Team]:
        def _query():
            query = self.db.query(Team)
            if challenge_id is not None:
                query = query.filter((Team.challenge_id == challenge_id) | (Team.challenge_id.is_(None)))
            return query.order_by(Team.name.asc()).all()

        return self._read("teams", _query)

    # Enrollments

    def find_enrollment(self, user_id: int, challenge_id: int) -> Enrollment | None:
        return self._read(
            "enrollment",
            lambda: self.db.query(Enrollment)
            .filter(Enrollment.user_id == user_id, Enrollment.challenge_id == challenge_id)
            .first(),
        )

    def find_enrollment_by_id(self, enrollment_id: int) -> Enrollment | None:
        return self._read(
            "enrollment",
            lambda: self.db.query(Enrollment).filter(Enrollment.id == enrollment_id).first(),
        )

    def list_enrollments_for_user(self, user_id: int) -> list[Enrollment]:
        return self._read(
            "enrollments",
            lambda: self.db.query(Enrollment)
            .filter(Enrollment.user_id == user_id)
            .order_by(Enrollment.joined_at.asc(), Enrollment.id.asc())
            .all(),
        )

    def create_enrollment(self, **data: Any) -> Enrollment:
        def _create():
            row = Enrollment(**data)
            self.db.add(row)
            self.db.flush()
            return row

        return self._write("enrollment", _create)

    def update_enrollment(self, enrollment_id: int, fields: dict[str, Any]) -> Enrollment:
        unknown = set(fields) - ENROLLMENT_UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown enrollment fields: {sorted(unknown)}")

        row = self.find_enrollment_by_id(enrollment_id)
        if row is None:
            raise PersistenceError("Enrollment no longer exists", step="enrollment_update")

        def _update():
            for key, value in fields.items():
                setattr(row, key, value)
            self.db.flush()
            return row

        return self._write("enrollment_update", _update)

    # Attempts

    def find_attempt(
        self,
        user_id: int,
        challenge_id: int,
        day: int,
        missed: bool | None = True,
    ) -> Attempt | None:
        """Existing record for the day; ``missed=None`` matches either kind."""

        def _query():
            query = self.db.query(Attempt).filter(
                Attempt.user_id == user_id,
                Attempt.challenge_id == challenge_id,
                Attempt.day == day,
            )
            if missed is not None:
                query = query.filter(Attempt.missed.is_(bool(missed)))
            return query.order_by(Attempt.missed.asc(), Attempt.id.asc()).first()

        return self._read("attempt", _query)

    def list_attempts(self, user_id: int, challenge_id: int) -> list[Attempt]:
        return self._read(
            "attempts",
            lambda: self.db.query(Attempt)
            .filter(Attempt.user_id == user_id, Attempt.challenge_id == challenge_id)
            .order_by(Attempt.day.asc(), Attempt.id.asc())
            .all(),
        )

    def create_attempt(self, **data: Any) -> Attempt:
        def _create():
            row = Attempt(**data)
            self.db.add(row)
            self.db.flush()
            return row

        return self._write("attempt", _create)

    # Aggregates

    def upsert_aggregate_stats(
        self,
        *,
        user_id: int,
        challenge_id: int,
        value: int,
        movement_type: str,
        display_name: str | None = None,
        team_id: int | None = None,
        achieved_at: datetime | None = None,
    ) -> ChallengeUserStats:
        return self._write(
            "stats",
            lambda: apply_stats_delta(
                self.db,
                user_id=user_id,
                challenge_id=challenge_id,
                value=value,
                movement_type=movement_type,
                display_name=display_name,
                team_id=team_id,
                achieved_at=achieved_at,
            ),
        )

    def list_challenge_stats(self, challenge_id: int) -> list[ChallengeUserStats]:
        return self._read(
            "challenge_stats",
            lambda: self.db.query(ChallengeUserStats)
            .filter(ChallengeUserStats.challenge_id == challenge_id)
            .all(),
        )

