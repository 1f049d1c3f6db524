"""Aggregate totals and bests behind the leaderboards.

Aggregation is additive: applying the same delta twice double-counts, so
callers must make sure each successful attempt is folded in exactly once.
"""
from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.orm import Session

from db.models import ChallengeUserStats, UserStats
from utils.datetime_utils import logical_now

logger = logging.getLogger(__name__)

VALID_MOVEMENTS = {"plank", "squat"}


def _ensure_user_stats(db: Session, user_id: int, display_name: str | None) -> UserStats:
    row = db.query(UserStats).filter(UserStats.user_id == user_id).first()
    if row is None:
        row = UserStats(
            user_id=user_id,
            display_name=display_name or "",
            total_plank_seconds=0,
            best_plank_seconds=0,
            total_squats=0,
            best_squats=0,
        )
        db.add(row)
        db.flush()
    return row


def _ensure_challenge_user_stats(
    db: Session,
    *,
    user_id: int,
    challenge_id: int,
    movement_type: str,
    display_name: str | None,
    team_id: int | None,
) -> ChallengeUserStats:
    row = (
        db.query(ChallengeUserStats)
        .filter(ChallengeUserStats.challenge_id == challenge_id, ChallengeUserStats.user_id == user_id)
        .first()
    )
    if row is None:
        row = ChallengeUserStats(
            challenge_id=challenge_id,
            user_id=user_id,
            display_name=display_name or "",
            movement_type=movement_type,
            team_id=team_id,
            total_value=0,
            best_value=0,
            first_achieved_at=None,
        )
        db.add(row)
        db.flush()
        logger.info(
            "Created challenge stats row challenge=%s user=%s movement=%s team=%s",
            challenge_id,
            user_id,
            movement_type,
            team_id,
        )
    return row


def apply_stats_delta(
    db: Session,
    *,
    user_id: int,
    challenge_id: int,
    value: int,
    movement_type: str,
    display_name: str | None = None,
    team_id: int | None = None,
    achieved_at: datetime | None = None,
) -> ChallengeUserStats:
    """Fold one successful day's value into the user and per-challenge aggregates.

    The best value's ``first_achieved_at`` only moves when a strictly higher best
    is set; a tie keeps the earlier marker so earlier achievers rank first.
    Does not commit.
    """
    if movement_type not in VALID_MOVEMENTS:
        raise ValueError(f"movement_type must be one of {sorted(VALID_MOVEMENTS)}")
    amount = max(int(value), 0)
    when = achieved_at or logical_now()

    user_row = _ensure_user_stats(db, user_id, display_name)
    if movement_type == "plank":
        user_row.total_plank_seconds = int(user_row.total_plank_seconds or 0) + amount
        user_row.best_plank_seconds = max(int(user_row.best_plank_seconds or 0), amount)
    else:
        user_row.total_squats = int(user_row.total_squats or 0) + amount
        user_row.best_squats = max(int(user_row.best_squats or 0), amount)
    user_row.display_name = display_name or user_row.display_name or ""

    row = _ensure_challenge_user_stats(
        db,
        user_id=user_id,
        challenge_id=challenge_id,
        movement_type=movement_type,
        display_name=display_name,
        team_id=team_id,
    )
    row.total_value = int(row.total_value or 0) + amount
    if amount > int(row.best_value or 0):
        row.best_value = amount
        row.first_achieved_at = when
    row.display_name = display_name or row.display_name or ""
    if team_id is not None and team_id != row.team_id:
        row.team_id = team_id
    db.flush()

    logger.info(
        "Updated %s stats challenge=%s user=%s total=%s best=%s",
        movement_type,
        challenge_id,
        user_id,
        row.total_value,
        row.best_value,
    )
    return row
