"""Plank timer state machine driven by a fake monotonic clock."""
from __future__ import annotations

import sys
from datetime import date
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from db.database import Base  # noqa: E402
from db.models import Attempt, Challenge, ChallengeUserStats, Enrollment, User, UserStats  # noqa: E402
from services.attempt_session import (  # noqa: E402
    ACTIVE,
    AUTO_STOPPING,
    CANCELLED,
    COMPLETE,
    COUNTDOWN,
    FAILED,
    KEEP_OR_REDO,
    PAUSED,
    STILL_GOING_PROMPT,
    AttemptSession,
    TimerRules,
    celebration_message,
)
from services.errors import InvalidTransitionError, PersistenceError  # noqa: E402
from services.identity import Identity  # noqa: E402
from services.store import ChallengeStore  # noqa: E402

START = date(2024, 1, 1)
RULES = TimerRules()


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StatsFailingOnceStore(ChallengeStore):
    def __init__(self, db):
        super().__init__(db)
        self.failures_left = 1

    def upsert_aggregate_stats(self, **kwargs):
        if self.failures_left:
            self.failures_left -= 1
            raise PersistenceError("Could not save stats", step="stats")
        return super().upsert_aggregate_stats(**kwargs)


class AttemptFailingOnceStore(ChallengeStore):
    def __init__(self, db):
        super().__init__(db)
        self.failures_left = 1

    def create_attempt(self, **data):
        if self.failures_left:
            self.failures_left -= 1
            raise PersistenceError("Could not save attempt", step="attempt")
        return super().create_attempt(**data)


def _new_db():
    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)()


def _seed(db, *, target=30, number_of_days=10):
    user = User(
        username="plank_tester",
        username_normalized="plank_tester",
        password_hash="hash",
        display_name="Plank Tester",
    )
    challenge = Challenge(
        name="Plank Month",
        challenge_type="plank",
        start_date=START,
        number_of_days=number_of_days,
        starting_value=target,
        increment_per_day=0,
    )
    db.add_all([user, challenge])
    db.commit()
    enrollment = Enrollment(
        user_id=user.id,
        challenge_id=challenge.id,
        display_name="Plank Tester",
        current_day=1,
        last_completed_day=0,
        status="active",
        missed_days_count=0,
    )
    db.add(enrollment)
    db.commit()
    return user, challenge, enrollment


def _session(db, store=None, *, target=30, attempt_number=1, **kwargs):
    user, challenge, enrollment = _seed(db, target=target)
    clock = FakeClock()
    session = AttemptSession(
        store or ChallengeStore(db),
        enrollment=enrollment,
        challenge=challenge,
        identity=Identity(user_id=user.id, display_name="Plank Tester"),
        attempt_number=attempt_number,
        rules=RULES,
        clock=clock,
        today=START,
        **kwargs,
    )
    return session, clock, enrollment


def _go_active(session, clock):
    clock.advance(RULES.countdown_steps * RULES.countdown_step_seconds)
    assert session.tick() == ACTIVE


def _attempts(db):
    return db.query(Attempt).all()


def test_countdown_then_active_elapsed_from_fixed_origin():
    db = _new_db()
    session, clock, _ = _session(db)
    assert session.stage == COUNTDOWN
    assert session.snapshot()["countdown_label"] == "Ready"
    clock.advance(1)
    assert session.snapshot()["countdown_label"] == "Set"

    clock.advance(2)
    assert session.tick() == ACTIVE
    clock.advance(12.7)
    assert session.snapshot()["elapsed_seconds"] == 12


def test_never_paused_session_keeps_running_past_target():
    db = _new_db()
    session, clock, _ = _session(db)
    _go_active(session, clock)

    clock.advance(30)
    assert session.tick() == ACTIVE
    clock.advance(45)
    assert session.tick() == ACTIVE
    assert session.available_actions() == ["done", "cancel"]
    assert _attempts(db) == []


def test_paused_session_auto_stops_at_target_then_keeps():
    db = _new_db()
    session, clock, enrollment = _session(db)
    _go_active(session, clock)
    clock.advance(10)
    session.pause()
    assert session.stage == PAUSED
    assert session.recovery_tip

    clock.advance(5)
    session.resume()
    assert session.stage == COUNTDOWN
    _go_active(session, clock)
    assert session.snapshot()["elapsed_seconds"] == 10

    clock.advance(20)
    assert session.tick() == AUTO_STOPPING
    clock.advance(RULES.auto_stop_delay_seconds)
    assert session.tick() == KEEP_OR_REDO

    session.keep()
    assert session.stage == COMPLETE
    rows = _attempts(db)
    assert len(rows) == 1
    assert (rows[0].actual_value, rows[0].success, rows[0].missed) == (30, True, False)
    db.refresh(enrollment)
    assert enrollment.current_day == 2
    assert enrollment.last_completed_day == 1
    assert enrollment.last_completed_date == START


def test_done_then_keep_records_success_and_stats_once():
    db = _new_db()
    session, clock, enrollment = _session(db)
    _go_active(session, clock)
    clock.advance(50)
    session.done()
    assert session.stage == KEEP_OR_REDO

    session.keep()
    assert session.stage == COMPLETE
    assert session.final_value == 50
    assert session.celebration.startswith("+20 seconds over goal!")
    stats = db.query(ChallengeUserStats).one()
    assert (stats.total_value, stats.best_value) == (50, 50)
    assert db.query(UserStats).one().total_plank_seconds == 50

    with pytest.raises(InvalidTransitionError):
        session.keep()
    assert len(_attempts(db)) == 1


def test_pause_refused_at_goal_before_any_pause_and_done_refused_below_goal():
    db = _new_db()
    session, clock, _ = _session(db)
    _go_active(session, clock)
    clock.advance(10)
    with pytest.raises(InvalidTransitionError):
        session.done()
    clock.advance(20)
    with pytest.raises(InvalidTransitionError):
        session.pause()


def test_recovery_budget_is_cumulative_across_pauses():
    db = _new_db()
    session, clock, enrollment = _session(db)
    _go_active(session, clock)
    clock.advance(5)
    session.pause()
    clock.advance(25)
    session.resume()

    clock.advance(RULES.countdown_steps + 1)
    session.pause()
    assert session.snapshot()["elapsed_seconds"] == 6
    clock.advance(30)
    assert session.tick() == PAUSED
    assert session.snapshot()["recovery_remaining_seconds"] == 5

    clock.advance(5)
    assert session.tick() == FAILED
    rows = _attempts(db)
    assert len(rows) == 1
    assert (rows[0].actual_value, rows[0].success, rows[0].missed) == (6, False, False)
    assert db.query(ChallengeUserStats).count() == 0
    db.refresh(enrollment)
    assert enrollment.current_day == 2


def test_two_redos_allowed_third_forces_failure():
    db = _new_db()
    completions = []
    session, clock, enrollment = _session(db, on_complete=completions.append)

    for expected_attempt in (2, 3):
        _go_active(session, clock)
        clock.advance(35)
        session.done()
        session.redo()
        assert session.stage == COUNTDOWN
        assert session.attempt_number == expected_attempt

    _go_active(session, clock)
    clock.advance(35)
    session.done()
    session.redo()

    assert session.stage == FAILED
    assert session.attempt_number == 3
    assert completions == [True, True, False]
    rows = _attempts(db)
    assert len(rows) == 1
    assert (rows[0].actual_value, rows[0].success) == (35, False)


def test_keep_or_redo_timeout_behaves_like_redo():
    db = _new_db()
    session, clock, _ = _session(db)
    _go_active(session, clock)
    clock.advance(40)
    session.done()

    clock.advance(RULES.keep_or_redo_timeout_seconds)
    assert session.tick() == COUNTDOWN
    assert session.attempt_number == 2
    assert session.snapshot()["elapsed_seconds"] == 0
    assert _attempts(db) == []


def test_still_going_acknowledged_counts_prompt_time():
    db = _new_db()
    session, clock, _ = _session(db)
    _go_active(session, clock)

    clock.advance(RULES.still_going_first_seconds)
    assert session.tick() == STILL_GOING_PROMPT
    assert session.snapshot()["elapsed_seconds"] == 300

    clock.advance(10)
    session.acknowledge_still_going()
    assert session.stage == ACTIVE
    assert session.snapshot()["elapsed_seconds"] == 310

    # Next check lands two minutes after the first.
    clock.advance(109)
    assert session.tick() == ACTIVE
    clock.advance(1)
    assert session.tick() == STILL_GOING_PROMPT


def test_unanswered_prompt_freezes_time_and_goes_to_keep_or_redo():
    db = _new_db()
    session, clock, _ = _session(db)
    _go_active(session, clock)

    # One late poll well after the prompt window closed.
    clock.advance(330)
    assert session.tick() == KEEP_OR_REDO
    snapshot = session.snapshot()
    assert snapshot["elapsed_seconds"] == 300
    assert snapshot["keep_or_redo_seconds_remaining"] == 10

    session.keep()
    assert session.stage == COMPLETE
    assert session.final_value == 300


def test_keep_below_target_is_a_failed_non_missed_day():
    db = _new_db()
    session, clock, enrollment = _session(db, target=400)
    _go_active(session, clock)
    clock.advance(RULES.still_going_first_seconds + RULES.still_going_window_seconds)
    assert session.tick() == KEEP_OR_REDO

    session.keep()
    assert session.stage == FAILED
    rows = _attempts(db)
    assert len(rows) == 1
    assert (rows[0].actual_value, rows[0].target_value, rows[0].success, rows[0].missed) == (300, 400, False, False)
    assert db.query(ChallengeUserStats).count() == 0
    db.refresh(enrollment)
    assert enrollment.current_day == 2
    assert enrollment.last_completed_day == 1


def test_cancel_writes_nothing_and_restores_attempt_number():
    db = _new_db()
    cancelled = []
    session, clock, enrollment = _session(db, attempt_number=2, on_cancel=lambda: cancelled.append(True))
    _go_active(session, clock)
    clock.advance(35)
    session.done()
    session.redo()
    assert session.attempt_number == 3

    session.cancel()
    assert session.stage == CANCELLED
    assert session.attempt_number == 2
    assert cancelled == [True]
    assert _attempts(db) == []
    db.refresh(enrollment)
    assert enrollment.current_day == 1

    with pytest.raises(InvalidTransitionError):
        session.resume()


def test_persistence_failure_leaves_session_retryable_without_duplicates():
    db = _new_db()
    store = StatsFailingOnceStore(db)
    session, clock, enrollment = _session(db, store=store)
    _go_active(session, clock)
    clock.advance(40)
    session.done()

    with pytest.raises(PersistenceError) as excinfo:
        session.keep()
    assert excinfo.value.step == "stats"
    assert excinfo.value.retryable is True
    assert session.stage == KEEP_OR_REDO
    assert session.available_actions() == ["retry"]
    assert len(_attempts(db)) == 1

    assert session.tick() == COMPLETE
    assert len(_attempts(db)) == 1
    assert db.query(ChallengeUserStats).one().total_value == 40
    db.refresh(enrollment)
    assert enrollment.current_day == 2


def test_prompt_acknowledged_after_goal_gives_full_keep_window():
    db = _new_db()
    session, clock, _ = _session(db, target=300)
    _go_active(session, clock)
    clock.advance(10)
    session.pause()
    clock.advance(5)
    session.resume()
    _go_active(session, clock)

    clock.advance(290)
    assert session.tick() == STILL_GOING_PROMPT
    clock.advance(19)
    session.acknowledge_still_going()
    assert session.stage == ACTIVE

    clock.advance(0.6)
    assert session.tick() == KEEP_OR_REDO
    snapshot = session.snapshot()
    assert snapshot["elapsed_seconds"] == 300
    assert snapshot["keep_or_redo_seconds_remaining"] >= 19

    clock.advance(15)
    assert session.tick() == KEEP_OR_REDO
    assert session.attempt_number == 1
    session.keep()
    assert session.stage == COMPLETE
    assert session.final_value == 300


@pytest.mark.parametrize("attempt_number", [1, 3])
def test_failed_attempt_write_survives_keep_or_redo_timeout(attempt_number):
    db = _new_db()
    store = AttemptFailingOnceStore(db)
    session, clock, enrollment = _session(db, store=store, attempt_number=attempt_number)
    _go_active(session, clock)
    clock.advance(40)
    session.done()

    with pytest.raises(PersistenceError) as excinfo:
        session.keep()
    assert excinfo.value.step == "attempt"
    assert session.stage == KEEP_OR_REDO
    assert session.available_actions() == ["retry"]
    assert _attempts(db) == []

    # Waiting past the decision window neither scores a failure nor starts a do-over.
    clock.advance(RULES.keep_or_redo_timeout_seconds + 5)
    session.keep()
    assert session.stage == COMPLETE
    assert session.attempt_number == attempt_number
    rows = _attempts(db)
    assert len(rows) == 1
    assert (rows[0].actual_value, rows[0].success, rows[0].missed) == (40, True, False)
    assert db.query(ChallengeUserStats).one().total_value == 40
    db.refresh(enrollment)
    assert enrollment.current_day == 2


def test_failed_write_is_retried_by_the_next_poll():
    db = _new_db()
    store = AttemptFailingOnceStore(db)
    session, clock, _ = _session(db, store=store)
    _go_active(session, clock)
    clock.advance(40)
    session.done()
    with pytest.raises(PersistenceError):
        session.keep()

    clock.advance(60)
    assert session.tick() == COMPLETE
    assert len(_attempts(db)) == 1


def test_celebration_message_thresholds():
    assert celebration_message(45, 30).startswith("+15 seconds over goal!")
    assert not celebration_message(44, 30).startswith("+")
