from __future__ import annotations

import sys
from datetime import date, datetime
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from db.database import Base  # noqa: E402
from db.models import Attempt, Challenge, Team, User  # noqa: E402
from services.enrollment_service import (  # noqa: E402
    ensure_can_start,
    join_challenge,
    record_day_outcome,
    start_block,
)
from services.errors import (  # noqa: E402
    AlreadyCompletedTodayError,
    AlreadyEnrolledError,
    ChallengeConfigurationError,
    ChallengeWindowError,
    ValidationError,
)
from services.identity import Identity, identity_for_user  # noqa: E402
from services.store import ChallengeStore  # noqa: E402


def _new_db():
    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)()


def _new_user(db, username="join_tester", nickname=None) -> User:
    user = User(
        username=username,
        username_normalized=username.lower(),
        password_hash="hash",
        display_name="Join Tester",
        nickname=nickname,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def _new_challenge(db, **overrides) -> Challenge:
    fields = {
        "name": "Spring Squats",
        "challenge_type": "squat",
        "start_date": date(2024, 3, 1),
        "number_of_days": 10,
        "starting_value": 20,
        "increment_per_day": 2,
    }
    fields.update(overrides)
    challenge = Challenge(**fields)
    db.add(challenge)
    db.commit()
    db.refresh(challenge)
    return challenge


def test_join_starts_on_the_current_global_day():
    db = _new_db()
    user = _new_user(db)
    challenge = _new_challenge(db)

    enrollment = join_challenge(ChallengeStore(db), identity_for_user(user), challenge, today=date(2024, 3, 4))

    assert enrollment.current_day == 4
    assert enrollment.last_completed_day == 0
    assert enrollment.status == "active"
    assert enrollment.missed_days_count == 0
    assert enrollment.display_name == "Join Tester"


def test_join_refusals():
    db = _new_db()
    user = _new_user(db)
    store = ChallengeStore(db)
    identity = identity_for_user(user)

    with pytest.raises(ChallengeWindowError) as excinfo:
        join_challenge(store, identity, _new_challenge(db), today=date(2024, 2, 28))
    assert "Mar 1, 2024" in excinfo.value.message

    with pytest.raises(ChallengeWindowError):
        join_challenge(store, identity, _new_challenge(db), today=date(2024, 3, 11))

    with pytest.raises(ChallengeConfigurationError):
        join_challenge(store, identity, _new_challenge(db, start_date=None), today=date(2024, 3, 2))

    with pytest.raises(ChallengeWindowError):
        join_challenge(store, identity, _new_challenge(db, is_active=False), today=date(2024, 3, 2))

    challenge = _new_challenge(db)
    join_challenge(store, identity, challenge, today=date(2024, 3, 2))
    with pytest.raises(AlreadyEnrolledError):
        join_challenge(store, identity, challenge, today=date(2024, 3, 2))


def test_join_team_must_belong_to_the_challenge():
    db = _new_db()
    user = _new_user(db)
    challenge = _new_challenge(db, is_team_challenge=True)
    other = _new_challenge(db, name="Other")
    own_team = Team(name="Core Crushers", challenge_id=challenge.id)
    foreign_team = Team(name="Elsewhere", challenge_id=other.id)
    db.add_all([own_team, foreign_team])
    db.commit()
    store = ChallengeStore(db)

    with pytest.raises(ValidationError):
        join_challenge(store, identity_for_user(user), challenge, team_id=foreign_team.id, today=date(2024, 3, 2))

    enrollment = join_challenge(store, identity_for_user(user), challenge, team_id=own_team.id, today=date(2024, 3, 2))
    assert enrollment.team_id == own_team.id


def test_start_is_blocked_after_finishing_today():
    db = _new_db()
    user = _new_user(db)
    challenge = _new_challenge(db)
    store = ChallengeStore(db)
    identity = identity_for_user(user)
    today = date(2024, 3, 2)
    enrollment = join_challenge(store, identity, challenge, today=today)

    ensure_can_start(store, enrollment, challenge, today)
    record_day_outcome(
        store,
        enrollment=enrollment,
        challenge=challenge,
        identity=identity,
        day=2,
        target_value=22,
        actual_value=25,
        success=True,
        today=today,
    )

    with pytest.raises(AlreadyCompletedTodayError) as excinfo:
        ensure_can_start(store, enrollment, challenge, today)
    assert "Next up tomorrow" in excinfo.value.message
    assert start_block(enrollment, challenge, date(2024, 3, 3)) is None


def test_final_day_block_uses_the_challenge_complete_message():
    db = _new_db()
    user = _new_user(db)
    challenge = _new_challenge(db, number_of_days=3, start_date=date(2024, 3, 1))
    store = ChallengeStore(db)
    identity = identity_for_user(user)
    today = date(2024, 3, 3)
    enrollment = join_challenge(store, identity, challenge, today=today)

    record_day_outcome(
        store,
        enrollment=enrollment,
        challenge=challenge,
        identity=identity,
        day=3,
        target_value=24,
        actual_value=10,
        success=False,
        today=today,
    )

    assert enrollment.status == "completed"
    assert enrollment.current_day == 4
    blocked = start_block(enrollment, challenge, today)
    assert isinstance(blocked, AlreadyCompletedTodayError)
    assert blocked.message == "Challenge Complete! You crushed all 3 days!"


def test_terminal_record_without_roll_forward_still_blocks_start():
    db = _new_db()
    user = _new_user(db)
    challenge = _new_challenge(db)
    store = ChallengeStore(db)
    today = date(2024, 3, 2)
    enrollment = join_challenge(store, identity_for_user(user), challenge, today=today)
    store.create_attempt(
        user_id=user.id,
        challenge_id=challenge.id,
        enrollment_id=enrollment.id,
        day=2,
        target_value=22,
        actual_value=22,
        success=True,
        missed=False,
        challenge_version=1,
        timestamp=datetime(2024, 3, 2, 8, 0),
    )

    assert start_block(enrollment, challenge, today) is None
    with pytest.raises(AlreadyCompletedTodayError):
        ensure_can_start(store, enrollment, challenge, today)


def test_attempt_snapshots_target_and_challenge_version():
    db = _new_db()
    user = _new_user(db)
    challenge = _new_challenge(db, version=4)
    store = ChallengeStore(db)
    today = date(2024, 3, 1)
    enrollment = join_challenge(store, identity_for_user(user), challenge, today=today)

    record_day_outcome(
        store,
        enrollment=enrollment,
        challenge=challenge,
        identity=identity_for_user(user),
        day=1,
        target_value=20,
        actual_value=21,
        success=True,
        today=today,
    )

    row = db.query(Attempt).one()
    assert (row.target_value, row.challenge_version) == (20, 4)


def test_identity_prefers_nickname_then_display_name():
    db = _new_db()
    assert identity_for_user(_new_user(db, "nick_tester", nickname="  Plank   Queen ")).display_name == "Plank Queen"
    assert identity_for_user(_new_user(db, "plain_tester")).display_name == "Join Tester"
    assert Identity(user_id=1, display_name="x", role="Admin").is_admin is True
