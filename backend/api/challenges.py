from typing import Optional, Union

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from api.deps import get_leaderboard_cache, get_store
from auth.utils import get_current_identity
from db.models import Attempt
from services.calendar_reconciler import challenge_snapshot, reconcile, reconcile_user_enrollments
from services.enrollment_service import is_configured, join_challenge
from services.identity import Identity
from services.leaderboard_service import LeaderboardCache
from services.squat_service import log_squats
from services.store import ChallengeStore
from utils.datetime_utils import global_day_number, logical_today

router = APIRouter(tags=["challenges"])


class JoinRequest(BaseModel):
    team_id: Optional[int] = None


class SquatLogRequest(BaseModel):
    actual_reps: Union[int, str]


def _attempt_to_dict(attempt: Attempt) -> dict:
    return {
        "id": attempt.id,
        "day": attempt.day,
        "target_value": attempt.target_value,
        "actual_value": attempt.actual_value,
        "success": bool(attempt.success),
        "missed": bool(attempt.missed),
        "challenge_version": attempt.challenge_version,
        "timestamp": attempt.timestamp.isoformat() if attempt.timestamp else None,
    }


def _owned_enrollment(store: ChallengeStore, enrollment_id: int, identity: Identity):
    enrollment = store.find_enrollment_by_id(enrollment_id)
    if not enrollment or enrollment.user_id != identity.user_id:
        raise HTTPException(status_code=404, detail="Enrollment not found")
    challenge = store.find_challenge(enrollment.challenge_id)
    if not challenge:
        raise HTTPException(status_code=404, detail="Challenge not found")
    return enrollment, challenge


@router.get("/challenges")
def list_challenges(
    identity: Identity = Depends(get_current_identity),
    store: ChallengeStore = Depends(get_store),
):
    today = logical_today()
    enrolled = {row.challenge_id for row in store.list_enrollments_for_user(identity.user_id)}
    visible = []
    for challenge in store.list_challenges(active_only=True):
        if not is_configured(challenge):
            continue
        if global_day_number(challenge.start_date, challenge.number_of_days, today) > int(challenge.number_of_days):
            continue
        row = challenge_snapshot(challenge, today)
        row["enrolled"] = challenge.id in enrolled
        row["teams"] = [{"id": team.id, "name": team.name} for team in store.list_teams(challenge.id)]
        visible.append(row)
    return visible


@router.post("/challenges/{challenge_id}/join", status_code=201)
def join(
    challenge_id: int,
    req: JoinRequest,
    identity: Identity = Depends(get_current_identity),
    store: ChallengeStore = Depends(get_store),
):
    challenge = store.find_challenge(challenge_id)
    if not challenge:
        raise HTTPException(status_code=404, detail="Challenge not found")
    enrollment = join_challenge(store, identity, challenge, team_id=req.team_id)
    return reconcile(store, enrollment, challenge).to_dict()


@router.get("/enrollments")
def list_enrollments(
    identity: Identity = Depends(get_current_identity),
    store: ChallengeStore = Depends(get_store),
):
    return [row.to_dict() for row in reconcile_user_enrollments(store, identity.user_id)]


@router.get("/enrollments/{enrollment_id}/attempts")
def list_attempts(
    enrollment_id: int,
    identity: Identity = Depends(get_current_identity),
    store: ChallengeStore = Depends(get_store),
):
    enrollment, challenge = _owned_enrollment(store, enrollment_id, identity)
    reconcile(store, enrollment, challenge)
    return [_attempt_to_dict(a) for a in store.list_attempts(identity.user_id, challenge.id)]


@router.post("/enrollments/{enrollment_id}/squats", status_code=201)
def log_squat_day(
    enrollment_id: int,
    req: SquatLogRequest,
    identity: Identity = Depends(get_current_identity),
    store: ChallengeStore = Depends(get_store),
    cache: LeaderboardCache = Depends(get_leaderboard_cache),
):
    enrollment, challenge = _owned_enrollment(store, enrollment_id, identity)
    reconcile(store, enrollment, challenge)
    result = log_squats(
        store,
        enrollment=enrollment,
        challenge=challenge,
        identity=identity,
        actual_reps=req.actual_reps,
    )
    cache.invalidate(challenge.id)
    result["enrollment"] = reconcile(store, enrollment, challenge).to_dict()
    return result
