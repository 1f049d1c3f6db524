import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from api.deps import get_leaderboard_cache
from auth.utils import require_admin
from db.database import get_db
from db.models import Attempt, Challenge, ChallengeUserStats, Enrollment, Team, User
from services.calendar_reconciler import challenge_snapshot
from services.leaderboard_service import LeaderboardCache

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])

VALID_CHALLENGE_TYPES = {"plank", "squat"}
TARGET_FIELDS = ("starting_value", "increment_per_day")
NULLABLE_FIELDS = {"description", "start_date", "number_of_days"}


class ChallengeCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    challenge_type: str = "plank"
    start_date: Optional[date] = None
    number_of_days: Optional[int] = Field(default=None, ge=1, le=366)
    starting_value: int = Field(default=0, ge=0)
    increment_per_day: int = Field(default=0, ge=0)
    is_active: bool = True
    is_team_challenge: bool = False


class ChallengeUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    start_date: Optional[date] = None
    number_of_days: Optional[int] = Field(default=None, ge=1, le=366)
    starting_value: Optional[int] = Field(default=None, ge=0)
    increment_per_day: Optional[int] = Field(default=None, ge=0)
    is_active: Optional[bool] = None
    is_team_challenge: Optional[bool] = None


class TeamCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    challenge_id: Optional[int] = None


def _challenge_or_404(db: Session, challenge_id: int) -> Challenge:
    challenge = db.query(Challenge).filter(Challenge.id == challenge_id).first()
    if not challenge:
        raise HTTPException(status_code=404, detail="Challenge not found")
    return challenge


def _admin_row(db: Session, challenge: Challenge) -> dict:
    row = challenge_snapshot(challenge)
    row["participant_count"] = db.query(Enrollment).filter(Enrollment.challenge_id == challenge.id).count()
    return row


@router.get("/challenges")
def list_all_challenges(
    admin_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    challenges = db.query(Challenge).order_by(Challenge.created_at.desc(), Challenge.id.desc()).all()
    return [_admin_row(db, c) for c in challenges]


@router.post("/challenges", status_code=201)
def create_challenge(
    req: ChallengeCreateRequest,
    admin_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    challenge_type = (req.challenge_type or "").strip().lower()
    if challenge_type not in VALID_CHALLENGE_TYPES:
        raise HTTPException(status_code=400, detail="Challenge type must be 'plank' or 'squat'")

    challenge = Challenge(
        name=req.name.strip(),
        description=req.description,
        challenge_type=challenge_type,
        start_date=req.start_date,
        number_of_days=req.number_of_days,
        starting_value=req.starting_value,
        increment_per_day=req.increment_per_day,
        is_active=req.is_active,
        is_team_challenge=req.is_team_challenge,
        version=1,
    )
    db.add(challenge)
    db.commit()
    db.refresh(challenge)
    logger.info("Admin %s created %s challenge %s", admin_user.id, challenge_type, challenge.id)
    return _admin_row(db, challenge)


@router.put("/challenges/{challenge_id}")
def update_challenge(
    challenge_id: int,
    req: ChallengeUpdateRequest,
    admin_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
    cache: LeaderboardCache = Depends(get_leaderboard_cache),
):
    challenge = _challenge_or_404(db, challenge_id)
    changes = {
        key: value
        for key, value in req.model_dump(exclude_unset=True).items()
        if value is not None or key in NULLABLE_FIELDS
    }
    if "name" in changes:
        changes["name"] = changes["name"].strip()

    # Recorded attempts keep the target they were scored against; new ones see the new version.
    if any(field in changes and changes[field] != getattr(challenge, field) for field in TARGET_FIELDS):
        challenge.version = int(challenge.version or 1) + 1

    for key, value in changes.items():
        setattr(challenge, key, value)
    db.commit()
    db.refresh(challenge)
    cache.invalidate(challenge.id)
    logger.info("Admin %s updated challenge %s (%s)", admin_user.id, challenge.id, sorted(changes))
    return _admin_row(db, challenge)


@router.post("/challenges/{challenge_id}/deactivate")
def deactivate_challenge(
    challenge_id: int,
    admin_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    challenge = _challenge_or_404(db, challenge_id)
    challenge.is_active = False
    db.commit()
    logger.info("Admin %s deactivated challenge %s", admin_user.id, challenge.id)
    return {"status": "ok"}


@router.delete("/challenges/{challenge_id}")
def delete_challenge(
    challenge_id: int,
    admin_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
    cache: LeaderboardCache = Depends(get_leaderboard_cache),
):
    challenge = _challenge_or_404(db, challenge_id)
    enrollments = db.query(Enrollment).filter(Enrollment.challenge_id == challenge.id).count()
    # Children first; teams are referenced by enrollments and stats rows.
    for model in (Attempt, ChallengeUserStats, Enrollment, Team):
        db.query(model).filter(model.challenge_id == challenge.id).delete(synchronize_session=False)
    db.delete(challenge)
    db.commit()
    cache.invalidate(challenge_id)
    logger.info("Admin %s deleted challenge %s with %s enrollments", admin_user.id, challenge_id, enrollments)
    return {"status": "ok", "deleted_enrollments": enrollments}


@router.get("/teams")
def list_teams(
    challenge_id: Optional[int] = None,
    admin_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    query = db.query(Team)
    if challenge_id is not None:
        query = query.filter(Team.challenge_id == challenge_id)
    return [{"id": t.id, "name": t.name, "challenge_id": t.challenge_id} for t in query.order_by(Team.name.asc()).all()]


@router.post("/teams", status_code=201)
def create_team(
    req: TeamCreateRequest,
    admin_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    if req.challenge_id is not None:
        _challenge_or_404(db, req.challenge_id)
    team = Team(name=req.name.strip(), challenge_id=req.challenge_id)
    db.add(team)
    db.commit()
    db.refresh(team)
    logger.info("Admin %s created team %s for challenge %s", admin_user.id, team.id, team.challenge_id)
    return {"id": team.id, "name": team.name, "challenge_id": team.challenge_id}
