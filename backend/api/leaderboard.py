from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from api.deps import get_leaderboard_cache, get_store
from auth.utils import get_current_identity
from services.identity import Identity
from services.leaderboard_service import LeaderboardCache, get_leaderboard
from services.store import ChallengeStore

router = APIRouter(prefix="/leaderboard", tags=["leaderboard"])


@router.get("/{challenge_id}")
def challenge_leaderboard(
    challenge_id: int,
    team_id: Optional[int] = None,
    refresh: bool = False,
    identity: Identity = Depends(get_current_identity),
    store: ChallengeStore = Depends(get_store),
    cache: LeaderboardCache = Depends(get_leaderboard_cache),
):
    challenge = store.find_challenge(challenge_id)
    if not challenge:
        raise HTTPException(status_code=404, detail="Challenge not found")
    cached = get_leaderboard(cache, store, challenge, team_filter=team_id, refresh=refresh)
    return {**cached.result, "fetched_at": cached.fetched_at}
